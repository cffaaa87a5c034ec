import asyncio
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Optional, Protocol

from faster_whisper import WhisperModel

from sahay.errors import (
    AudioFileMissing,
    EngineNotReady,
    ModelFileMissing,
    TranscriptionFailed,
    TranscriptionTimeout,
)
from sahay.transcript_validator import TranscriptValidator, prompt_for

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("hi", "ml", "kn", "en", "auto")
DEFAULT_TIMEOUT_S = 120.0


def _looks_like_missing_cuda_runtime(exc: BaseException) -> bool:
    msg = str(exc or "").casefold()
    if not msg:
        return False

    # ctranslate2 built for CUDA but the CUDA runtime isn't installed / not on the loader path.
    if ("not found" in msg or "cannot be loaded" in msg or "could not locate" in msg) and any(
        tok in msg for tok in ("cublas", "cudart", "cufft", "curand", "cusolver", "cusparse", "cudnn")
    ):
        return True
    if msg.startswith("library ") and " is not found" in msg:
        return True
    return False


class SpeechEngine(Protocol):
    def initialize(self, model_path: str) -> None: ...

    def transcribe(
        self,
        audio_path: str,
        *,
        language: Optional[str] = None,
        prompt: Optional[str] = None,
        speed_optimized: bool = True,
    ) -> dict: ...

    def release(self) -> None: ...


class WhisperSpeechEngine:
    """Complete-file speech recognition with faster-whisper (CTranslate2 weights)."""

    def __init__(self, device: str = "cpu", compute_type: str | None = None):
        self._lock = threading.Lock()
        device = (str(device or "cpu").strip().lower() or "cpu")
        if device in ("gpu", "cuda"):
            device = "cuda"
        if device not in ("cpu", "cuda"):
            device = "cpu"
        if not compute_type:
            compute_type = "float16" if device == "cuda" else "int8"
        self.device = device
        self.compute_type = str(compute_type).strip().lower()
        self.model_path: str | None = None
        self.model: WhisperModel | None = None

    def _load_model(self, *, device: str, compute_type: str) -> None:
        logger.info(f"Loading Whisper model: {self.model_path} on {device} ({compute_type})...")
        try:
            self.model = WhisperModel(self.model_path, device=device, compute_type=compute_type)
            self.device = device
            self.compute_type = compute_type
        except Exception as e:
            if device != "cpu":
                logger.warning(f"Failed to load Whisper on {device}; falling back to CPU: {e}")
                self.model = WhisperModel(self.model_path, device="cpu", compute_type="int8")
                self.device = "cpu"
                self.compute_type = "int8"
            else:
                raise

    def initialize(self, model_path: str) -> None:
        self.model_path = str(model_path)
        self._load_model(device=self.device, compute_type=self.compute_type)
        logger.info("Whisper model loaded.")

    def _run(self, audio_path: str, kwargs: dict) -> dict:
        segments, info = self.model.transcribe(audio_path, **kwargs)
        seg_list = [
            {
                "text": str(getattr(s, "text", "") or ""),
                "start": float(getattr(s, "start", 0.0) or 0.0),
                "end": float(getattr(s, "end", 0.0) or 0.0),
            }
            for s in segments
        ]
        return {"segments": seg_list, "language": getattr(info, "language", None)}

    def transcribe(
        self,
        audio_path: str,
        *,
        language: Optional[str] = None,
        prompt: Optional[str] = None,
        speed_optimized: bool = True,
    ) -> dict:
        if self.model is None:
            raise EngineNotReady("Whisper not initialized. Call initialize() first.")

        kwargs: dict[str, Any] = {
            "language": language,
            "task": "transcribe",
            # Smaller beams favor latency on constrained hardware.
            "beam_size": 3 if speed_optimized else 5,
            "best_of": 3 if speed_optimized else 5,
            "temperature": [0.0, 0.2, 0.4, 0.6, 0.8, 1.0],
            "compression_ratio_threshold": 2.4,
            "log_prob_threshold": -1.0,
            "no_speech_threshold": 0.6,
            "condition_on_previous_text": False,
            "without_timestamps": bool(speed_optimized),
            "word_timestamps": False,
            "vad_filter": True,
        }
        if prompt:
            kwargs["initial_prompt"] = prompt

        with self._lock:
            try:
                return self._run(audio_path, kwargs)
            except RuntimeError as e:
                if self.device == "cuda" and _looks_like_missing_cuda_runtime(e):
                    logger.warning(f"CUDA runtime libraries are missing ({e}). Falling back to CPU transcription.")
                    self._load_model(device="cpu", compute_type="int8")
                    return self._run(audio_path, kwargs)
                raise

    def release(self) -> None:
        self.model = None


def extract_text(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result.strip()
    if isinstance(result, dict):
        text = result.get("text")
        if isinstance(text, str) and text.strip():
            return text.strip()
        segments = result.get("segments") or []
    else:
        text = getattr(result, "text", None)
        if isinstance(text, str) and text.strip():
            return text.strip()
        segments = getattr(result, "segments", None) or []

    pieces = []
    for seg in segments:
        t = seg.get("text") if isinstance(seg, dict) else getattr(seg, "text", "")
        t = str(t or "").strip()
        if t:
            pieces.append(t)
    return " ".join(pieces).strip()


class TranscriptionService:
    """
    Complete-file transcription: validates the recording, runs the speech engine off
    the event loop (one transcription at a time), and cleans the result.
    """

    def __init__(
        self,
        engine: SpeechEngine,
        model_path: str,
        *,
        validator: TranscriptValidator | None = None,
        default_language: str = "auto",
        timeout_s: float = DEFAULT_TIMEOUT_S,
        speed_optimized: bool = True,
    ):
        self.engine = engine
        self.model_path = str(model_path or "")
        self.validator = validator or TranscriptValidator()
        self.default_language = default_language if default_language in SUPPORTED_LANGUAGES else "auto"
        self.timeout_s = float(timeout_s or DEFAULT_TIMEOUT_S)
        self.speed_optimized = bool(speed_optimized)
        self._ready = False
        self._lock = asyncio.Lock()

    def is_ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        if self._ready:
            return
        path = Path(self.model_path)
        if not self.model_path or not path.exists():
            raise ModelFileMissing(self.model_path, operation="transcription.initialize")

        if path.is_file():
            logger.info(f"Whisper model file size: {path.stat().st_size / (1024 * 1024):.2f}MB")
        try:
            await asyncio.to_thread(self.engine.initialize, str(path))
        except Exception as e:
            logger.error(f"Failed to initialize Whisper: {e}")
            raise TranscriptionFailed(f"Whisper initialization failed: {e}", operation="transcription.initialize") from e
        self._ready = True
        logger.info("Whisper initialized successfully")

    def set_default_language(self, language: str) -> None:
        lang = (language or "").strip().lower()
        if lang not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unsupported language: {language!r}")
        self.default_language = lang
        logger.info("Default language changed to: %s", lang)

    async def transcribe(self, audio_path: str, language: str | None = None) -> str:
        if not self._ready:
            raise EngineNotReady("Whisper not initialized. Call initialize() first.", operation="transcribe")

        path = Path(audio_path or "")
        if not audio_path or not path.is_file():
            raise AudioFileMissing(f"Audio file not found at: {audio_path}", operation="transcribe")

        self.validator.check_size(os.path.getsize(path))

        lang = (language or self.default_language or "auto").strip().lower()
        lang_code = None if lang == "auto" else lang
        prompt = prompt_for(lang_code)

        logger.info(f"Transcribing audio: {path.name} (language={lang_code or 'auto'})")
        started = time.monotonic()
        async with self._lock:
            try:
                result = await asyncio.wait_for(
                    asyncio.to_thread(
                        self.engine.transcribe,
                        str(path),
                        language=lang_code,
                        prompt=prompt,
                        speed_optimized=self.speed_optimized,
                    ),
                    timeout=self.timeout_s,
                )
            except asyncio.TimeoutError as e:
                # The worker thread cannot be interrupted; it finishes in the background.
                raise TranscriptionTimeout(
                    f"Transcription exceeded {self.timeout_s:.0f}s", operation="transcribe"
                ) from e
            except EngineNotReady:
                raise
            except Exception as e:
                logger.error(f"Transcription error: {e}")
                raise TranscriptionFailed(f"Transcription failed: {e}", operation="transcribe") from e

        duration_ms = int((time.monotonic() - started) * 1000)
        raw = extract_text(result)
        text = self.validator.clean(raw, lang_code)
        logger.info(f"Transcription completed in {duration_ms}ms (chars={len(text)})")
        return text

    async def release(self) -> None:
        if not self._ready:
            return
        try:
            await asyncio.to_thread(self.engine.release)
            logger.info("Whisper context released")
        except Exception as e:
            logger.error(f"Error releasing Whisper: {e}")
        self._ready = False
