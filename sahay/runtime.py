import logging
from pathlib import Path

from sahay.audio import AudioRecorder
from sahay.context_budget import ContextBudgeter
from sahay.device import DeviceProfile, detect_device_profile
from sahay.errors import AssistantError
from sahay.llm import GenerationController, LocalOpenAITextEngine, SamplingConfig, STOP_SEQUENCES
from sahay.log import log_important
from sahay.orchestrator import ConversationOrchestrator
from sahay.prompts import DomainPromptCatalog
from sahay.sessions import SessionStore
from sahay.transcript_validator import TranscriptValidator
from sahay.transcription import TranscriptionService, WhisperSpeechEngine

logger = logging.getLogger(__name__)

_TEXT_ENGINE_KEYS = ("llm_model_path", "llm_base_url", "llm_model_name")
_PROFILE_KEYS = ("context_window_tokens", "batch_size", "thread_count", "gpu_layers")


def sampling_from_config(cfg: dict) -> SamplingConfig:
    return SamplingConfig(
        max_output_tokens=int(cfg.get("max_output_tokens") or 256),
        temperature=float(cfg.get("temperature", 0.7)),
        top_p=float(cfg.get("top_p", 0.9)),
    )


class AssistantRuntime:
    """
    Owns every long-lived collaborator of the app (engines, store, recorder and the
    orchestrator) and hands them out. Nothing in the package keeps module-level
    engine instances.
    """

    def __init__(self, cfg: dict, data_dir: Path):
        self.cfg = dict(cfg)
        self.data_dir = Path(data_dir)
        self.profile: DeviceProfile = detect_device_profile(self.cfg)

        self.store = SessionStore(
            self.data_dir / "chats",
            max_sessions=int(self.cfg.get("max_sessions_per_domain") or 50),
        )
        self.catalog = DomainPromptCatalog()
        self.generator = self._build_generator()
        self.transcriber = TranscriptionService(
            WhisperSpeechEngine(
                device=str(self.cfg.get("whisper_device") or "cpu"),
                compute_type=(self.cfg.get("whisper_compute_type") or None),
            ),
            str(self.cfg.get("whisper_model_path") or ""),
            validator=TranscriptValidator(),
            default_language=str(self.cfg.get("default_language") or "auto"),
            timeout_s=float(self.cfg.get("transcription_timeout_seconds") or 120.0),
            speed_optimized=bool(self.cfg.get("speed_optimized_transcription", True)),
        )
        self.recorder = AudioRecorder(self.data_dir / "recordings")
        self.orchestrator = ConversationOrchestrator(
            self.store,
            self.generator,
            self.catalog,
            ContextBudgeter(truncate_oversized=bool(self.cfg.get("truncate_oversized_message", False))),
            self.transcriber,
            context_window_tokens=self.profile.context_window_tokens,
            sampling=sampling_from_config(self.cfg),
            stopped_marker=str(self.cfg.get("generation_stopped_marker") or ""),
            delete_recordings=bool(self.cfg.get("delete_recordings_after_transcription", True)),
            recordings_dir=self.recorder.output_dir,
        )

    def _build_generator(self) -> GenerationController:
        engine = LocalOpenAITextEngine(
            str(self.cfg.get("llm_base_url") or ""),
            str(self.cfg.get("llm_model_name") or ""),
        )
        return GenerationController(
            engine,
            stop_sequences=STOP_SEQUENCES,
            timeout_s=float(self.cfg.get("generation_timeout_seconds") or 0.0),
        )

    async def start(self) -> None:
        """Initialize both engines. Failures are logged and left visible via `status()`."""
        try:
            await self.generator.initialize(str(self.cfg.get("llm_model_path") or ""), self.profile)
        except AssistantError as e:
            logger.error(f"Text engine unavailable: {e}")
        try:
            await self.transcriber.initialize()
        except AssistantError as e:
            logger.error(f"Speech engine unavailable: {e}")
        log_important(
            "runtime.started",
            text_engine=self.generator.state.value,
            speech_engine=("ready" if self.transcriber.is_ready() else "unavailable"),
            ctx=self.profile.context_window_tokens,
        )

    async def reload_text_engine(self) -> None:
        """A failed engine is terminal; recovery builds a fresh instance."""
        fresh = self._build_generator()
        previous = await self.orchestrator.replace_generator(fresh)
        self.generator = fresh
        await previous.release()
        await fresh.initialize(str(self.cfg.get("llm_model_path") or ""), self.profile)

    async def apply_config(self, cfg: dict) -> list[str]:
        """Push updated settings into live collaborators. Returns the changed keys."""
        prev = self.cfg
        self.cfg = dict(cfg)
        changed = [k for k in self.cfg if self.cfg.get(k) != prev.get(k)]

        orch = self.orchestrator
        orch.sampling = sampling_from_config(self.cfg)
        orch.stopped_marker = str(self.cfg.get("generation_stopped_marker") or "")
        orch.delete_recordings = bool(self.cfg.get("delete_recordings_after_transcription", True))
        orch.budgeter.truncate_oversized = bool(self.cfg.get("truncate_oversized_message", False))
        self.store.max_sessions = int(self.cfg.get("max_sessions_per_domain") or 50)
        self.generator.timeout_s = float(self.cfg.get("generation_timeout_seconds") or 0.0)
        self.transcriber.set_default_language(str(self.cfg.get("default_language") or "auto"))
        self.transcriber.timeout_s = float(self.cfg.get("transcription_timeout_seconds") or 120.0)
        self.transcriber.speed_optimized = bool(self.cfg.get("speed_optimized_transcription", True))

        if any(k in changed for k in _PROFILE_KEYS):
            self.profile = detect_device_profile(self.cfg)
            orch.context_window_tokens = self.profile.context_window_tokens
        if any(k in changed for k in _TEXT_ENGINE_KEYS + _PROFILE_KEYS):
            await self.reload_text_engine()
        return changed

    def status(self) -> dict:
        return {
            "text_engine": self.generator.state.value,
            "speech_engine": "ready" if self.transcriber.is_ready() else "unavailable",
            "busy": self.orchestrator.is_busy(),
            "recording": self.recorder.is_recording,
            "device_profile": {
                "context_window_tokens": self.profile.context_window_tokens,
                "batch_size": self.profile.batch_size,
                "thread_count": self.profile.thread_count,
                "gpu_layers": self.profile.gpu_layers,
            },
        }

    async def shutdown(self) -> None:
        self.recorder.abort()
        await self.orchestrator.cancel()
        await self.generator.release()
        await self.transcriber.release()
        log_important("runtime.stopped")
