import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from openai import AsyncOpenAI

from sahay.config import is_loopback_url
from sahay.device import DeviceProfile
from sahay.errors import BusyError, EngineInitFailed, EngineNotReady, GenerationFailed, ModelFileMissing

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_TOKENS = 256

# End-of-turn markers across common model families (Llama, Mistral, ChatML, Phi, DeepSeek, Sarvam).
STOP_SEQUENCES = (
    "</s>",
    "<|end|>",
    "user:",
    "assistant:",
    "<|im_end|>",
    "<|eot_id|>",
    "<|end▁of▁sentence|>",
    "<|end_of_text|>",
    "<｜end▁of▁sentence｜>",
)

# Latin plus Devanagari danda / double danda (also used by other Indic scripts).
SENTENCE_TERMINALS = ".!?…।॥"
_ENDS_WITH_TERMINAL = re.compile(r"[.!?…।॥][\"'”’)\]]*$")
TAIL_WINDOW_FRACTION = 0.30


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    GENERATING = "generating"
    FAILED = "failed"


@dataclass
class SamplingConfig:
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    temperature: float = 0.7
    top_p: float = 0.9


@dataclass
class GenerationRequest:
    system_instruction: str
    history: list[dict] = field(default_factory=list)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)

    def to_messages(self) -> list[dict]:
        messages: list[dict] = []
        if self.system_instruction:
            messages.append({"role": "system", "content": self.system_instruction})
        for m in self.history:
            role = str(m.get("role") or "user")
            if role == "system" and self.system_instruction:
                continue
            messages.append({"role": role, "content": str(m.get("content") or "")})
        return messages


@dataclass
class CompletionResult:
    tokens_per_second: float = 0.0
    token_count: int = 0
    hit_limit: bool = False


@dataclass
class GenerationOutcome:
    text: str = ""
    token_count: int = 0
    tokens_per_second: float = 0.0
    cancelled: bool = False
    hit_limit: bool = False
    timed_out: bool = False


class TextEngine(Protocol):
    async def initialize(self, model_path: str, profile: DeviceProfile) -> None: ...

    async def stream_complete(
        self,
        messages: list[dict],
        *,
        max_output_tokens: int,
        stop_sequences: Sequence[str],
        sampling: SamplingConfig,
        on_token: Callable[[str], None],
    ) -> CompletionResult: ...

    async def cancel(self) -> None: ...

    async def release(self) -> None: ...


class LocalOpenAITextEngine:
    """
    Text engine backed by an on-device OpenAI-compatible runtime (llama.cpp `server`,
    Ollama) bound to loopback. The GGUF weights are loaded by that runtime; this
    client only streams completions from it.

    Batch size, thread count and GPU layers are launch flags of that server, so the
    DeviceProfile cannot be pushed through the HTTP API. `initialize` logs the
    flags the profile recommends so the server can be started to match.
    """

    def __init__(self, base_url: str, model: str, *, api_key: str = "sk-no-key-required"):
        if not is_loopback_url(base_url):
            raise ValueError(f"Text engine must run on-device (loopback only), got: {base_url}")
        self.base_url = base_url
        self.model = model
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        self.profile: DeviceProfile | None = None
        self._cancel_event = asyncio.Event()

    async def initialize(self, model_path: str, profile: DeviceProfile) -> None:
        self.profile = profile
        logger.info(
            "Recommended server flags for this device: --ctx-size %s --batch-size %s --threads %s --n-gpu-layers %s",
            profile.context_window_tokens,
            profile.batch_size,
            profile.thread_count,
            profile.gpu_layers,
        )
        # Probe the runtime so a dead server surfaces at init time, not on the first turn.
        models = await self.client.models.list()
        served = [getattr(m, "id", "") for m in getattr(models, "data", []) or []]
        logger.info(
            "Text engine ready at %s (served models: %s, weights: %s)",
            self.base_url,
            ", ".join(str(s) for s in served) or "-",
            Path(model_path).name,
        )

    @staticmethod
    def _server_tokens_per_second(chunk) -> Optional[float]:
        # llama.cpp attaches non-standard `timings` to the final chunk.
        timings = getattr(chunk, "timings", None)
        if timings is None:
            extra = getattr(chunk, "model_extra", None) or {}
            timings = extra.get("timings") if isinstance(extra, dict) else None
        if isinstance(timings, dict):
            try:
                return float(timings.get("predicted_per_second") or 0.0) or None
            except (TypeError, ValueError):
                return None
        return None

    async def stream_complete(
        self,
        messages: list[dict],
        *,
        max_output_tokens: int,
        stop_sequences: Sequence[str],
        sampling: SamplingConfig,
        on_token: Callable[[str], None],
    ) -> CompletionResult:
        self._cancel_event.clear()
        started = time.monotonic()
        token_count = 0
        hit_limit = False
        server_tps: Optional[float] = None

        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            stream=True,
            max_tokens=int(max_output_tokens),
            stop=list(stop_sequences),
            temperature=float(sampling.temperature),
            top_p=float(sampling.top_p),
        )
        try:
            async for chunk in stream:
                if self._cancel_event.is_set():
                    break
                tps = self._server_tokens_per_second(chunk)
                if tps:
                    server_tps = tps
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                choice = choices[0]
                content = getattr(getattr(choice, "delta", None), "content", None)
                if content:
                    token_count += 1
                    on_token(content)
                if getattr(choice, "finish_reason", None) == "length":
                    hit_limit = True
        finally:
            await stream.close()

        elapsed = max(1e-6, time.monotonic() - started)
        return CompletionResult(
            tokens_per_second=server_tps or (token_count / elapsed),
            token_count=token_count,
            hit_limit=hit_limit,
        )

    async def cancel(self) -> None:
        self._cancel_event.set()

    async def release(self) -> None:
        await self.client.close()


def strip_stop_sequences(text: str, stop_sequences: Sequence[str] = STOP_SEQUENCES) -> str:
    """Cut the text at the earliest stop marker that leaked into the output."""
    cut = len(text)
    for stop in stop_sequences:
        if not stop:
            continue
        idx = text.find(stop)
        if 0 <= idx < cut:
            cut = idx
    return text[:cut]


def _ends_sentence_at(text: str, i: int) -> bool:
    # A period inside a token ("3.5 mg", "e.g.x") is not a sentence end.
    if text[i] != "." or i + 1 >= len(text):
        return True
    nxt = text[i + 1]
    return nxt.isspace() or nxt in "\"'”’)]"


def trim_incomplete_sentence(text: str, *, tail_fraction: float = TAIL_WINDOW_FRACTION) -> str:
    """
    Cut a ceiling-truncated reply back to its last sentence end, looking only in the
    final `tail_fraction` of the text. Without a sentence end there, the text is
    returned unmodified.
    """
    t = text.rstrip()
    if not t or _ENDS_WITH_TERMINAL.search(t):
        return t
    window_start = int(len(t) * (1.0 - float(tail_fraction)))
    for i in range(len(t) - 1, window_start - 1, -1):
        if t[i] in SENTENCE_TERMINALS and _ends_sentence_at(t, i):
            return t[: i + 1]
    return text


class GenerationController:
    """
    Drives one streaming generation at a time against a TextEngine and turns the raw
    fragments into presentable text.
    """

    def __init__(
        self,
        engine: TextEngine,
        *,
        stop_sequences: Sequence[str] = STOP_SEQUENCES,
        timeout_s: float = 0.0,
    ):
        self.engine = engine
        self.stop_sequences = tuple(stop_sequences)
        self.timeout_s = float(timeout_s or 0.0)
        self.state = EngineState.UNINITIALIZED
        self.profile: DeviceProfile | None = None
        self.last_outcome: GenerationOutcome | None = None
        self._cancel_requested = False
        self._timed_out = False

    def is_ready(self) -> bool:
        return self.state == EngineState.READY

    async def initialize(self, model_path: str, profile: DeviceProfile) -> None:
        if self.state == EngineState.READY:
            return
        if self.state == EngineState.FAILED:
            raise EngineNotReady("Text engine failed to initialize; create a new engine instance")
        if self.state != EngineState.UNINITIALIZED:
            raise BusyError(f"Text engine is {self.state.value}")

        self.state = EngineState.INITIALIZING
        path = Path(model_path or "")
        if not model_path or not path.is_file():
            self.state = EngineState.FAILED
            raise ModelFileMissing(str(model_path), operation="initialize")

        size_gb = path.stat().st_size / (1024 * 1024 * 1024)
        logger.info(f"Loading text model {path.name} ({size_gb:.2f}GB)...")
        try:
            await self.engine.initialize(str(path), profile)
        except Exception as e:
            self.state = EngineState.FAILED
            logger.error(f"Failed to initialize text engine: {e}")
            raise EngineInitFailed(f"LLM initialization failed: {e}", operation="initialize") from e

        self.profile = profile
        self.state = EngineState.READY
        logger.info("Text engine initialized")

    def postprocess(self, text: str, *, hit_limit: bool) -> str:
        cleaned = strip_stop_sequences(text, self.stop_sequences)
        if hit_limit:
            cleaned = trim_incomplete_sentence(cleaned)
        return cleaned.strip()

    async def _timeout_guard(self) -> None:
        await asyncio.sleep(self.timeout_s)
        if self.state == EngineState.GENERATING and not self._cancel_requested:
            logger.warning("Generation exceeded %.1fs; stopping", self.timeout_s)
            self._timed_out = True
            await self.cancel()

    async def generate(
        self,
        request: GenerationRequest,
        on_token: Optional[Callable[[str], None]] = None,
        on_done: Optional[Callable[[float], None]] = None,
    ) -> str:
        if self.state == EngineState.GENERATING:
            raise BusyError("A response is already being generated", operation="generate")
        if self.state != EngineState.READY:
            raise EngineNotReady("LLM not initialized. Call initialize() first.", operation="generate")

        self.state = EngineState.GENERATING
        self._cancel_requested = False
        self._timed_out = False
        parts: list[str] = []
        max_tokens = int(request.sampling.max_output_tokens or DEFAULT_MAX_OUTPUT_TOKENS)

        def _on_fragment(fragment: str) -> None:
            # Fragments racing in after cancel() are dropped.
            if self._cancel_requested or not fragment:
                return
            parts.append(fragment)
            if len(parts) % 10 == 0:
                logger.debug("Tokens received: %s", len(parts))
            if on_token is not None:
                on_token(fragment)

        messages = request.to_messages()
        logger.debug("Starting completion with %s messages", len(messages))
        guard = asyncio.create_task(self._timeout_guard()) if self.timeout_s > 0 else None
        try:
            result = await self.engine.stream_complete(
                messages,
                max_output_tokens=max_tokens,
                stop_sequences=self.stop_sequences,
                sampling=request.sampling,
                on_token=_on_fragment,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._cancel_requested:
                partial = "".join(parts)
                logger.error(f"Error during generation: {e}")
                raise GenerationFailed(
                    f"Failed to generate response: {e}",
                    partial_text=partial,
                    operation="generate",
                ) from e
            # Some runtimes abort the stream with an error when stopped.
            result = CompletionResult(token_count=len(parts))
        finally:
            if guard is not None:
                guard.cancel()
            self.state = EngineState.READY

        raw = "".join(parts)
        cancelled = self._cancel_requested
        hit_limit = (bool(result.hit_limit) or len(parts) >= max_tokens) and not cancelled
        if cancelled:
            final = strip_stop_sequences(raw, self.stop_sequences)
        else:
            final = self.postprocess(raw, hit_limit=hit_limit)

        tps = round(float(result.tokens_per_second or 0.0), 2)
        self.last_outcome = GenerationOutcome(
            text=final,
            token_count=len(parts),
            tokens_per_second=tps,
            cancelled=cancelled,
            hit_limit=hit_limit,
            timed_out=self._timed_out,
        )
        logger.info(
            "Completion finished: tokens=%s tps=%.2f cancelled=%s hit_limit=%s",
            len(parts),
            tps,
            cancelled,
            hit_limit,
        )
        if on_done is not None:
            on_done(tps)
        return final

    async def cancel(self) -> None:
        if self.state != EngineState.GENERATING:
            return
        self._cancel_requested = True
        try:
            await self.engine.cancel()
        except Exception as e:
            logger.error(f"Error stopping generation: {e}")

    async def release(self) -> None:
        if self.state in (EngineState.UNINITIALIZED, EngineState.FAILED):
            return
        try:
            await self.engine.release()
            logger.info("Text engine released")
        except Exception as e:
            logger.error(f"Error releasing text engine: {e}")
        self.state = EngineState.UNINITIALIZED
