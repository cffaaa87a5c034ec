import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from sahay.context_budget import ContextBudgeter
from sahay.errors import AudioFileMissing, BusyError, EngineNotReady, GenerationFailed, StorageError
from sahay.llm import GenerationController, GenerationOutcome, GenerationRequest, SamplingConfig
from sahay.log import log_important, log_turn
from sahay.prompts import DomainPromptCatalog
from sahay.sessions import ChatSession, Message, SessionStore, next_message_id
from sahay.transcription import TranscriptionService

logger = logging.getLogger(__name__)

STOPPED_MARKER = "[stopped]"


@dataclass
class ConversationContext:
    """In-memory working copy of the active chat. The store owns the persisted copy."""

    domain: str
    language: str = "auto"
    session_id: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    last_warning: Optional[str] = None
    last_outcome: Optional[GenerationOutcome] = None

    @classmethod
    def from_session(cls, session: ChatSession) -> "ConversationContext":
        return cls(
            domain=session.domain,
            language=session.language,
            session_id=session.id,
            messages=list(session.messages),
        )


class ConversationOrchestrator:
    """
    Runs one user turn end to end: records the user message, creates the stored chat
    on first use, prunes history to the context window, streams the reply into a
    placeholder assistant message, and persists the exchange.

    Only one turn runs at a time across the whole process; a second submit while one
    is in flight is rejected with BusyError.
    """

    def __init__(
        self,
        store: SessionStore,
        generator: GenerationController,
        catalog: DomainPromptCatalog | None = None,
        budgeter: ContextBudgeter | None = None,
        transcriber: TranscriptionService | None = None,
        *,
        context_window_tokens: int = 2048,
        sampling: SamplingConfig | None = None,
        stopped_marker: str = STOPPED_MARKER,
        delete_recordings: bool = True,
        recordings_dir: Path | str | None = None,
    ):
        self.store = store
        self.generator = generator
        self.catalog = catalog or DomainPromptCatalog()
        self.budgeter = budgeter or ContextBudgeter()
        self.transcriber = transcriber
        self.context_window_tokens = int(context_window_tokens)
        self.sampling = sampling or SamplingConfig()
        self.stopped_marker = stopped_marker
        self.delete_recordings = bool(delete_recordings)
        self.recordings_dir = Path(recordings_dir) if recordings_dir is not None else None
        self._turn_lock = asyncio.Lock()

    def is_busy(self) -> bool:
        return self._turn_lock.locked()

    @staticmethod
    def new_context(domain: str, language: str = "auto") -> ConversationContext:
        return ConversationContext(domain=domain, language=language or "auto")

    def open_session(self, domain: str, session_id: str) -> ConversationContext:
        return ConversationContext.from_session(self.store.get(domain, session_id))

    def history_budget(self, system_instruction: str, user_message: Message) -> int:
        reserved = (
            int(self.sampling.max_output_tokens)
            + self.budgeter.cost(Message(id=0, role="system", content=system_instruction))
            + self.budgeter.cost(user_message)
        )
        return max(0, self.context_window_tokens - reserved)

    def build_request(self, context: ConversationContext, user_message: Message) -> GenerationRequest:
        instruction = self.catalog.instruction_for(context.domain, context.language)
        prior = [m for m in context.messages if m.id != user_message.id and m.content]
        system = Message(id=0, role="system", content=instruction)
        pruned = self.budgeter.prune([system] + prior, self.history_budget(instruction, user_message))
        # The pending user message is always part of the prompt, whatever was pruned.
        pruned.append(user_message)
        history = [{"role": m.role, "content": m.content} for m in pruned if m.role != "system"]
        logger.debug("Prompt history: kept %s of %s prior messages", len(history) - 1, len(prior))
        return GenerationRequest(system_instruction=instruction, history=history, sampling=self.sampling)

    def _persist(self, context: ConversationContext) -> None:
        try:
            self.store.append(context.domain, context.session_id, context.messages)
            context.last_warning = None
        except StorageError as e:
            # The conversation stays visible in memory; the caller surfaces the warning.
            logger.warning("Failed to persist chat %s: %s", context.session_id, e)
            context.last_warning = e.user_text

    async def submit_user_turn(
        self,
        context: ConversationContext,
        text: str,
        is_voice_origin: bool = False,
        on_token: Optional[Callable[[str], None]] = None,
    ) -> Message:
        content = (text or "").strip()
        if not content:
            raise ValueError("Message is empty")
        if self._turn_lock.locked():
            raise BusyError("A turn is already in progress", operation="submit_user_turn", domain=context.domain, session_id=context.session_id)
        # The runtime may swap in a fresh controller mid-turn; this turn stays on the one it started with.
        generator = self.generator
        if not generator.is_ready():
            raise EngineNotReady("Text engine is not ready", operation="submit_user_turn", domain=context.domain)

        async with self._turn_lock:
            context.last_outcome = None
            user_message = Message(
                id=next_message_id(context.messages),
                role="user",
                content=content,
                created_at=datetime.now(),
                is_voice_origin=bool(is_voice_origin),
            )
            context.messages.append(user_message)

            if not context.session_id:
                try:
                    session = self.store.create(context.domain, content, context.language)
                    context.session_id = session.id
                    log_important("chat.created", domain=context.domain, session_id=session.id, title=session.title)
                except StorageError as e:
                    logger.warning("Failed to create stored chat: %s", e)
                    context.last_warning = e.user_text

            request = self.build_request(context, user_message)

            assistant_message = Message(
                id=next_message_id(context.messages),
                role="assistant",
                content="",
                created_at=datetime.now(),
            )
            context.messages.append(assistant_message)

            def _on_token(fragment: str) -> None:
                assistant_message.content += fragment
                if on_token is not None:
                    try:
                        on_token(fragment)
                    except Exception:
                        logger.exception("Token callback failed")

            try:
                final_text = await generator.generate(request, on_token=_on_token)
            except GenerationFailed as e:
                e.with_context(domain=context.domain, session_id=context.session_id)
                log_turn(
                    "turn.failed",
                    level=logging.WARNING,
                    domain=context.domain,
                    session_id=context.session_id,
                    error=str(e),
                )
                raise

            outcome = generator.last_outcome
            context.last_outcome = outcome
            if outcome is not None and outcome.cancelled and final_text.strip() and self.stopped_marker:
                final_text = f"{final_text.rstrip()}\n\n{self.stopped_marker}"
            assistant_message.content = final_text

            if context.session_id:
                self._persist(context)

            log_turn(
                "turn.done",
                domain=context.domain,
                session_id=context.session_id,
                outcome=outcome,
                voice=bool(is_voice_origin),
            )
            return assistant_message

    def owns_recording(self, audio_path: str) -> bool:
        """True when the file sits inside the recordings folder this app writes to."""
        if self.recordings_dir is None or not audio_path:
            return False
        try:
            return Path(audio_path).resolve().is_relative_to(self.recordings_dir.resolve())
        except (OSError, ValueError):
            return False

    async def transcribe(self, context: ConversationContext, audio_path: str) -> str:
        if self.transcriber is None:
            raise RuntimeError("Speech input is not configured")
        if self._turn_lock.locked():
            raise BusyError("A turn is already in progress", operation="transcribe", domain=context.domain)
        owned = self.owns_recording(audio_path)
        if self.recordings_dir is not None and not owned:
            raise AudioFileMissing(
                f"Audio file is outside the recordings folder: {audio_path}",
                operation="transcribe",
                domain=context.domain,
            )
        try:
            return await self.transcriber.transcribe(audio_path, context.language)
        finally:
            # Only recordings made by this app are removed; anything else is left untouched.
            if self.delete_recordings and owned:
                try:
                    os.remove(audio_path)
                except OSError as e:
                    logger.warning("Failed to delete audio file: %s", e)

    async def submit_voice_turn(
        self,
        context: ConversationContext,
        audio_path: str,
        on_token: Optional[Callable[[str], None]] = None,
    ) -> Message:
        text = await self.transcribe(context, audio_path)
        return await self.submit_user_turn(context, text, is_voice_origin=True, on_token=on_token)

    async def replace_generator(self, generator: GenerationController) -> GenerationController:
        """
        Swap in a new generation controller. An in-flight turn is cancelled and allowed
        to finish on the old controller first. Returns the previous controller.
        """
        if self.is_busy():
            await self.generator.cancel()
        async with self._turn_lock:
            previous = self.generator
            self.generator = generator
        return previous

    async def cancel(self) -> None:
        await self.generator.cancel()
