import asyncio
import tempfile
import unittest
from pathlib import Path

from sahay.device import DeviceProfile
from sahay.errors import AudioFileMissing, AudioTooSmall, BusyError, EngineNotReady, GenerationFailed, StorageError
from sahay.llm import CompletionResult, GenerationController, SamplingConfig
from sahay.orchestrator import ConversationOrchestrator
from sahay.sessions import Message, SessionStore
from sahay.transcription import TranscriptionService


class _FakeTextEngine:
    def __init__(self, fragments=(), *, fail_after=None, pause_after=None):
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.pause_after = pause_after
        self.seen_messages = None
        self.paused = asyncio.Event()
        self._resume = asyncio.Event()

    async def initialize(self, model_path, profile):
        return None

    async def stream_complete(self, messages, *, max_output_tokens, stop_sequences, sampling, on_token):
        self.seen_messages = messages
        for i, frag in enumerate(self.fragments):
            if self.pause_after is not None and i == self.pause_after:
                self.paused.set()
                await self._resume.wait()
            if self.fail_after is not None and i == self.fail_after:
                raise RuntimeError("engine crashed")
            on_token(frag)
            await asyncio.sleep(0)
        return CompletionResult(tokens_per_second=8.0, token_count=len(self.fragments))

    async def cancel(self):
        self._resume.set()

    async def release(self):
        return None


class _FakeSpeechEngine:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def initialize(self, model_path):
        return None

    def transcribe(self, audio_path, *, language=None, prompt=None, speed_optimized=True):
        self.calls.append({"audio_path": audio_path, "language": language, "prompt": prompt})
        return self.result

    def release(self):
        return None


class _FailingAppendStore(SessionStore):
    def append(self, domain, session_id, messages):
        raise StorageError("disk full", operation="append", domain=domain)


class _FailingCreateStore(SessionStore):
    def create(self, domain, first_message_text, language):
        raise StorageError("disk full", operation="create", domain=domain)


class TestConversationOrchestrator(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.model_path = self.root / "model.gguf"
        self.model_path.write_bytes(b"GGUF")
        self.store = SessionStore(self.root / "chats")

    async def asyncTearDown(self):
        self._tmp.cleanup()

    async def _orchestrator(self, engine, *, store=None, transcriber=None, **kwargs) -> ConversationOrchestrator:
        generator = GenerationController(engine)
        await generator.initialize(str(self.model_path), DeviceProfile())
        return ConversationOrchestrator(store or self.store, generator, transcriber=transcriber, **kwargs)

    async def test_first_message_creates_and_persists_session(self):
        engine = _FakeTextEngine(["Namaste", "! How can", " I help?"])
        orch = await self._orchestrator(engine)
        ctx = orch.new_context("general", "en")
        tokens = []

        reply = await orch.submit_user_turn(ctx, "Hello", on_token=tokens.append)

        self.assertEqual(reply.content, "Namaste! How can I help?")
        self.assertEqual(tokens, ["Namaste", "! How can", " I help?"])
        self.assertIsNotNone(ctx.session_id)
        self.assertIsNone(ctx.last_warning)

        stored = self.store.get("general", ctx.session_id)
        self.assertEqual(stored.title, "Hello")
        self.assertEqual([(m.role, m.content) for m in stored.messages], [("user", "Hello"), ("assistant", reply.content)])
        self.assertLess(stored.messages[0].id, stored.messages[1].id)
        self.assertGreater(stored.updated_at, stored.created_at)
        self.assertEqual(engine.seen_messages[0]["role"], "system")
        self.assertEqual(engine.seen_messages[-1], {"role": "user", "content": "Hello"})
        self.assertFalse(orch.is_busy())

    async def test_second_turn_reuses_session_and_sends_history(self):
        engine = _FakeTextEngine(["First answer."])
        orch = await self._orchestrator(engine)
        ctx = orch.new_context("health", "en")
        await orch.submit_user_turn(ctx, "I have a fever")
        session_id = ctx.session_id

        engine.fragments = ["Second answer."]
        await orch.submit_user_turn(ctx, "And a headache")

        self.assertEqual(ctx.session_id, session_id)
        self.assertEqual(len(self.store.list("health")), 1)
        self.assertEqual(
            [m["content"] for m in engine.seen_messages[1:]],
            ["I have a fever", "First answer.", "And a headache"],
        )

    async def test_history_pruned_to_context_window(self):
        engine = _FakeTextEngine(["ok"])
        orch = await self._orchestrator(engine, context_window_tokens=300, sampling=SamplingConfig(max_output_tokens=256))
        ctx = orch.new_context("general", "en")
        ctx.messages = [
            Message(id=1, role="user", content="old question " * 5),
            Message(id=2, role="assistant", content="old answer " * 5),
            Message(id=3, role="user", content="recent question " * 5),
            Message(id=4, role="assistant", content="recent answer " * 5),
        ]

        await orch.submit_user_turn(ctx, "new question")

        contents = [m["content"] for m in engine.seen_messages]
        self.assertEqual(engine.seen_messages[0]["role"], "system")
        # No room beyond the reserved output: only the newest prior message survives.
        self.assertEqual(contents[1:], ["recent answer " * 5, "new question"])

    async def test_cancel_keeps_partial_with_stopped_marker(self):
        engine = _FakeTextEngine(["Sure", ", the", " answer", " is"], pause_after=2)
        orch = await self._orchestrator(engine)
        ctx = orch.new_context("education", "en")

        task = asyncio.create_task(orch.submit_user_turn(ctx, "Explain fractions"))
        await engine.paused.wait()
        self.assertTrue(orch.is_busy())
        await orch.cancel()
        reply = await task

        self.assertEqual(reply.content, "Sure, the\n\n[stopped]")
        stored = self.store.get("education", ctx.session_id)
        self.assertEqual(stored.messages[-1].content, reply.content)
        self.assertFalse(orch.is_busy())

    async def test_cancel_before_first_token_leaves_empty_reply(self):
        engine = _FakeTextEngine(["Never", " sent"], pause_after=0)
        orch = await self._orchestrator(engine)
        ctx = orch.new_context("general", "en")

        task = asyncio.create_task(orch.submit_user_turn(ctx, "Hi"))
        await engine.paused.wait()
        await orch.cancel()
        reply = await task

        self.assertEqual(reply.content, "")

    async def test_concurrent_submit_is_rejected(self):
        engine = _FakeTextEngine(["a", "b"], pause_after=1)
        orch = await self._orchestrator(engine)
        ctx = orch.new_context("general", "en")

        task = asyncio.create_task(orch.submit_user_turn(ctx, "first"))
        await engine.paused.wait()
        with self.assertRaises(BusyError):
            await orch.submit_user_turn(orch.new_context("legal", "en"), "second")
        await orch.cancel()
        await task

    async def test_empty_text_rejected(self):
        orch = await self._orchestrator(_FakeTextEngine(["x"]))
        with self.assertRaises(ValueError):
            await orch.submit_user_turn(orch.new_context("general"), "   ")

    async def test_engine_not_ready_rejected(self):
        orch = ConversationOrchestrator(self.store, GenerationController(_FakeTextEngine(["x"])))
        ctx = orch.new_context("general")
        with self.assertRaises(EngineNotReady):
            await orch.submit_user_turn(ctx, "hello")
        self.assertEqual(ctx.messages, [])

    async def test_storage_failure_sets_warning_and_returns_reply(self):
        orch = await self._orchestrator(_FakeTextEngine(["Fine."]), store=_FailingAppendStore(self.root / "chats"))
        ctx = orch.new_context("general", "en")

        reply = await orch.submit_user_turn(ctx, "Hello")

        self.assertEqual(reply.content, "Fine.")
        self.assertEqual(ctx.last_warning, StorageError.user_text)
        self.assertEqual([m.role for m in ctx.messages], ["user", "assistant"])

    async def test_session_create_failure_still_answers(self):
        orch = await self._orchestrator(_FakeTextEngine(["Fine."]), store=_FailingCreateStore(self.root / "chats"))
        ctx = orch.new_context("general", "en")

        reply = await orch.submit_user_turn(ctx, "Hello")

        self.assertEqual(reply.content, "Fine.")
        self.assertIsNone(ctx.session_id)
        self.assertEqual(ctx.last_warning, StorageError.user_text)

    async def test_generation_failure_keeps_partial_and_context(self):
        orch = await self._orchestrator(_FakeTextEngine(["Call", " 108", " now"], fail_after=2))
        ctx = orch.new_context("health", "en")

        with self.assertRaises(GenerationFailed) as err:
            await orch.submit_user_turn(ctx, "Chest pain")

        self.assertEqual(err.exception.domain, "health")
        self.assertEqual(err.exception.session_id, ctx.session_id)
        self.assertEqual(ctx.messages[-1].content, "Call 108")
        self.assertFalse(orch.is_busy())

    async def test_open_session_resumes_stored_chat(self):
        orch = await self._orchestrator(_FakeTextEngine(["Answer."]))
        ctx = orch.new_context("legal", "hi")
        await orch.submit_user_turn(ctx, "Fake lottery call")

        resumed = orch.open_session("legal", ctx.session_id)

        self.assertEqual(resumed.language, "hi")
        self.assertEqual([m.content for m in resumed.messages], ["Fake lottery call", "Answer."])

    async def test_voice_turn_transcribes_then_answers_and_deletes_recording(self):
        speech = _FakeSpeechEngine({"segments": [{"text": " What is"}, {"text": " ORS?"}]})
        transcriber = TranscriptionService(speech, str(self.root))
        await transcriber.initialize()
        recordings = self.root / "recordings"
        recordings.mkdir()
        orch = await self._orchestrator(
            _FakeTextEngine(["Oral rehydration salts."]), transcriber=transcriber, recordings_dir=recordings
        )
        ctx = orch.new_context("health", "en")
        recording = recordings / "rec.wav"
        recording.write_bytes(b"\0" * 6000)

        reply = await orch.submit_voice_turn(ctx, str(recording))

        self.assertEqual(reply.content, "Oral rehydration salts.")
        self.assertEqual(ctx.messages[0].content, "What is ORS?")
        self.assertTrue(ctx.messages[0].is_voice_origin)
        self.assertEqual(speech.calls[0]["language"], "en")
        self.assertFalse(recording.exists())

    async def _voice_orchestrator(self, recordings):
        speech = _FakeSpeechEngine({"segments": [{"text": "hello"}]})
        transcriber = TranscriptionService(speech, str(self.root))
        await transcriber.initialize()
        orch = await self._orchestrator(_FakeTextEngine(["Hi."]), transcriber=transcriber, recordings_dir=recordings)
        return orch, speech

    async def test_file_outside_recordings_is_refused_and_kept(self):
        recordings = self.root / "recordings"
        recordings.mkdir()
        orch, speech = await self._voice_orchestrator(recordings)
        notes = self.root / "notes.txt"
        notes.write_text("my notes, please do not delete")
        escaped = recordings / ".." / "notes.txt"

        for path in (notes, escaped):
            with self.assertRaises(AudioFileMissing):
                await orch.transcribe(orch.new_context("general", "en"), str(path))

        self.assertTrue(notes.exists())
        self.assertEqual(speech.calls, [])

    async def test_rejected_recording_is_cleaned_up(self):
        recordings = self.root / "recordings"
        recordings.mkdir()
        orch, _ = await self._voice_orchestrator(recordings)
        short = recordings / "short.wav"
        short.write_bytes(b"\0" * 100)

        with self.assertRaises(AudioTooSmall):
            await orch.transcribe(orch.new_context("general", "en"), str(short))

        self.assertFalse(short.exists())

    async def test_without_recordings_folder_nothing_is_deleted(self):
        orch, _ = await self._voice_orchestrator(None)
        clip = self.root / "clip.wav"
        clip.write_bytes(b"\0" * 6000)

        text = await orch.transcribe(orch.new_context("general", "en"), str(clip))

        self.assertEqual(text, "hello")
        self.assertTrue(clip.exists())

    async def test_replacing_generator_mid_turn_keeps_outcome_of_running_turn(self):
        engine = _FakeTextEngine(["Namaste", ", how", " are", " you?"], pause_after=2)
        orch = await self._orchestrator(engine)
        old = orch.generator
        fresh = GenerationController(_FakeTextEngine(["x"]))
        ctx = orch.new_context("general", "en")

        task = asyncio.create_task(orch.submit_user_turn(ctx, "Hello"))
        await engine.paused.wait()
        previous = await orch.replace_generator(fresh)
        reply = await task

        self.assertIs(previous, old)
        self.assertIs(orch.generator, fresh)
        self.assertEqual(reply.content, "Namaste, how\n\n[stopped]")
        self.assertTrue(ctx.last_outcome.cancelled)
        self.assertEqual(ctx.last_outcome.tokens_per_second, 8.0)
        self.assertIsNone(fresh.last_outcome)
        self.assertEqual(self.store.get("general", ctx.session_id).messages[-1].content, reply.content)


if __name__ == "__main__":
    unittest.main()
