import asyncio
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

import main
from sahay.config import sanitize_config_values
from sahay.llm import CompletionResult
from sahay.runtime import AssistantRuntime


class _FakeTextEngine:
    def __init__(self, fragments):
        self.fragments = list(fragments)

    async def initialize(self, model_path, profile):
        return None

    async def stream_complete(self, messages, *, max_output_tokens, stop_sequences, sampling, on_token):
        for frag in self.fragments:
            on_token(frag)
            await asyncio.sleep(0)
        return CompletionResult(tokens_per_second=5.0, token_count=len(self.fragments))

    async def cancel(self):
        return None

    async def release(self):
        return None


class TestApi(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        model_path = root / "model.gguf"
        model_path.write_bytes(b"GGUF")
        self._env = patch.dict(
            os.environ,
            {"SAHAY_CONFIG_PATH": str(root / "settings.json"), "SAHAY_DATA_DIR": str(root / "data")},
        )
        self._env.start()

        cfg = sanitize_config_values({"llm_model_path": str(model_path)})
        self.runtime = AssistantRuntime(cfg, root / "data")
        self.runtime.generator.engine = _FakeTextEngine(["Namaste", "!"])
        self._factory = patch("main.create_runtime", lambda _cfg: self.runtime)
        self._factory.start()
        self._config = patch("main.config", cfg)
        self._config.start()

    def tearDown(self):
        self._config.stop()
        self._factory.stop()
        self._env.stop()
        self._tmp.cleanup()

    def test_health_and_domains(self):
        with TestClient(main.app) as client:
            health = client.get("/api/health").json()
            self.assertEqual(health["status"], "ok")
            self.assertEqual(health["text_engine"], "ready")
            self.assertEqual(health["speech_engine"], "unavailable")

            domains = client.get("/api/domains").json()["domains"]
            self.assertEqual([d["id"] for d in domains], ["general", "education", "health", "legal", "frontline"])
            self.assertIn("auto", domains[0]["languages"])

    def test_settings_update_is_sanitized_and_applied(self):
        with TestClient(main.app) as client:
            resp = client.post("/api/settings", json={"temperature": "0.2", "max_output_tokens": 100})
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.json()["config"]["temperature"], 0.2)
            self.assertEqual(self.runtime.orchestrator.sampling.max_output_tokens, 100)

            self.assertEqual(client.post("/api/settings", content="nope").status_code, 400)

            reset = client.post("/api/settings/reset").json()["config"]
            self.assertEqual(reset["temperature"], 0.7)

    def test_chat_socket_turn_then_session_routes(self):
        with TestClient(main.app) as client:
            with client.websocket_connect("/ws/chat") as ws:
                ws.send_json({"type": "start", "domain": "health", "language": "en"})
                opened = ws.receive_json()
                self.assertEqual(opened["type"], "session")
                self.assertIsNone(opened["session_id"])
                self.assertIn("108", opened["greeting"])

                ws.send_json({"type": "user_text", "text": "Hello"})
                events = []
                while True:
                    event = ws.receive_json()
                    events.append(event)
                    if event["type"] in ("done", "error"):
                        break

            self.assertEqual([e["text"] for e in events if e["type"] == "token"], ["Namaste", "!"])
            session_event = next(e for e in events if e["type"] == "session")
            done = events[-1]
            self.assertEqual(done["type"], "done")
            self.assertEqual(done["message"]["content"], "Namaste!")

            session_id = session_event["session_id"]
            listing = client.get("/api/sessions/health").json()["sessions"]
            self.assertEqual([s["id"] for s in listing], [session_id])
            self.assertEqual(listing[0]["title"], "Hello")
            self.assertEqual(listing[0]["messageCount"], 2)
            self.assertEqual(len(client.get("/api/sessions/health", params={"q": "namaste"}).json()["sessions"]), 1)

            detail = client.get(f"/api/sessions/health/{session_id}").json()["session"]
            self.assertEqual([m["type"] for m in detail["messages"]], ["user", "assistant"])

            self.assertEqual(client.delete(f"/api/sessions/health/{session_id}").status_code, 200)
            self.assertEqual(client.get(f"/api/sessions/health/{session_id}").status_code, 404)
            self.assertEqual(client.delete("/api/sessions/health").status_code, 200)

    def test_socket_errors_are_user_facing(self):
        with TestClient(main.app) as client:
            with client.websocket_connect("/ws/chat") as ws:
                ws.send_json({"type": "user_text", "text": "Hello"})
                self.assertEqual(ws.receive_json()["code"], 400)

                ws.send_json({"type": "start", "domain": "sports"})
                self.assertEqual(ws.receive_json()["type"], "error")

                ws.send_json({"type": "start", "domain": "general", "session_id": "missing"})
                err = ws.receive_json()
                self.assertEqual(err["code"], 404)

                ws.send_text("{bad json")
                self.assertEqual(ws.receive_json()["message"], "Invalid JSON")

    def test_voice_path_outside_recordings_is_refused(self):
        notes = Path(self._tmp.name) / "notes.txt"
        notes.write_bytes(b"x" * 6000)
        with TestClient(main.app) as client:
            with client.websocket_connect("/ws/chat") as ws:
                ws.send_json({"type": "start", "domain": "general", "language": "en"})
                self.assertEqual(ws.receive_json()["type"], "session")

                ws.send_json({"type": "voice", "audio_path": str(notes)})
                err = ws.receive_json()

        self.assertEqual(err["type"], "error")
        self.assertEqual(err["code"], 422)
        self.assertTrue(notes.exists())

    def test_unknown_domain_route(self):
        with TestClient(main.app) as client:
            resp = client.get("/api/sessions/sports")
            self.assertEqual(resp.status_code, 400)
            self.assertEqual(resp.json()["status"], "error")


if __name__ == "__main__":
    unittest.main()
