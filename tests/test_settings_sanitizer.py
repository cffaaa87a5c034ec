import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sahay import config as c


class TestSettingsSanitizer(unittest.TestCase):
    def test_defaults_when_empty(self):
        cfg = c.sanitize_config_values({}, base=c.DEFAULT_CONFIG)
        self.assertEqual(cfg, c.DEFAULT_CONFIG)

    def test_coercion_and_clamping(self):
        cfg = c.sanitize_config_values(
            {
                "verbose_logging": "yes",
                "temperature": "9",
                "top_p": "0",
                "whisper_device": "GPU",
                "max_sessions_per_domain": "0",
                "transcription_timeout_seconds": "abc",
                "default_language": "fr",
            },
            base=c.DEFAULT_CONFIG,
        )
        self.assertTrue(cfg["verbose_logging"])
        self.assertEqual(cfg["temperature"], 2.0)
        self.assertEqual(cfg["top_p"], 0.05)
        self.assertEqual(cfg["whisper_device"], "cuda")
        self.assertEqual(cfg["max_sessions_per_domain"], 1)
        self.assertEqual(cfg["transcription_timeout_seconds"], 120.0)
        self.assertEqual(cfg["default_language"], "en")

    def test_output_ceiling_leaves_room_for_prompt(self):
        cfg = c.sanitize_config_values({"context_window_tokens": 512, "max_output_tokens": 4000})
        self.assertEqual(cfg["max_output_tokens"], 256)

    def test_remote_text_endpoint_refused(self):
        cfg = c.sanitize_config_values({"llm_base_url": "https://api.example.com/v1"})
        self.assertEqual(cfg["llm_base_url"], c.DEFAULT_CONFIG["llm_base_url"])

        cfg = c.sanitize_config_values({"llm_base_url": "http://localhost:11434/v1"})
        self.assertEqual(cfg["llm_base_url"], "http://localhost:11434/v1")

    def test_wildcard_bind_address_is_not_loopback(self):
        self.assertFalse(c.is_loopback_url("http://0.0.0.0:8080/v1"))
        self.assertTrue(c.is_loopback_url("http://[::1]:8080/v1"))
        cfg = c.sanitize_config_values({"llm_base_url": "http://0.0.0.0:8080/v1"})
        self.assertEqual(cfg["llm_base_url"], c.DEFAULT_CONFIG["llm_base_url"])

    def test_unknown_keys_dropped_and_base_respected(self):
        base = c.sanitize_config_values({"temperature": 0.2})
        cfg = c.sanitize_config_values({"surprise": True, "top_p": 0.5}, base=base)
        self.assertNotIn("surprise", cfg)
        self.assertEqual(cfg["temperature"], 0.2)
        self.assertEqual(cfg["top_p"], 0.5)


class TestSettingsFile(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "Sahay" / "settings.json"

    def tearDown(self):
        self._tmp.cleanup()

    def test_save_then_load(self):
        saved = c.save_config({"temperature": 0.3, "default_language": "ml"}, self.path)

        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8")), saved)
        self.assertFalse(self.path.with_suffix(".json.tmp").exists())
        loaded = c.load_config(self.path)
        self.assertEqual(loaded["temperature"], 0.3)
        self.assertEqual(loaded["default_language"], "ml")

    def test_corrupt_file_falls_back_to_defaults(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{oops", encoding="utf-8")
        self.assertEqual(c.load_config(self.path), c.DEFAULT_CONFIG)

    def test_env_overrides_paths(self):
        data_dir = Path(self._tmp.name) / "data"
        with patch.dict(os.environ, {"SAHAY_CONFIG_PATH": str(self.path), "SAHAY_DATA_DIR": str(data_dir)}):
            self.assertEqual(c.get_config_path(), self.path.resolve())
            self.assertEqual(c.get_data_dir(), data_dir.resolve())
        self.assertTrue(data_dir.is_dir())


if __name__ == "__main__":
    unittest.main()
