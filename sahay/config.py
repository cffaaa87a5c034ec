import json
import logging
import os
from pathlib import Path
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DOMAINS = ("general", "education", "health", "legal", "frontline")
LANGUAGES = ("en", "hi", "ml", "kn", "auto")
LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1")


DEFAULT_CONFIG = {
    # Models (local files only)
    "llm_model_path": "",
    "whisper_model_path": "",
    # OpenAI-compatible local runtime serving the GGUF model (llama.cpp server / Ollama).
    "llm_base_url": "http://127.0.0.1:8080/v1",
    "llm_model_name": "sarvam-1",
    "whisper_device": "cpu",  # "cpu" or "cuda"
    "whisper_compute_type": "",  # empty -> int8 on CPU, float16 on CUDA

    # Device profile overrides (0 -> detect)
    "context_window_tokens": 2048,
    "batch_size": 0,
    "thread_count": 0,
    "gpu_layers": -1,  # -1 -> detect

    # Generation
    "max_output_tokens": 256,
    "temperature": 0.7,
    "top_p": 0.9,
    "generation_timeout_seconds": 0.0,  # 0 disables the wall-clock guard
    "generation_stopped_marker": "[stopped]",
    "truncate_oversized_message": False,

    # Speech
    "default_language": "en",
    "transcription_timeout_seconds": 120.0,
    "speed_optimized_transcription": True,
    "delete_recordings_after_transcription": True,

    # Storage
    "max_sessions_per_domain": 50,

    # Logging
    "verbose_logging": False,
}


def get_config_path() -> Path:
    configured = os.environ.get("SAHAY_CONFIG_PATH")
    if configured:
        return Path(configured).expanduser().resolve()

    base_dir = os.environ.get("APPDATA") or str(Path.home())
    config_dir = Path(base_dir) / "Sahay"
    return (config_dir / "settings.json").resolve()


def get_data_dir() -> Path:
    configured = os.environ.get("SAHAY_DATA_DIR")
    if configured:
        data_dir = Path(configured).expanduser().resolve()
    else:
        base_dir = os.environ.get("APPDATA") or str(Path.home())
        data_dir = Path(base_dir) / "Sahay" / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def is_loopback_url(url: str) -> bool:
    try:
        host = (urlparse(url).hostname or "").strip().lower()
    except ValueError:
        return False
    return host in LOOPBACK_HOSTS


def _coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("1", "true", "yes", "on", "y"):
            return True
        if s in ("0", "false", "no", "off", "n", ""):
            return False
    return default


def _coerce_str(value: object, default: str, *, strip: bool = True, max_len: int | None = None) -> str:
    if value is None:
        out = default
    elif isinstance(value, str):
        out = value
    else:
        out = str(value)
    if strip:
        out = out.strip()
    if max_len is not None and max_len >= 0:
        out = out[:max_len]
    return out


def _coerce_int_in_range(value: object, default: int, *, min_v: int | None = None, max_v: int | None = None) -> int:
    try:
        out = int(float(value))
    except Exception:
        out = int(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_float_in_range(
    value: object,
    default: float,
    *,
    min_v: float | None = None,
    max_v: float | None = None,
) -> float:
    try:
        out = float(value)
    except Exception:
        out = float(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_choice(value: object, choices: set[str], default: str) -> str:
    s = _coerce_str(value, default).lower()
    return s if s in choices else default


def _coerce_whisper_device(value: object) -> str:
    s = _coerce_str(value, "cpu").lower()
    if s in ("gpu", "cuda"):
        return "cuda"
    return "cpu"


def sanitize_config_values(raw: dict | None, *, base: dict | None = None) -> dict:
    raw_dict = raw if isinstance(raw, dict) else {}
    src: dict[str, object] = {}
    if isinstance(base, dict):
        src.update(base)
    if raw_dict:
        src.update(raw_dict)

    out: dict[str, object] = dict(DEFAULT_CONFIG)

    out["llm_model_path"] = _coerce_str(src.get("llm_model_path"), "", max_len=4096)
    out["whisper_model_path"] = _coerce_str(src.get("whisper_model_path"), "", max_len=4096)
    out["llm_base_url"] = _coerce_str(src.get("llm_base_url"), str(DEFAULT_CONFIG["llm_base_url"]), max_len=2048) or str(
        DEFAULT_CONFIG["llm_base_url"]
    )
    if not is_loopback_url(str(out["llm_base_url"])):
        logger.warning("Ignoring non-loopback llm_base_url: %s", out["llm_base_url"])
        out["llm_base_url"] = str(DEFAULT_CONFIG["llm_base_url"])
    out["llm_model_name"] = _coerce_str(src.get("llm_model_name"), str(DEFAULT_CONFIG["llm_model_name"]), max_len=512) or str(
        DEFAULT_CONFIG["llm_model_name"]
    )
    out["whisper_device"] = _coerce_whisper_device(src.get("whisper_device"))
    out["whisper_compute_type"] = _coerce_choice(
        src.get("whisper_compute_type"),
        {"", "int8", "int8_float16", "float16", "float32"},
        "",
    )

    out["context_window_tokens"] = _coerce_int_in_range(src.get("context_window_tokens"), 2048, min_v=256, max_v=131072)
    out["batch_size"] = _coerce_int_in_range(src.get("batch_size"), 0, min_v=0, max_v=8192)
    out["thread_count"] = _coerce_int_in_range(src.get("thread_count"), 0, min_v=0, max_v=256)
    out["gpu_layers"] = _coerce_int_in_range(src.get("gpu_layers"), -1, min_v=-1, max_v=999)

    out["max_output_tokens"] = _coerce_int_in_range(src.get("max_output_tokens"), 256, min_v=16, max_v=4096)
    # Output ceiling must leave room for at least some prompt.
    max_out_cap = max(16, int(out["context_window_tokens"]) // 2)
    if int(out["max_output_tokens"]) > max_out_cap:
        out["max_output_tokens"] = max_out_cap
    out["temperature"] = _coerce_float_in_range(src.get("temperature"), 0.7, min_v=0.0, max_v=2.0)
    out["top_p"] = _coerce_float_in_range(src.get("top_p"), 0.9, min_v=0.05, max_v=1.0)
    out["generation_timeout_seconds"] = _coerce_float_in_range(
        src.get("generation_timeout_seconds"), 0.0, min_v=0.0, max_v=3600.0
    )
    out["generation_stopped_marker"] = _coerce_str(
        src.get("generation_stopped_marker"), str(DEFAULT_CONFIG["generation_stopped_marker"]), max_len=64
    )
    out["truncate_oversized_message"] = _coerce_bool(
        src.get("truncate_oversized_message"), bool(DEFAULT_CONFIG["truncate_oversized_message"])
    )

    out["default_language"] = _coerce_choice(src.get("default_language"), set(LANGUAGES), "en")
    out["transcription_timeout_seconds"] = _coerce_float_in_range(
        src.get("transcription_timeout_seconds"), 120.0, min_v=5.0, max_v=1800.0
    )
    out["speed_optimized_transcription"] = _coerce_bool(
        src.get("speed_optimized_transcription"), bool(DEFAULT_CONFIG["speed_optimized_transcription"])
    )
    out["delete_recordings_after_transcription"] = _coerce_bool(
        src.get("delete_recordings_after_transcription"),
        bool(DEFAULT_CONFIG["delete_recordings_after_transcription"]),
    )

    out["max_sessions_per_domain"] = _coerce_int_in_range(src.get("max_sessions_per_domain"), 50, min_v=1, max_v=500)
    out["verbose_logging"] = _coerce_bool(src.get("verbose_logging"), bool(DEFAULT_CONFIG["verbose_logging"]))
    return out


def load_config(path: Path | None = None) -> dict:
    cfg_path = path or get_config_path()
    loaded: dict = {}
    try:
        if cfg_path.is_file():
            data = json.loads(cfg_path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                loaded = data
    except Exception:
        logger.exception("Failed to load settings file")
    return sanitize_config_values(loaded, base=DEFAULT_CONFIG)


def save_config(cfg: dict, path: Path | None = None) -> dict:
    cfg_path = path or get_config_path()
    clean_cfg = sanitize_config_values(cfg, base=DEFAULT_CONFIG)
    try:
        cfg_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = cfg_path.with_suffix(cfg_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(clean_cfg, indent=2), encoding="utf-8")
        tmp_path.replace(cfg_path)
    except Exception:
        logger.exception("Failed to save settings file")
        raise
    return clean_cfg
