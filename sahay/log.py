"""
Logging helpers shared by the app and the sahay package.

`log_important` writes single-line `IMPORTANT <event> | k=v ...` records on the
`sahay.IMPORTANT` logger so key lifecycle events stay readable even when the
rest of the app runs quiet. `log_turn` is the per-turn variant used by the
orchestrator.
"""
import logging
import time
from typing import Any

logger = logging.getLogger("sahay")
important_logger = logging.getLogger("sahay.IMPORTANT")

_IMPORTANT_LAST_BY_KEY: dict[str, float] = {}
# Chatty during model loads and streaming; kept at WARNING unless verbose.
_NOISY_LOGGERS = (
    "sahay.transcription",
    "sahay.audio",
    "faster_whisper",
    "ctranslate2",
    "openai",
    "httpx",
    "uvicorn.access",
)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def safe_log_value(value: Any, *, max_len: int = 96) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return f"{value:.2f}"
    s = " ".join(str(value).split())
    if not s:
        return "-"
    if len(s) > max_len:
        s = s[: max_len - 3] + "..."
    return s


def log_important(
    event: str,
    *,
    level: int = logging.INFO,
    dedupe_key: str | None = None,
    dedupe_window_s: float = 0.0,
    **fields: Any,
) -> None:
    try:
        ev = safe_log_value(event, max_len=64)
        if dedupe_key and dedupe_window_s > 0:
            token = f"{ev}|{dedupe_key}"
            now_ts = time.time()
            if now_ts - _IMPORTANT_LAST_BY_KEY.get(token, 0.0) < float(dedupe_window_s):
                return
            _IMPORTANT_LAST_BY_KEY[token] = now_ts

        line = f"IMPORTANT {ev}"
        if fields:
            line += " | " + " ".join(f"{k}={safe_log_value(v)}" for k, v in sorted(fields.items()))
        important_logger.log(level, line)
    except Exception:
        logger.exception("Failed to emit important log")


def log_turn(
    event: str,
    *,
    domain: str,
    session_id: str | None,
    outcome: Any = None,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Log one chat turn. `outcome` is a GenerationOutcome when the engine produced one."""
    if outcome is not None:
        fields.setdefault("tokens", getattr(outcome, "token_count", None))
        fields.setdefault("tps", getattr(outcome, "tokens_per_second", None))
        fields.setdefault("cancelled", bool(getattr(outcome, "cancelled", False)))
        fields.setdefault("hit_limit", bool(getattr(outcome, "hit_limit", False)))
        if getattr(outcome, "timed_out", False):
            fields.setdefault("timed_out", True)
    # Chats are unsaved until the first message persists.
    log_important(event, level=level, domain=domain, session=(session_id or "unsaved"), **fields)


def apply_runtime_log_levels(cfg: dict) -> None:
    verbose = bool((cfg or {}).get("verbose_logging", False))

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    important_logger.setLevel(logging.INFO)

    noisy_level = logging.INFO if verbose else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)

    log_important(
        "logging.mode",
        dedupe_key=f"verbose={verbose}",
        dedupe_window_s=0.5,
        verbose=verbose,
        noisy_level=("info" if verbose else "warning"),
    )
