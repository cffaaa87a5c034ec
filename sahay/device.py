import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 2048
DEFAULT_BATCH_SIZE = 512
MAX_THREADS = 8


@dataclass(frozen=True)
class DeviceProfile:
    context_window_tokens: int = DEFAULT_CONTEXT_WINDOW
    batch_size: int = DEFAULT_BATCH_SIZE
    thread_count: int = 4
    gpu_layers: int = 0


def cuda_device_count() -> int:
    try:
        import ctranslate2

        get_count = getattr(ctranslate2, "get_cuda_device_count", None)
        if callable(get_count):
            return int(get_count() or 0)
    except Exception as e:
        logger.debug(f"CUDA probe unavailable: {e}")
    return 0


def detect_device_profile(cfg: dict | None = None) -> DeviceProfile:
    """
    Build the process-wide profile handed to the text engine. Config values of 0
    (or -1 for gpu_layers) mean "detect".
    """
    cfg = cfg or {}

    ctx = int(cfg.get("context_window_tokens") or DEFAULT_CONTEXT_WINDOW)

    threads = int(cfg.get("thread_count") or 0)
    if threads <= 0:
        cpus = os.cpu_count() or 2
        # Leave a core for the UI/event loop on small devices.
        threads = max(1, min(MAX_THREADS, cpus - 1 if cpus > 2 else cpus))

    batch = int(cfg.get("batch_size") or 0)
    if batch <= 0:
        batch = min(DEFAULT_BATCH_SIZE, ctx)

    gpu_layers = cfg.get("gpu_layers", -1)
    try:
        gpu_layers = int(gpu_layers)
    except (TypeError, ValueError):
        gpu_layers = -1
    if gpu_layers < 0:
        gpu_layers = 1 if cuda_device_count() > 0 else 0

    profile = DeviceProfile(
        context_window_tokens=ctx,
        batch_size=batch,
        thread_count=threads,
        gpu_layers=gpu_layers,
    )
    logger.info(
        "Device profile: ctx=%s batch=%s threads=%s gpu_layers=%s",
        profile.context_window_tokens,
        profile.batch_size,
        profile.thread_count,
        profile.gpu_layers,
    )
    return profile
