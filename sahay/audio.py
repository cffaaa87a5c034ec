import logging
import threading
import time
import uuid
import wave
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recording:
    path: str
    duration_s: float


def write_wav(path: Path, audio: np.ndarray, sample_rate: int) -> None:
    """Write mono float32 [-1, 1] audio as 16-bit PCM WAV."""
    arr = np.nan_to_num(np.asarray(audio, dtype=np.float32).reshape(-1), nan=0.0, posinf=0.0, neginf=0.0)
    arr = np.clip(arr, -1.0, 1.0)
    pcm = (arr * 32767.0).astype("<i2")
    path.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm.tobytes())


class AudioRecorder:
    """
    Push-to-talk microphone capture into a WAV file. One recording at a time:
    `start()` opens the default (or named) microphone on a worker thread and
    `stop()` returns the finished file and its duration.
    """

    def __init__(self, output_dir: Path, *, sample_rate: int = 16000, block_size: int = 1024, max_duration_s: float = 300.0):
        self.output_dir = Path(output_dir)
        self.sample_rate = int(sample_rate)
        self.block_size = int(block_size)
        self.max_duration_s = float(max_duration_s)
        self._lock = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None
        self._chunks: list[np.ndarray] = []
        self._error: BaseException | None = None
        self._handle: str | None = None
        self._started_ts = 0.0

    @property
    def is_recording(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _find_microphone(self, device_name: str | None):
        import soundcard as sc

        if device_name:
            for mic in sc.all_microphones(include_loopback=False):
                if mic.name == device_name:
                    return mic
            logger.warning("Microphone %r not found; using default", device_name)
        return sc.default_microphone()

    def _capture(self, device_name: str | None, stop_event: threading.Event) -> None:
        max_samples = int(self.sample_rate * self.max_duration_s)
        captured = 0
        try:
            mic = self._find_microphone(device_name)
            with mic.recorder(samplerate=self.sample_rate, channels=1) as rec:
                while not stop_event.is_set():
                    data = rec.record(numframes=self.block_size)
                    data = np.nan_to_num(data, nan=0.0, posinf=0.0, neginf=0.0)
                    payload = np.clip(data, -1.0, 1.0).astype(np.float32).flatten()
                    self._chunks.append(payload)
                    captured += int(payload.size)
                    if captured >= max_samples:
                        logger.info("Recording reached %.0fs limit; stopping capture", self.max_duration_s)
                        break
        except Exception as e:
            logger.exception("Audio capture failed")
            self._error = e

    def start(self, device_name: str | None = None) -> str:
        with self._lock:
            if self.is_recording:
                raise RuntimeError("Already recording")
            self._chunks = []
            self._error = None
            self._stop_event = threading.Event()
            self._handle = uuid.uuid4().hex[:12]
            self._started_ts = time.monotonic()
            self._thread = threading.Thread(
                target=self._capture,
                args=(device_name, self._stop_event),
                name="sahay-mic",
                daemon=True,
            )
            self._thread.start()
            logger.info("Recording started (%s)", self._handle)
            return self._handle

    def stop(self) -> Recording:
        with self._lock:
            if self._thread is None or self._stop_event is None:
                raise RuntimeError("Not recording")
            self._stop_event.set()
            self._thread.join(timeout=2.0)
            self._thread = None
            self._stop_event = None

            if self._error is not None:
                err = self._error
                self._error = None
                raise RuntimeError(f"Audio capture failed: {err}") from err

            audio = np.concatenate(self._chunks) if self._chunks else np.zeros((0,), dtype=np.float32)
            self._chunks = []
            path = self.output_dir / f"recording_{self._handle}.wav"
            write_wav(path, audio, self.sample_rate)
            duration = float(audio.size) / float(self.sample_rate)
            logger.info("Recording stopped: %s (%.2fs)", path.name, duration)
            return Recording(path=str(path), duration_s=duration)

    def abort(self) -> None:
        with suppress(RuntimeError):
            recording = self.stop()
            with suppress(OSError):
                Path(recording.path).unlink()
