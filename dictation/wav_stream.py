from __future__ import annotations

import threading
import wave
from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from typing import Callable, Iterator, Optional

from config import AUDIO_CHANNELS, AUDIO_CHUNK_MS, AUDIO_SAMPLE_RATE, AUDIO_SAMPLE_WIDTH_BYTES

logger = getLogger(__name__)


def make_silence_chunk(duration_s: float, sample_rate: int = AUDIO_SAMPLE_RATE,
                       sample_width_bytes: int = AUDIO_SAMPLE_WIDTH_BYTES) -> bytes:
    """Create a silence audio chunk of given duration."""
    return b"\x00" * sample_width_bytes * int(sample_rate * duration_s)


@dataclass(frozen=True)
class WavFormat:
    """
    Description of wave format:
    - channels: Number of audio channels (1=mono, 2=stereo).
    - sample_width_bytes: Bytes per sample (2=16-bit).
    - sample_rate: Samples per second in Hz.
    - n_frames: Total number of audio frames in the file.
    - comptype: Compression type code ('NONE' for uncompressed PCM).
    """
    channels: int
    sample_width_bytes: int
    sample_rate: int
    n_frames: int
    comptype: str

    @property
    def duration_s(self) -> float:
        return self.n_frames / self.sample_rate if self.sample_rate else 0.0


def inspect_wav(path: Path) -> WavFormat:
    with wave.open(str(path), "rb") as wf:
        return WavFormat(channels=wf.getnchannels(), sample_width_bytes=wf.getsampwidth(),
                         sample_rate=wf.getframerate(), n_frames=wf.getnframes(), comptype=wf.getcomptype())


def check_wav_format(path: Path, fmt: WavFormat) -> None:
    """Raise ValueError unless the file is what a capture device would produce."""
    if fmt.comptype != "NONE":
        raise ValueError(f"{path.name}: compressed WAV not supported (comptype={fmt.comptype})")
    if fmt.sample_rate != AUDIO_SAMPLE_RATE:
        raise ValueError(f"{path.name}: sample_rate={fmt.sample_rate} expected={AUDIO_SAMPLE_RATE}")
    if fmt.channels != AUDIO_CHANNELS:
        raise ValueError(f"{path.name}: channels={fmt.channels} expected={AUDIO_CHANNELS}")
    if fmt.sample_width_bytes != AUDIO_SAMPLE_WIDTH_BYTES:
        raise ValueError(f"{path.name}: sample_width_bytes={fmt.sample_width_bytes} "
                         f"expected={AUDIO_SAMPLE_WIDTH_BYTES}")


def iter_wav_pcm_chunks(path: Path, *, chunk_ms: int = AUDIO_CHUNK_MS) -> Iterator[bytes]:
    """
    Yield raw PCM frames from a 16 kHz mono 16-bit WAV file in fixed chunk sizes.

    The last chunk may be shorter.
    """
    fmt = inspect_wav(path)
    logger.debug("[WAV] file: %s; format: %r", path, fmt)
    check_wav_format(path, fmt)

    frames_per_chunk = int(fmt.sample_rate * (chunk_ms / 1000.0))
    if frames_per_chunk <= 0:
        raise ValueError("chunk_ms too small")

    with wave.open(str(path), "rb") as wf:
        while True:
            data = wf.readframes(frames_per_chunk)
            if not data:
                break
            yield data


class WavFileCapture:
    """
    Replays a WAV file as if it came from the microphone.

    Chunks are delivered from a worker thread with real-time pacing, wrapped
    in silence so endpoint detection sees the speech start and end.

    Args:
        path: 16 kHz mono 16-bit PCM WAV file.
        chunk_ms: Chunk duration.
        realtime_factor: 1.0 = real time, 0.0 = as fast as possible.
        silence_s: Silence streamed before and after the file.
        on_finished: Called from the worker thread once the whole file was delivered.
    """

    def __init__(
            self,
            path: Path,
            *,
            chunk_ms: int = AUDIO_CHUNK_MS,
            realtime_factor: float = 1.0,
            silence_s: float = 0.5,
            on_finished: Optional[Callable[[], None]] = None,
    ) -> None:
        self.path = Path(path)
        self.chunk_ms = chunk_ms
        self.realtime_factor = realtime_factor
        self.silence_s = silence_s
        self.on_finished = on_finished
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self, on_chunk: Callable[[bytes], None], on_error: Callable[[Exception], None]) -> None:
        if self._thread and self._thread.is_alive():
            return
        if not self.path.is_file():
            raise FileNotFoundError(f"WAV file not found: {self.path}")
        check_wav_format(self.path, inspect_wav(self.path))

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker, args=(on_chunk, on_error), daemon=True)
        self._thread.start()
        logger.info("[WAV] streaming %s", self.path.name)

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=0.5)

    def _chunks(self) -> Iterator[bytes]:
        chunk_s = self.chunk_ms / 1000.0
        silence = make_silence_chunk(chunk_s)
        n_silence = int(self.silence_s / chunk_s) if chunk_s > 0 else 0

        yield from (silence for _ in range(n_silence))
        yield from iter_wav_pcm_chunks(self.path, chunk_ms=self.chunk_ms)
        yield from (silence for _ in range(n_silence))

    def _worker(self, on_chunk: Callable[[bytes], None], on_error: Callable[[Exception], None]) -> None:
        pace_s = (self.chunk_ms / 1000.0) * self.realtime_factor
        cnt = 0
        try:
            for chunk in self._chunks():
                if self._stop_event.is_set():
                    logger.debug("[WAV] stopped after %d chunks", cnt)
                    return
                on_chunk(chunk)
                cnt += 1
                if pace_s > 0 and self._stop_event.wait(pace_s):
                    logger.debug("[WAV] stopped after %d chunks", cnt)
                    return
        except (OSError, EOFError, wave.Error, ValueError) as e:
            logger.exception("[WAV] streaming failed: %r", e)
            on_error(e)
            return

        logger.info("[WAV] done, sent %d chunks", cnt)
        if self.on_finished is not None:
            self.on_finished()
