from __future__ import annotations

import threading
from logging import getLogger
from typing import Any, Callable, Optional

import sounddevice as sd

from config import AUDIO_CHANNELS, AUDIO_CHUNK_MS, AUDIO_SAMPLE_RATE

logger = getLogger(__name__)


class MicrophoneCapture:
    """
    Default input device as raw PCM (16 kHz, mono, int16) in fixed-size chunks.

    Chunks are delivered on the PortAudio callback thread; the consumer must
    hand them over to its own loop quickly.
    """

    def __init__(
            self,
            sample_rate: int = AUDIO_SAMPLE_RATE,
            channels: int = AUDIO_CHANNELS,
            chunk_ms: int = AUDIO_CHUNK_MS,
            device: Optional[Any] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self.device = device
        self._stream: Optional[sd.RawInputStream] = None
        self._lock = threading.Lock()
        self._on_chunk: Optional[Callable[[bytes], None]] = None
        self._on_error: Optional[Callable[[Exception], None]] = None
        self._stopping = False

    def start(self, on_chunk: Callable[[bytes], None], on_error: Callable[[Exception], None]) -> None:
        with self._lock:
            if self._stream is not None:
                return
            self._on_chunk = on_chunk
            self._on_error = on_error
            self._stopping = False
            blocksize = int(self.sample_rate * (self.chunk_ms / 1000.0))
            stream = sd.RawInputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
                blocksize=blocksize,
                device=self.device,
                callback=self._on_audio,
                finished_callback=self._on_finished,
            )
            stream.start()
            self._stream = stream
            logger.info("[AUDIO] microphone capture started (%d Hz, %d ms chunks)", self.sample_rate, self.chunk_ms)

    def stop(self) -> None:
        with self._lock:
            if self._stream is None:
                return
            self._stopping = True
            stream, self._stream = self._stream, None
        stream.stop()
        stream.close()
        logger.info("[AUDIO] microphone capture stopped")

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: sd.CallbackFlags) -> None:
        if status:
            logger.warning("[AUDIO] input status: %s", status)
        on_chunk = self._on_chunk
        if on_chunk is not None:
            on_chunk(bytes(indata))

    def _on_finished(self) -> None:
        if self._stopping:
            return
        logger.error("[AUDIO] input stream ended unexpectedly")
        if self._on_error is not None:
            self._on_error(RuntimeError("Audio input stream ended unexpectedly"))
