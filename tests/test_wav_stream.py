"""
Tests for WAV chunking and the WAV-file capture source.

Writes small WAV files to a temp dir; no audio device needed.

    pytest tests/test_wav_stream.py -v
"""
from __future__ import annotations

import threading
import unittest
import wave
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import List

from dictation.wav_stream import WavFileCapture, inspect_wav, iter_wav_pcm_chunks, make_silence_chunk


def write_wav(path: Path, n_frames: int, sample_rate: int = 16000, channels: int = 1) -> None:
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(b"\x01\x00" * n_frames * channels)


class TestWavChunks(unittest.TestCase):

    def setUp(self) -> None:
        self._tmpdir = TemporaryDirectory()
        self.tmp = Path(self._tmpdir.name)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_fixed_size_chunks_with_short_tail(self) -> None:
        path = self.tmp / "speech.wav"
        write_wav(path, n_frames=4000)  # 250 ms

        chunks = list(iter_wav_pcm_chunks(path, chunk_ms=100))

        self.assertEqual([len(c) for c in chunks], [3200, 3200, 1600])
        self.assertAlmostEqual(inspect_wav(path).duration_s, 0.25)

    def test_rejects_wrong_format(self) -> None:
        stereo = self.tmp / "stereo.wav"
        write_wav(stereo, n_frames=100, channels=2)
        hifi = self.tmp / "hifi.wav"
        write_wav(hifi, n_frames=100, sample_rate=44100)

        for path in (stereo, hifi):
            with self.subTest(path=path.name):
                with self.assertRaises(ValueError):
                    list(iter_wav_pcm_chunks(path))

    def test_silence_chunk(self) -> None:
        self.assertEqual(make_silence_chunk(0.1), b"\x00" * 3200)


class TestWavFileCapture(unittest.TestCase):

    def setUp(self) -> None:
        self._tmpdir = TemporaryDirectory()
        self.tmp = Path(self._tmpdir.name)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_replays_file_wrapped_in_silence(self) -> None:
        path = self.tmp / "speech.wav"
        write_wav(path, n_frames=3200)  # 200 ms
        chunks: List[bytes] = []
        errors: List[Exception] = []
        finished = threading.Event()

        capture = WavFileCapture(path, realtime_factor=0.0, silence_s=0.2, on_finished=finished.set)
        capture.start(chunks.append, errors.append)
        self.assertTrue(finished.wait(2.0))

        silence = make_silence_chunk(0.1)
        self.assertEqual(len(chunks), 6)
        self.assertEqual(chunks[:2], [silence, silence])
        self.assertEqual(chunks[-2:], [silence, silence])
        self.assertNotEqual(chunks[2], silence)
        self.assertEqual(errors, [])

    def test_stop_ends_replay_early(self) -> None:
        path = self.tmp / "long.wav"
        write_wav(path, n_frames=16000 * 5)
        chunks: List[bytes] = []
        finished = threading.Event()

        capture = WavFileCapture(path, realtime_factor=1.0, silence_s=0.0, on_finished=finished.set)
        capture.start(chunks.append, lambda e: None)
        capture.stop()

        self.assertFalse(finished.wait(0.2))
        self.assertLess(len(chunks), 50)

    def test_missing_file(self) -> None:
        capture = WavFileCapture(self.tmp / "missing.wav")
        with self.assertRaises(FileNotFoundError):
            capture.start(lambda c: None, lambda e: None)

    def test_wrong_format_fails_on_start(self) -> None:
        path = self.tmp / "stereo.wav"
        write_wav(path, n_frames=100, channels=2)
        with self.assertRaises(ValueError):
            WavFileCapture(path).start(lambda c: None, lambda e: None)


if __name__ == "__main__":
    unittest.main()
