"""
Dictate
=======

Realtime dictation from the terminal: press Enter to start recording, Enter
again to stop. Final text is pasted into the focused application at every
endpoint and once more after stop.

Provider and credentials come from the environment (or .env):

    STT_PROVIDER=soniox|deepgram
    SONIOX_API_KEY=...
    DEEPGRAM_API_KEY=...

Usage
-----
    python dictate.py                         # microphone, paste into focused app
    python dictate.py --print                 # print text instead of pasting
    python dictate.py --wav sample.wav --print

Type "q" (or Ctrl+D / Ctrl+C) to quit.
"""
from __future__ import annotations

import argparse
import asyncio
import sys
import threading
from logging import getLogger
from pathlib import Path

from dictation.host import AudioCapture, DictationHost, DictationUi, TextPaster
from dictation.utils import setup_logging

logger = getLogger(__name__)

QUIT_COMMANDS = ("q", "quit", "exit")


class ConsoleUi(DictationUi):
    """Recording indicator and error display on the terminal."""

    def set_recording(self, recording: bool) -> None:
        print("[REC] recording... (Enter to stop)" if recording else "[---] stopped (Enter to record)", flush=True)

    def show_error(self, message: str) -> None:
        print(f"[ERR] {message}", file=sys.stderr, flush=True)

    def open_settings(self) -> None:
        print("[ERR] No API key for the selected provider. Set STT_PROVIDER and "
              "SONIOX_API_KEY or DEEPGRAM_API_KEY in the environment or .env, then try again.",
              file=sys.stderr, flush=True)


class ConsolePaster(TextPaster):
    """Writes dictated text to stdout instead of the focused application."""

    def paste(self, text: str) -> None:
        print(text, end="", flush=True)


def _read_console(loop: asyncio.AbstractEventLoop, host: DictationHost, quit_event: asyncio.Event) -> None:
    """Stdin reader thread: every line toggles recording, a quit command or EOF ends the app."""
    for line in sys.stdin:
        if line.strip().lower() in QUIT_COMMANDS:
            break
        loop.call_soon_threadsafe(host.toggle)
    loop.call_soon_threadsafe(quit_event.set)


def _build_capture(args: argparse.Namespace, loop: asyncio.AbstractEventLoop, on_finished) -> AudioCapture:
    if args.wav:
        from dictation.wav_stream import WavFileCapture
        return WavFileCapture(Path(args.wav), on_finished=lambda: loop.call_soon_threadsafe(on_finished))

    from dictation.audio_capture import MicrophoneCapture
    return MicrophoneCapture()


def _build_paster(args: argparse.Namespace) -> TextPaster:
    if args.print:
        return ConsolePaster()

    # pynput needs a display; only import it when actually pasting.
    from dictation.paste import ClipboardPaster
    return ClipboardPaster()


async def run(args: argparse.Namespace) -> None:
    loop = asyncio.get_running_loop()
    quit_event = asyncio.Event()

    host: DictationHost

    def _wav_finished() -> None:
        logger.info("[WAV] end of file, stopping")
        host.stop()

    capture = _build_capture(args, loop, _wav_finished)
    host = DictationHost(loop, capture, _build_paster(args), ConsoleUi())
    logger.info("Provider: %s", host.provider)

    reader = threading.Thread(target=_read_console, args=(loop, host, quit_event), daemon=True)
    reader.start()

    if args.wav:
        host.start()
    else:
        print("Press Enter to start dictating, Enter again to stop. 'q' to quit.", flush=True)

    try:
        await quit_event.wait()
    finally:
        logger.info("Shutting down")
        await host.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Realtime dictation with Soniox or Deepgram.")
    parser.add_argument("--wav", metavar="FILE", help="replay a 16 kHz mono 16-bit WAV file instead of the microphone")
    parser.add_argument("--print", action="store_true", help="print text to stdout instead of pasting it")
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
