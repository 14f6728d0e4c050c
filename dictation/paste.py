"""Paste text into whatever application has keyboard focus."""
from __future__ import annotations

import sys
import time
from logging import getLogger

import pyperclip
from pynput.keyboard import Controller, Key

logger = getLogger(__name__)


class ClipboardPaster:
    """
    Puts the text on the clipboard, presses the paste shortcut, then puts the
    previous clipboard contents back.
    """

    def __init__(self, restore_delay_s: float = 0.1) -> None:
        self._restore_delay_s = restore_delay_s
        self._keyboard = Controller()
        self._modifier = Key.cmd if sys.platform == "darwin" else Key.ctrl

    def paste(self, text: str) -> None:
        old_clip = pyperclip.paste()
        pyperclip.copy(text)
        try:
            with self._keyboard.pressed(self._modifier):
                self._keyboard.tap("v")
            # The target app reads the clipboard asynchronously.
            time.sleep(self._restore_delay_s)
        finally:
            pyperclip.copy(old_clip)
        logger.debug("[PASTE] pasted %d chars", len(text))
