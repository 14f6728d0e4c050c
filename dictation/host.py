"""
Session host: the long-lived owner of the active STT session.

Binds session events to the rest of the application: audio capture feeds the
session, final transcript text is accumulated and pasted at every endpoint,
and recording state is mirrored to the UI. Start/stop signals come from
whatever trigger the application uses (key monitor, console, ...).

The host lives on one asyncio loop, the same loop as its session. Audio
capture runs on its own thread; chunks are marshalled onto the loop with
``call_soon_threadsafe`` so capture is never delayed by the network.
"""
from __future__ import annotations

import asyncio
from logging import getLogger
from typing import Callable, Optional, Protocol

from config import STOP_FINALIZE_DELAY_S
from dictation.settings import DictationSettings, load_settings
from dictation.stt_providers import build_adapter
from dictation.stt_session import Connector, SessionEvents, SessionState, StreamingSession, open_websocket

logger = getLogger(__name__)


class AudioCapture(Protocol):
    """Produces 16 kHz mono s16le chunks on its own thread."""
    def start(self, on_chunk: Callable[[bytes], None], on_error: Callable[[Exception], None]) -> None: ...
    def stop(self) -> None: ...


class TextPaster(Protocol):
    def paste(self, text: str) -> None: ...


class DictationUi(Protocol):
    def set_recording(self, recording: bool) -> None: ...
    def show_error(self, message: str) -> None: ...
    def open_settings(self) -> None: ...


class DictationHost(SessionEvents):
    """
    Owns exactly one StreamingSession and wires it to capture, paste and UI.

    Args:
        loop: Event loop the host and its session run on.
        capture: Audio source.
        paster: Receives finalized text (trimmed, plus a trailing space).
        ui: Recording indicator, error display and settings redirect.
        settings_loader: Returns a fresh settings snapshot; called on every start.
        connector: Transport opener handed to every session.
        finalize_delay_s: Delay between stop and finalize.
    """

    def __init__(
            self,
            loop: asyncio.AbstractEventLoop,
            capture: AudioCapture,
            paster: TextPaster,
            ui: DictationUi,
            settings_loader: Callable[[], DictationSettings] = load_settings,
            connector: Connector = open_websocket,
            finalize_delay_s: float = STOP_FINALIZE_DELAY_S,
    ) -> None:
        self._loop = loop
        self._capture = capture
        self._paster = paster
        self._ui = ui
        self._settings_loader = settings_loader
        self._connector = connector
        self._finalize_delay_s = finalize_delay_s

        self._settings = settings_loader()
        self._provider = self._settings.provider
        self._session = self._make_session(self._provider)

        self._recording = False
        self._accumulated = ""
        self._pending_finalize: Optional[asyncio.TimerHandle] = None

    @property
    def recording(self) -> bool:
        return self._recording

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def session(self) -> StreamingSession:
        return self._session

    @property
    def accumulated_text(self) -> str:
        return self._accumulated

    # ------------------------------------------------------------------
    # Start / stop signals
    # ------------------------------------------------------------------

    def start(self) -> None:
        logger.debug("[HOST] start() called, recording=%s", self._recording)
        if self._recording:
            logger.debug("[HOST] start() skipped, already recording")
            return

        settings = self._settings_loader()
        self._settings = settings
        self._sync_provider(settings)

        if not settings.has_credential(self._provider):
            logger.info("[HOST] no API key for %s, opening settings", self._provider)
            self._ui.open_settings()
            return

        # A new start cancels the finalize of the previous stop.
        if self._pending_finalize is not None:
            logger.debug("[HOST] cancelling pending finalize")
            self._pending_finalize.cancel()
            self._pending_finalize = None

        self._recording = True
        state = self._session.state
        if state is SessionState.DRAINING:
            # connect() replaces the draining stream; its finalize will never arrive.
            self._flush_transcript()
        elif state is not SessionState.READY:
            self._accumulated = ""
        # READY: the finalize was cancelled and the previous stream simply continues.
        self._ui.set_recording(True)

        # Capture starts right away; the session buffers audio while the socket negotiates.
        try:
            self._capture.start(self._on_audio_chunk, self._on_capture_error)
        except Exception as e:
            logger.exception("[AUDIO] capture failed to start: %r", e)
            self._recording = False
            self._ui.set_recording(False)
            self._ui.show_error(f"Audio capture failed: {e}")
            return
        self._session.connect()

    def stop(self) -> None:
        logger.debug("[HOST] stop() called, recording=%s", self._recording)
        if not self._recording:
            return

        self._recording = False
        self._ui.set_recording(False)
        self._capture.stop()

        # Let audio already in flight be transcribed before the stream is truncated.
        self._pending_finalize = self._loop.call_later(self._finalize_delay_s, self._finalize_now)

    def toggle(self) -> None:
        if self._recording:
            self.stop()
        else:
            self.start()

    def settings_changed(self) -> None:
        """Apply a provider change; while recording it waits for the next start."""
        if self._recording:
            logger.debug("[HOST] settings changed while recording, applying on next start")
            return
        settings = self._settings_loader()
        self._settings = settings
        self._sync_provider(settings)

    def close(self) -> None:
        if self._pending_finalize is not None:
            self._pending_finalize.cancel()
            self._pending_finalize = None
        if self._recording:
            self._recording = False
            self._capture.stop()
            self._ui.set_recording(False)
        self._session.disconnect()

    async def aclose(self) -> None:
        self.close()
        await self._session.wait_closed()

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    def on_connected(self) -> None:
        logger.debug("[HOST] STT connected, buffered audio flushed")

    def on_disconnected(self) -> None:
        if not self._recording:
            return
        # The connection is gone, so there is nothing to finalize.
        logger.info("[HOST] STT disconnected while recording, stopping")
        self._recording = False
        self._ui.set_recording(False)
        self._capture.stop()

    def on_transcript(self, text: str, is_final: bool) -> None:
        if is_final:
            self._accumulated += text

    def on_endpoint(self) -> None:
        self._flush_transcript()

    def on_finalized(self) -> None:
        self._flush_transcript()
        self._session.disconnect()

    def on_error(self, message: str) -> None:
        logger.error("[HOST] STT error: %s", message)
        self._recording = False
        self._ui.set_recording(False)
        self._capture.stop()
        self._ui.show_error(message)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _make_session(self, provider: str) -> StreamingSession:
        return StreamingSession(
            adapter_factory=lambda: build_adapter(provider, self._settings),
            events=self,
            connector=self._connector,
        )

    def _sync_provider(self, settings: DictationSettings) -> None:
        if settings.provider == self._provider:
            return
        logger.info("[HOST] switching STT provider %s -> %s", self._provider, settings.provider)
        self._session.disconnect()
        self._provider = settings.provider
        self._session = self._make_session(self._provider)

    def _finalize_now(self) -> None:
        self._pending_finalize = None
        logger.debug("[HOST] sending finalize after delay")
        self._session.send_finalize()

    def _flush_transcript(self) -> None:
        text = self._accumulated.strip()
        self._accumulated = ""
        if not text:
            return
        logger.info("[HOST] pasting %d chars", len(text))
        try:
            self._paster.paste(text + " ")
        except Exception as e:
            logger.exception("[PASTE] paste failed: %r", e)
            self._ui.show_error(f"Paste failed: {e}")

    def _on_audio_chunk(self, chunk: bytes) -> None:
        # Capture thread -> loop
        self._loop.call_soon_threadsafe(self._deliver_audio, chunk)

    def _deliver_audio(self, chunk: bytes) -> None:
        self._session.send_audio(chunk)

    def _on_capture_error(self, exc: Exception) -> None:
        self._loop.call_soon_threadsafe(self._handle_capture_error, exc)

    def _handle_capture_error(self, exc: Exception) -> None:
        logger.error("[AUDIO] capture error: %r", exc)
        self.stop()
