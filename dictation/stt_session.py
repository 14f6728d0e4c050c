"""
Streaming STT session: one WebSocket connection per dictation attempt.

The session is a state machine driven from a single asyncio event loop:

    IDLE -> CONNECTING -> READY -> DRAINING -> CLOSED

Any state other than IDLE moves straight to CLOSED on ``disconnect()`` or a
transport failure.

Audio arriving before the socket is usable is queued and flushed in order
when the session becomes READY. All outbound frames (config, audio, finalize)
go through one sender task, so the provider always sees them in the order
they were issued.

The public methods (``connect``, ``send_audio``, ``send_finalize``,
``disconnect``) are synchronous and must be called on the loop that owns the
session. Callers on other threads (audio capture) must marshal with
``loop.call_soon_threadsafe``.

Events go to a ``SessionEvents`` sink. The session never reconnects by
itself; deciding what to do after ``on_disconnected`` is up to the host.
"""
from __future__ import annotations

import asyncio
import json
from collections import deque
from enum import Enum
from logging import getLogger
from time import monotonic
from typing import Any, Awaitable, Callable, Deque, List, Optional, Protocol, Set, Tuple, Union

from websockets import connect, ConnectionClosed, ConnectionClosedOK

from config import WS_CLOSE_TIMEOUT_S, WS_OPEN_TIMEOUT_S, WS_PING_INTERVAL_S, WS_PING_TIMEOUT_S
from dictation.errors import (
    ConfigurationError,
    MalformedMessage,
    ProtocolError,
    SttConnectionError,
    SttError,
    TransientSendError,
    classify_send_error,
)
from dictation.stt_adapter import ConnectionRequest, ParseKind, ParseResult, SttAdapter

logger = getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    DRAINING = "draining"
    CLOSED = "closed"


class SessionEvents(Protocol):
    """Receiver of session events. Handlers are called on the session's loop."""
    def on_connected(self) -> None: ...
    def on_disconnected(self) -> None: ...
    def on_transcript(self, text: str, is_final: bool) -> None: ...
    def on_endpoint(self) -> None: ...
    def on_finalized(self) -> None: ...
    def on_error(self, message: str) -> None: ...


Connector = Callable[[ConnectionRequest], Awaitable[Any]]
SendCallback = Callable[[Optional[BaseException]], None]


async def open_websocket(request: ConnectionRequest):
    """Default connector: open the provider WebSocket with the project's transport settings."""
    return await connect(
        request.url,
        additional_headers=request.headers,
        open_timeout=WS_OPEN_TIMEOUT_S,
        ping_interval=WS_PING_INTERVAL_S,
        ping_timeout=WS_PING_TIMEOUT_S,
        close_timeout=WS_CLOSE_TIMEOUT_S,
        max_queue=32,
    )


def decode_message(raw: Union[str, bytes]) -> dict:
    """
    Decode one inbound frame into a JSON object.

    Raises:
        MalformedMessage: if the frame is not UTF-8 JSON or not an object.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"undecodable binary frame: {e}") from None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedMessage(f"invalid JSON: {e}") from None
    if not isinstance(data, dict):
        raise MalformedMessage(f"expected a JSON object, got {type(data).__name__}")
    return data


class StreamingSession:
    """
    Provider-agnostic streaming STT session.

    Args:
        adapter_factory: Called on every ``connect()`` to get an adapter built
            from a fresh settings snapshot.
        events: Sink receiving session events.
        connector: Coroutine function opening the transport; defaults to a
            real WebSocket (tests pass a fake).
    """

    def __init__(
            self,
            adapter_factory: Callable[[], SttAdapter],
            events: SessionEvents,
            connector: Connector = open_websocket,
    ) -> None:
        self._adapter_factory = adapter_factory
        self._events = events
        self._connector = connector

        self._adapter: Optional[SttAdapter] = None
        self._state = SessionState.IDLE
        self._ws = None
        self._outbox: Optional[asyncio.Queue[Tuple[Union[str, bytes], Optional[SendCallback]]]] = None
        self._audio_queue: Deque[bytes] = deque()
        self._pending_finalize = False
        self._finalized_emitted = False
        self.connect_started_at: Optional[float] = None

        # Bumped by connect() and disconnect(); completions from an older generation are ignored.
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()
        self._closing: Set[asyncio.Task] = set()
        self._timers: List[asyncio.TimerHandle] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state in (SessionState.READY, SessionState.DRAINING)

    @property
    def adapter(self) -> Optional[SttAdapter]:
        return self._adapter

    @property
    def buffered_chunks(self) -> int:
        return len(self._audio_queue)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open a new connection. No-op while already connecting or connected."""
        logger.debug("[STT] connect() called, state=%s", self._state.value)
        if self._state in (SessionState.CONNECTING, SessionState.READY):
            logger.debug("[STT] connect() skipped, already %s", self._state.value)
            return

        try:
            adapter = self._adapter_factory()
        except ConfigurationError as e:
            logger.warning("[STT] connect() failed: %s", e)
            self._emit("on_error", str(e))
            return

        if not adapter.api_key:
            logger.warning("[STT] %s: connect() failed, no API key", adapter.name)
            self._emit("on_error", "API key not configured")
            return

        request = adapter.connection_request()

        # Drop whatever the previous connection left behind.
        self._generation += 1
        self._teardown()

        gen = self._generation
        self._adapter = adapter
        self._state = SessionState.CONNECTING
        self._pending_finalize = False
        self._finalized_emitted = False
        self._outbox = asyncio.Queue()
        self.connect_started_at = monotonic()

        self._spawn(self._run(gen, adapter, request))

    def disconnect(self) -> None:
        """
        Intentionally close the session. Idempotent and safe from any state.

        Buffered audio and a pending finalize are discarded, and no error or
        disconnected event is reported for the resulting transport teardown.
        """
        logger.debug("[STT] disconnect() called, state=%s, buffered chunks: %d",
                     self._state.value, len(self._audio_queue))
        self._generation += 1
        self._teardown()
        if self._state is not SessionState.IDLE:
            self._state = SessionState.CLOSED

    async def wait_closed(self) -> None:
        """
        Wait until everything released by earlier disconnects has finished:
        cancelled sender/receiver tasks and socket closes.
        """
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def send_audio(self, chunk: bytes) -> None:
        """Send a PCM chunk, or queue it until the connection is ready."""
        if self._state is SessionState.READY:
            self._enqueue(chunk)
        elif self._state is SessionState.DRAINING:
            logger.debug("[STT] dropping %d bytes of audio, stream is being finalized", len(chunk))
        else:
            self._audio_queue.append(chunk)

    def send_finalize(self) -> None:
        """
        Ask the provider to flush the stream.

        While still connecting with audio queued, the finalize is deferred
        until that audio has been sent. With nothing queued there is nothing
        to finalize: the session is closed and finalized is reported at once.
        """
        logger.debug("[STT] send_finalize() called, state=%s, buffered=%d",
                     self._state.value, len(self._audio_queue))
        if self._state is SessionState.READY:
            self._send_finalize_message(self._generation)
        elif self._state is SessionState.DRAINING:
            logger.debug("[STT] send_finalize() ignored, already draining")
        elif self._state is SessionState.CONNECTING and self._audio_queue:
            logger.info("[STT] waiting for connection to send %d buffered chunks", len(self._audio_queue))
            self._pending_finalize = True
        else:
            logger.debug("[STT] no audio buffered, disconnecting")
            self.disconnect()
            self._emit("on_disconnected")
            self._emit("on_finalized")

    # ------------------------------------------------------------------
    # Internal: connection
    # ------------------------------------------------------------------

    async def _run(self, gen: int, adapter: SttAdapter, request: ConnectionRequest) -> None:
        logger.info("[STT] %s: connecting to %s", adapter.name, request.url.split("?")[0])
        try:
            ws = await self._connector(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("[STT] %s: connection failed: %r", adapter.name, e)
            self._on_transport_closed(gen, SttConnectionError(f"Connection failed: {e}"))
            return

        if gen != self._generation:
            # disconnect() won the race against the handshake
            logger.debug("[STT] %s: connection opened after disconnect, closing it", adapter.name)
            self._close_socket_later(ws)
            return

        self._ws = ws
        self._spawn(self._send_loop(ws, self._outbox))
        self._spawn(self._recv_loop(gen, adapter, ws))
        logger.debug("[STT] %s: WebSocket open after %.2fs", adapter.name, monotonic() - self.connect_started_at)

        initial = adapter.initial_message()
        if initial is not None:
            logger.debug("[STT] %s: sending config...", adapter.name)
            self._enqueue(initial, lambda err: self._on_initial_sent(gen, err))
        elif adapter.ready_delay_s:
            self._call_later(adapter.ready_delay_s, self._mark_ready, gen)
        else:
            self._mark_ready(gen)

    def _on_initial_sent(self, gen: int, err: Optional[BaseException]) -> None:
        if gen != self._generation or self._state is not SessionState.CONNECTING:
            return
        if err is None:
            self._mark_ready(gen)
            return

        error = classify_send_error(err)
        logger.warning("[STT] config send failed: %r", err)
        if isinstance(error, TransientSendError):
            self._on_transport_closed(gen, None)
        else:
            self._on_transport_closed(gen, SttConnectionError(f"Failed to send config: {err}"))

    def _mark_ready(self, gen: int) -> None:
        if gen != self._generation or self._state is not SessionState.CONNECTING:
            return

        self._state = SessionState.READY
        elapsed = monotonic() - self.connect_started_at if self.connect_started_at else 0.0
        logger.info("[STT] %s: connected in %.2fs, flushing %d buffered chunks",
                    self._adapter.name, elapsed, len(self._audio_queue))

        while self._audio_queue:
            self._enqueue(self._audio_queue.popleft())
        self._emit("on_connected")

        if self._pending_finalize and gen == self._generation:
            logger.debug("[STT] sending pending finalize")
            self._pending_finalize = False
            self._send_finalize_message(gen)

    def _send_finalize_message(self, gen: int) -> None:
        adapter = self._adapter
        self._state = SessionState.DRAINING
        logger.info("[STT] %s: sending finalize", adapter.name)
        self._enqueue(adapter.finalize_message(), lambda err: self._on_finalize_sent(gen, adapter, err))

    def _on_finalize_sent(self, gen: int, adapter: SttAdapter, err: Optional[BaseException]) -> None:
        if gen != self._generation:
            return
        if err is not None:
            # The stream cannot be flushed any more; report what we have.
            error = classify_send_error(err)
            if isinstance(error, TransientSendError):
                logger.debug("[STT] %s: finalize send interrupted: %s", adapter.name, error)
            else:
                logger.warning("[STT] %s: finalize send failed: %r", adapter.name, err)
            self._emit_finalized(gen)
            return

        if adapter.finalized_delay_s is not None:
            # Provider sends no acknowledgment; give it time for trailing transcripts.
            self._call_later(adapter.finalized_delay_s, self._emit_finalized, gen)

    def _emit_finalized(self, gen: int) -> None:
        if gen != self._generation or self._finalized_emitted:
            return
        self._finalized_emitted = True
        self._emit("on_finalized")

    def _on_transport_closed(self, gen: int, failure: Optional[SttError]) -> None:
        """Unintentional end of the connection: release it and tell the host."""
        if gen != self._generation or self._state is SessionState.CLOSED:
            return

        was_draining = self._state is SessionState.DRAINING
        self._teardown(keep_timers=True)
        self._state = SessionState.CLOSED

        if failure is not None:
            self._emit("on_error", str(failure))
        self._emit("on_disconnected")

        # The provider will never acknowledge the finalize now; flush what was transcribed.
        if was_draining and self._adapter is not None and self._adapter.finalized_delay_s is None:
            self._emit_finalized(gen)

    def _teardown(self, keep_timers: bool = False) -> None:
        self._audio_queue.clear()
        self._pending_finalize = False

        if not keep_timers:
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()

        if self._tasks:
            current = asyncio.current_task()
            for task in list(self._tasks):
                if task is not current:
                    task.cancel()
                    self._track_closing(task)

        if self._ws is not None:
            self._close_socket_later(self._ws)
            self._ws = None
        self._outbox = None

    # ------------------------------------------------------------------
    # Internal: transport loops
    # ------------------------------------------------------------------

    async def _send_loop(self, ws, outbox: asyncio.Queue) -> None:
        """Send queued frames one at a time, reporting completion to their callbacks."""
        while True:
            payload, on_sent = await outbox.get()
            try:
                await ws.send(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if on_sent is not None:
                    on_sent(e)
                else:
                    logger.debug("[STT] audio send failed: %r", e)
                if isinstance(e, ConnectionClosed):
                    # The receiver reports the closure.
                    return
            else:
                if on_sent is not None:
                    on_sent(None)
            # A completion callback may have released this connection.
            if self._ws is not ws:
                return

    async def _recv_loop(self, gen: int, adapter: SttAdapter, ws) -> None:
        """Receive provider messages until the connection ends."""
        logger.debug("[STT] %s: _recv_loop started, waiting for messages...", adapter.name)
        try:
            while True:
                msg = await ws.recv()
                if gen != self._generation:
                    return
                self._handle_message(gen, adapter, msg)
                if gen != self._generation or self._state is SessionState.CLOSED:
                    return

        except ConnectionClosedOK:
            logger.debug("[STT] %s: session closed cleanly.", adapter.name)
            self._on_transport_closed(gen, None)
        except ConnectionClosed as e:
            close_code = e.rcvd.code if e.rcvd else None
            is_clean = close_code == 1000 or (e.rcvd is None and e.sent is not None)
            if is_clean:
                logger.debug("[STT] %s: session closed (code=%s).", adapter.name, close_code)
                self._on_transport_closed(gen, None)
            else:
                logger.warning("[STT] %s: connection closed unexpectedly: %s", adapter.name, e)
                self._on_transport_closed(gen, SttConnectionError(f"Connection closed unexpectedly: {e}"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[STT] %s receiver crashed: %r", adapter.name, e)
            self._on_transport_closed(gen, SttConnectionError(f"Connection failed: {e}"))

    def _handle_message(self, gen: int, adapter: SttAdapter, msg: Union[str, bytes]) -> None:
        try:
            data = decode_message(msg)
        except MalformedMessage as e:
            logger.debug("[STT] %s: ignoring malformed message: %s", adapter.name, e)
            return

        for result in adapter.parse_message(data):
            # A handler may have torn the session down.
            if gen != self._generation or self._state is SessionState.CLOSED:
                return
            self._dispatch(gen, adapter, result)

    def _dispatch(self, gen: int, adapter: SttAdapter, result: ParseResult) -> None:
        kind = result.kind
        if kind is ParseKind.TRANSCRIPT:
            self._emit("on_transcript", result.text, result.is_final)
        elif kind is ParseKind.ENDPOINT:
            self._emit("on_endpoint")
        elif kind is ParseKind.FINALIZED:
            self._emit_finalized(gen)
        elif kind is ParseKind.ERROR:
            logger.error("[STT] %s: provider error: %s", adapter.name, result.message)
            self._on_transport_closed(gen, ProtocolError(result.message))
        elif kind is ParseKind.FINISHED:
            logger.info("[STT] %s: provider finished the session", adapter.name)
            self._on_transport_closed(gen, None)

    # ------------------------------------------------------------------
    # Internal: helpers
    # ------------------------------------------------------------------

    def _enqueue(self, payload: Union[str, bytes], on_sent: Optional[SendCallback] = None) -> None:
        if self._outbox is None:
            return
        self._outbox.put_nowait((payload, on_sent))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _call_later(self, delay: float, callback: Callable[..., None], *args: Any) -> None:
        timer = asyncio.get_running_loop().call_later(delay, callback, *args)
        self._timers.append(timer)

    def _close_socket_later(self, ws) -> None:
        self._track_closing(asyncio.create_task(self._close_socket(ws)))

    def _track_closing(self, task: asyncio.Task) -> None:
        if task.done():
            return
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    @staticmethod
    async def _close_socket(ws) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug("[STT] error while closing socket: %r", e)

    def _emit(self, name: str, *args: Any) -> None:
        handler = getattr(self._events, name, None)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as e:
            logger.exception("[STT] %s handler failed: %r", name, e)
