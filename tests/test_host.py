"""
Tests for the session host: transcript accumulation, paste timing, start/stop
sequencing and provider switching.

Capture, paste and UI are in-memory fakes; the session talks to a fake socket.

    pytest tests/test_host.py -v
"""
from __future__ import annotations

import asyncio
import json
import unittest
from dataclasses import replace
from typing import Callable, List, Optional, Union

from websockets import ConnectionClosedOK
from websockets.frames import Close

from dictation.host import DictationHost
from dictation.settings import DictationSettings
from dictation.stt_adapter import ConnectionRequest
from dictation.stt_session import SessionState

FINALIZE = json.dumps({"type": "finalize"})


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: List[Union[str, bytes]] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, payload: Union[str, bytes]) -> None:
        self.sent.append(payload)

    async def recv(self) -> Union[str, bytes]:
        item = await self._inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    def push(self, data: Union[dict, BaseException]) -> None:
        self._inbox.put_nowait(data if isinstance(data, BaseException) else json.dumps(data))


class FakeConnector:
    def __init__(self) -> None:
        self.requests: List[ConnectionRequest] = []
        self.sockets: List[FakeWebSocket] = []

    async def __call__(self, request: ConnectionRequest) -> FakeWebSocket:
        self.requests.append(request)
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws


class FakeCapture:
    def __init__(self, start_error: Optional[Exception] = None) -> None:
        self.start_error = start_error
        self.starts = 0
        self.stops = 0
        self._on_chunk: Optional[Callable[[bytes], None]] = None

    def start(self, on_chunk: Callable[[bytes], None], on_error: Callable[[Exception], None]) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.starts += 1
        self._on_chunk = on_chunk

    def stop(self) -> None:
        self.stops += 1

    def emit(self, chunk: bytes) -> None:
        self._on_chunk(chunk)


class FakePaster:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.pasted: List[str] = []

    def paste(self, text: str) -> None:
        if self.error is not None:
            raise self.error
        self.pasted.append(text)


class FakeUi:
    def __init__(self) -> None:
        self.recording: List[bool] = []
        self.errors: List[str] = []
        self.settings_opened = 0

    def set_recording(self, recording: bool) -> None:
        self.recording.append(recording)

    def show_error(self, message: str) -> None:
        self.errors.append(message)

    def open_settings(self) -> None:
        self.settings_opened += 1


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.002)


class HostTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self) -> None:
        self.settings = DictationSettings(provider="soniox", soniox_api_key="sk-test", deepgram_api_key="dg-test")
        self.connector = FakeConnector()
        self.capture = FakeCapture()
        self.paster = FakePaster()
        self.ui = FakeUi()
        self.host = self.make_host()

    async def asyncTearDown(self) -> None:
        await self.host.aclose()

    def make_host(self) -> DictationHost:
        return DictationHost(
            asyncio.get_running_loop(),
            self.capture,
            self.paster,
            self.ui,
            settings_loader=lambda: self.settings,
            connector=self.connector,
            finalize_delay_s=0.01,
        )

    async def start_ready(self) -> FakeWebSocket:
        self.host.start()
        await wait_until(lambda: self.host.session.state is SessionState.READY)
        return self.connector.sockets[-1]


class TestHostTranscripts(HostTestCase):

    async def test_endpoint_pastes_accumulated_text_once(self) -> None:
        ws = await self.start_ready()
        ws.push({"tokens": [{"text": "Hi ", "is_final": True}]})
        ws.push({"tokens": [{"text": "there", "is_final": True}, {"text": "<end>", "is_final": True}]})

        await wait_until(lambda: self.paster.pasted)
        ws.push({"tokens": [{"text": "<end>", "is_final": True}]})
        await asyncio.sleep(0.01)
        self.assertEqual(self.paster.pasted, ["Hi there "])
        self.assertEqual(self.host.accumulated_text, "")

    async def test_non_final_text_is_not_accumulated(self) -> None:
        self.host.on_transcript("maybe", False)
        self.assertEqual(self.host.accumulated_text, "")

    async def test_whitespace_only_text_is_not_pasted(self) -> None:
        self.host.on_transcript("   ", True)
        self.host.on_endpoint()
        self.assertEqual(self.paster.pasted, [])

    async def test_paste_failure_is_shown(self) -> None:
        self.paster.error = RuntimeError("no focus")
        self.host.on_transcript("text", True)
        self.host.on_endpoint()

        self.assertEqual(self.ui.errors, ["Paste failed: no focus"])
        self.assertEqual(self.host.accumulated_text, "")

    async def test_audio_chunks_reach_session(self) -> None:
        self.host.start()
        self.capture.emit(b"early")
        await wait_until(lambda: self.host.session.state is SessionState.READY)
        ws = self.connector.sockets[0]
        self.capture.emit(b"late")
        await wait_until(lambda: len(ws.sent) == 3)

        self.assertEqual(ws.sent[1:], [b"early", b"late"])


class TestHostStartStop(HostTestCase):

    async def test_stop_finalizes_and_pastes_the_rest(self) -> None:
        ws = await self.start_ready()
        ws.push({"tokens": [{"text": "Hello", "is_final": True}]})
        await wait_until(lambda: self.host.accumulated_text == "Hello")

        self.host.stop()
        self.assertFalse(self.host.recording)
        self.assertEqual(self.capture.stops, 1)
        await wait_until(lambda: ws.sent[-1] == FINALIZE)

        ws.push({"tokens": [{"text": "<fin>", "is_final": True}]})
        await wait_until(lambda: self.paster.pasted)
        self.assertEqual(self.paster.pasted, ["Hello "])
        self.assertEqual(self.host.session.state, SessionState.CLOSED)
        self.assertEqual(self.ui.recording, [True, False])
        self.assertEqual(self.ui.errors, [])

    async def test_start_without_credential_opens_settings(self) -> None:
        self.settings = DictationSettings(provider="soniox")
        self.host.start()

        self.assertEqual(self.ui.settings_opened, 1)
        self.assertFalse(self.host.recording)
        self.assertEqual(self.capture.starts, 0)
        await asyncio.sleep(0.01)
        self.assertEqual(self.connector.requests, [])

    async def test_start_cancels_pending_finalize(self) -> None:
        ws = await self.start_ready()
        self.host.stop()
        self.host.start()
        await asyncio.sleep(0.05)

        self.assertTrue(self.host.recording)
        self.assertNotIn(FINALIZE, ws.sent)
        self.assertEqual(self.host.session.state, SessionState.READY)
        self.assertEqual(len(self.connector.requests), 1)

    async def test_start_twice_is_ignored(self) -> None:
        await self.start_ready()
        self.host.start()
        self.assertEqual(self.capture.starts, 1)

    async def test_toggle(self) -> None:
        self.host.toggle()
        self.assertTrue(self.host.recording)
        self.host.toggle()
        self.assertFalse(self.host.recording)

    async def test_capture_start_failure(self) -> None:
        self.capture.start_error = OSError("no input device")
        self.host.start()

        self.assertFalse(self.host.recording)
        self.assertEqual(self.ui.errors, ["Audio capture failed: no input device"])
        self.assertEqual(self.ui.recording, [True, False])
        await asyncio.sleep(0.01)
        self.assertEqual(self.connector.requests, [])


    async def test_restart_while_draining_pastes_previous_text_first(self) -> None:
        ws = await self.start_ready()
        ws.push({"tokens": [{"text": "Hello.", "is_final": True}]})
        await wait_until(lambda: self.host.accumulated_text == "Hello.")
        self.host.stop()
        await wait_until(lambda: self.host.session.state is SessionState.DRAINING)

        # The draining stream is replaced; its text must not leak into the next one.
        self.host.start()
        self.assertEqual(self.paster.pasted, ["Hello. "])
        self.assertEqual(self.host.accumulated_text, "")

        await wait_until(lambda: len(self.connector.requests) == 2
                         and self.host.session.state is SessionState.READY)
        new_ws = self.connector.sockets[-1]
        self.assertIsNot(new_ws, ws)
        new_ws.push({"tokens": [{"text": "Next", "is_final": True}, {"text": "<end>", "is_final": True}]})

        await wait_until(lambda: len(self.paster.pasted) == 2)
        self.assertEqual(self.paster.pasted, ["Hello. ", "Next "])


class TestHostSessionEvents(HostTestCase):

    async def test_provider_error_stops_recording(self) -> None:
        ws = await self.start_ready()
        ws.push({"error": "Invalid API key"})

        await wait_until(lambda: self.ui.errors)
        self.assertEqual(self.ui.errors, ["Invalid API key"])
        self.assertFalse(self.host.recording)
        self.assertGreaterEqual(self.capture.stops, 1)
        self.assertEqual(self.ui.recording[-1], False)

    async def test_disconnect_while_recording_resets(self) -> None:
        ws = await self.start_ready()
        ws.push(ConnectionClosedOK(Close(1000, ""), Close(1000, ""), True))

        await wait_until(lambda: not self.host.recording)
        self.assertEqual(self.ui.errors, [])
        self.assertEqual(self.ui.recording, [True, False])
        self.assertEqual(self.capture.stops, 1)
        self.assertEqual(self.paster.pasted, [])


class TestHostProviderSwitch(HostTestCase):

    async def test_settings_change_switches_provider(self) -> None:
        old_session = self.host.session
        self.settings = replace(self.settings, provider="deepgram")
        self.host.settings_changed()

        self.assertEqual(self.host.provider, "deepgram")
        self.assertIsNot(self.host.session, old_session)

        self.host.start()
        await wait_until(lambda: self.connector.requests)
        request = self.connector.requests[-1]
        self.assertTrue(request.url.startswith("wss://api.deepgram.com/v1/listen?"))
        self.assertEqual(request.headers, {"Authorization": "Token dg-test"})

    async def test_settings_change_while_recording_waits(self) -> None:
        await self.start_ready()
        self.settings = replace(self.settings, provider="deepgram")
        self.host.settings_changed()
        self.assertEqual(self.host.provider, "soniox")

    async def test_provider_switch_on_start(self) -> None:
        ws = await self.start_ready()
        self.host.stop()
        await wait_until(lambda: ws.sent[-1] == FINALIZE)
        ws.push({"tokens": [{"text": "<fin>", "is_final": True}]})
        await wait_until(lambda: self.host.session.state is SessionState.CLOSED)

        self.settings = replace(self.settings, provider="deepgram")
        self.host.start()
        await wait_until(lambda: len(self.connector.requests) == 2)
        self.assertEqual(self.host.provider, "deepgram")
        self.assertTrue(self.connector.requests[1].url.startswith("wss://api.deepgram.com"))

    async def test_unknown_provider_is_reported(self) -> None:
        self.settings = DictationSettings(provider="whisper", soniox_api_key="sk")
        self.host.start()

        # No credential can exist for an unknown provider.
        self.assertEqual(self.ui.settings_opened, 1)
        self.assertEqual(self.host.provider, "whisper")


if __name__ == "__main__":
    unittest.main()
