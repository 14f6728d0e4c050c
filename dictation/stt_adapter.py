"""
STT Adapter Protocol: the wire-format contract every real-time provider implements.

The streaming session (dictation/stt_session.py) owns the WebSocket, the audio
buffer and the finalize sequencing. Everything provider-specific lives in an
adapter: how to connect, what to send first, how to finalize, and how to turn
one decoded JSON message into the common ``ParseResult`` vocabulary. The
protocol uses structural typing (typing.Protocol), so adapters do not need to
inherit from it.

Lifecycle
---------
1. **Construction**: instantiate with a provider-specific frozen dataclass
   config built from a ``DictationSettings`` snapshot. No network calls here.

2. **Connect**: the session asks for ``connection_request()`` (URL and
   headers) and opens the socket. If ``initial_message()`` returns a string,
   it is sent first and the session becomes ready once the send succeeds.
   Otherwise the session becomes ready after ``ready_delay_s`` (or at once).

3. **Streaming**: raw PCM bytes (16 kHz, mono, 16-bit) go out as binary
   frames. Every inbound JSON object goes through ``parse_message()``; one
   message may produce zero, one or several results.

4. **Finalize**: the session sends ``finalize_message()``. If
   ``finalized_delay_s`` is set, the session reports ``finalized`` itself
   after that delay; otherwise it waits for the provider's own FINALIZED
   result.

Implementing a new provider
----------------------------
1. Create ``dictation/stt_adapter_<name>.py`` with a frozen ``@dataclass``
   config and an adapter class satisfying ``SttAdapter``.
2. ``parse_message`` must be pure and must never raise: treat missing or
   wrong-typed fields as an empty message.
3. Register a builder in ``dictation/stt_providers.py`` and add parsing tests
   in ``tests/test_stt_adapters.py``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol


class ParseKind(Enum):
    TRANSCRIPT = "transcript"
    ENDPOINT = "endpoint"
    FINALIZED = "finalized"
    ERROR = "error"
    FINISHED = "finished"
    NONE = "none"


@dataclass(frozen=True)
class ParseResult:
    """
    One normalized event decoded from a provider message.

    Attributes:
        kind: Which event this is.
        text: Transcript text (TRANSCRIPT only).
        is_final: True if the text is committed (TRANSCRIPT only).
        message: Human-readable error (ERROR only).
    """
    kind: ParseKind
    text: str = ""
    is_final: bool = False
    message: str = ""

    @classmethod
    def transcript(cls, text: str, is_final: bool) -> "ParseResult":
        return cls(ParseKind.TRANSCRIPT, text=text, is_final=is_final)

    @classmethod
    def endpoint(cls) -> "ParseResult":
        return cls(ParseKind.ENDPOINT)

    @classmethod
    def finalized(cls) -> "ParseResult":
        return cls(ParseKind.FINALIZED)

    @classmethod
    def error(cls, message: str) -> "ParseResult":
        return cls(ParseKind.ERROR, message=message)

    @classmethod
    def finished(cls) -> "ParseResult":
        return cls(ParseKind.FINISHED)

    @classmethod
    def none(cls) -> "ParseResult":
        return cls(ParseKind.NONE)


@dataclass(frozen=True)
class ConnectionRequest:
    """Where and how to open the provider WebSocket."""
    url: str
    headers: Dict[str, str] = field(default_factory=dict)


class SttAdapter(Protocol):
    """
    Structural protocol for provider wire adapters.

    See the module docstring for lifecycle details and implementation guidance.
    """
    name: str
    ready_delay_s: Optional[float]
    finalized_delay_s: Optional[float]

    @property
    def api_key(self) -> Optional[str]: ...

    def connection_request(self) -> ConnectionRequest: ...
    def initial_message(self) -> Optional[str]: ...
    def finalize_message(self) -> str: ...

    def parse_message(self, data: dict) -> List[ParseResult]: ...
