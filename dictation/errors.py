"""
Error taxonomy for the dictation pipeline.

Every terminal condition of a session reaches the host as a single message
string (``SessionEvents.on_error``); these classes exist so the session can
decide *which* conditions are surfaced and which are swallowed.
"""
from __future__ import annotations

import asyncio

from websockets import ConnectionClosed


class SttError(Exception):
    """Base class for all dictation errors."""


class ConfigurationError(SttError):
    """Missing credential or unknown provider. Never retried; the user is sent to settings."""


class SttConnectionError(SttError):
    """Transport failed to open or broke while in use."""


class ProtocolError(SttError):
    """Provider returned an explicit error payload."""


class TransientSendError(SttError):
    """A send timed out, was cancelled, or hit a dropped connection."""


class MalformedMessage(SttError):
    """Inbound frame that is not a JSON object."""


# Send failures that are expected while a connection is torn down.
_TRANSIENT_SEND_ERRORS = (
    asyncio.TimeoutError,
    asyncio.CancelledError,
    ConnectionClosed,
    ConnectionResetError,
    BrokenPipeError,
)


def classify_send_error(exc: BaseException) -> SttError:
    """Map an exception raised by a WebSocket send to the taxonomy above."""
    if isinstance(exc, SttError):
        return exc
    if isinstance(exc, _TRANSIENT_SEND_ERRORS):
        return TransientSendError(str(exc) or exc.__class__.__name__)
    return SttConnectionError(str(exc) or exc.__class__.__name__)
