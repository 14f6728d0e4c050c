from __future__ import annotations

import json
from dataclasses import dataclass
from logging import getLogger
from typing import List, Optional
from urllib.parse import urlencode

from config import (
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_RATE,
    DEEPGRAM_DRAIN_DELAY_S,
    DEEPGRAM_READY_DELAY_S,
    DEEPGRAM_STT_ENDPOINTING_MS,
    DEEPGRAM_STT_LANGUAGE,
    DEEPGRAM_STT_MODEL,
    DEEPGRAM_STT_URL,
)
from dictation.stt_adapter import ConnectionRequest, ParseResult, SttAdapter

logger = getLogger(__name__)


@dataclass(frozen=True)
class DeepgramSttConfig:
    """
    Configuration for the Deepgram live audio adapter.

    Everything is encoded in the query string and the Authorization header;
    Deepgram takes no config message.
    """
    api_key: Optional[str]
    # Deepgram Live Audio endpoint
    base_url: str = DEEPGRAM_STT_URL

    # Query params
    model: str = DEEPGRAM_STT_MODEL
    language: str = DEEPGRAM_STT_LANGUAGE
    punctuate: bool = True
    interim_results: bool = False  # only finals are ever pasted

    # Raw PCM settings (headerless PCM needs an explicit encoding)
    encoding: str = "linear16"
    sample_rate: int = AUDIO_SAMPLE_RATE
    channels: int = AUDIO_CHANNELS

    # endpointing is milliseconds of silence before speech_final
    endpointing_ms: int = DEEPGRAM_STT_ENDPOINTING_MS

    ready_delay_s: float = DEEPGRAM_READY_DELAY_S
    drain_delay_s: float = DEEPGRAM_DRAIN_DELAY_S


class DeepgramAdapter(SttAdapter):
    """
    Deepgram Live Audio WebSocket adapter (field-based control).

    - Connection parameters in the URL, "Token <key>" auth header.
    - Sends {"type":"CloseStream"} to finalize; Deepgram has no explicit
      acknowledgment, so finalized is reported after a short drain delay.
    - Transcript lives in channel.alternatives[0].transcript, gated by
      is_final; speech_final marks an endpoint.
    """
    name = "Deepgram"

    def __init__(self, cfg: DeepgramSttConfig) -> None:
        self._cfg = cfg
        self.ready_delay_s: Optional[float] = cfg.ready_delay_s
        self.finalized_delay_s: Optional[float] = cfg.drain_delay_s

    @property
    def api_key(self) -> Optional[str]:
        return self._cfg.api_key

    def connection_request(self) -> ConnectionRequest:
        qs = urlencode(
            {
                "model": self._cfg.model,
                "language": self._cfg.language,
                "encoding": self._cfg.encoding,
                "sample_rate": str(self._cfg.sample_rate),
                "channels": str(self._cfg.channels),
                "punctuate": str(self._cfg.punctuate).lower(),
                "interim_results": str(self._cfg.interim_results).lower(),
                "endpointing": str(self._cfg.endpointing_ms),
            }
        )
        url = f"{self._cfg.base_url}?{qs}"
        return ConnectionRequest(url=url, headers={"Authorization": f"Token {self._cfg.api_key}"})

    def initial_message(self) -> Optional[str]:
        return None

    def finalize_message(self) -> str:
        return json.dumps({"type": "CloseStream"})

    def parse_message(self, data: dict) -> List[ParseResult]:
        if not isinstance(data, dict):
            return []

        error = data.get("error")
        if isinstance(error, str):
            return [ParseResult.error(error)]

        # Errors may also come as err_code/err_msg
        err_code = data.get("err_code")
        if isinstance(err_code, str):
            err_msg = data.get("err_msg")
            return [ParseResult.error(err_msg if isinstance(err_msg, str) else err_code)]

        channel = data.get("channel")
        if not isinstance(channel, dict):
            return []
        alts = channel.get("alternatives")
        if not isinstance(alts, list) or not alts or not isinstance(alts[0], dict):
            return []
        transcript = alts[0].get("transcript")
        if not isinstance(transcript, str) or not transcript:
            return []

        is_final = data.get("is_final") is True
        speech_final = data.get("speech_final") is True
        logger.debug("[STT] Deepgram: transcript %r is_final=%s speech_final=%s",
                     transcript[:50], is_final, speech_final)

        results: List[ParseResult] = []
        if is_final:
            results.append(ParseResult.transcript(transcript, True))
        if speech_final:
            results.append(ParseResult.endpoint())
        return results
