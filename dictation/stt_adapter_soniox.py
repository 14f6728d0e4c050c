from __future__ import annotations

import json
from dataclasses import dataclass
from logging import getLogger
from typing import List, Optional, Tuple

from config import AUDIO_CHANNELS, AUDIO_SAMPLE_RATE, SONIOX_STT_MODEL, SONIOX_STT_URL
from dictation.stt_adapter import ConnectionRequest, ParseResult, SttAdapter

logger = getLogger(__name__)


# Soniox control tokens
SONIOX_TOKEN_ENDPOINT = "<end>"
SONIOX_TOKEN_FINALIZED = "<fin>"


@dataclass(frozen=True)
class SonioxSttConfig:
    """
    Configuration for the Soniox realtime STT adapter.

    Soniox authenticates inside the first message rather than in the
    handshake, so the API key travels with the config message.
    """
    api_key: Optional[str]

    # Provider-specific settings
    model: str = SONIOX_STT_MODEL
    base_url: str = SONIOX_STT_URL
    language_hints: Tuple[str, ...] = ()
    dictionary_terms: Tuple[str, ...] = ()

    # Raw PCM settings
    audio_format: str = "pcm_s16le"
    sample_rate: int = AUDIO_SAMPLE_RATE
    channels: int = AUDIO_CHANNELS


class SonioxAdapter(SttAdapter):
    """
    Soniox realtime WebSocket adapter (message-based control).

    Protocol:
      - First frame: JSON config with api_key, model and audio format
      - Then binary PCM frames
      - Finalize: {"type":"finalize"}; Soniox answers with a "<fin>" token
      - Inbound: {"tokens":[{"text","is_final"}]}, "<end>" marks an endpoint;
        top-level "error" or "finished" end the session
    """
    name = "Soniox"
    ready_delay_s = None
    finalized_delay_s = None  # "<fin>" token signals completion

    def __init__(self, cfg: SonioxSttConfig) -> None:
        self._cfg = cfg

    @property
    def api_key(self) -> Optional[str]:
        return self._cfg.api_key

    def connection_request(self) -> ConnectionRequest:
        return ConnectionRequest(url=self._cfg.base_url)

    def initial_message(self) -> Optional[str]:
        config = {
            "api_key": self._cfg.api_key,
            "model": self._cfg.model,
            "audio_format": self._cfg.audio_format,
            "sample_rate": self._cfg.sample_rate,
            "num_channels": self._cfg.channels,
            "enable_endpoint_detection": True,
        }
        if self._cfg.language_hints:
            config["language_hints"] = list(self._cfg.language_hints)
        if self._cfg.dictionary_terms:
            config["context"] = {"terms": list(self._cfg.dictionary_terms)}

        logger.debug("[STT] Soniox: config model=%s, hints=%s, terms=%d", self._cfg.model,
                     self._cfg.language_hints, len(self._cfg.dictionary_terms))
        return json.dumps(config)

    def finalize_message(self) -> str:
        return json.dumps({"type": "finalize"})

    def parse_message(self, data: dict) -> List[ParseResult]:
        if not isinstance(data, dict):
            return []

        # Invalid API key etc.
        error = data.get("error")
        if isinstance(error, str):
            return [ParseResult.error(error)]

        results: List[ParseResult] = []
        tokens = data.get("tokens")
        if isinstance(tokens, list):
            for token in tokens:
                if not isinstance(token, dict):
                    continue
                text = token.get("text")
                if not isinstance(text, str):
                    continue

                if text == SONIOX_TOKEN_ENDPOINT:
                    results.append(ParseResult.endpoint())
                    continue
                if text == SONIOX_TOKEN_FINALIZED:
                    results.append(ParseResult.finalized())
                    continue

                # Non-final tokens may still change; they are never surfaced.
                if token.get("is_final") is True:
                    results.append(ParseResult.transcript(text, True))

        if data.get("finished") is True:
            results.append(ParseResult.finished())

        return results
