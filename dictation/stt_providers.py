"""Provider registry: maps a provider name from settings to an adapter builder."""
from __future__ import annotations

from typing import Callable, Dict

from dictation.errors import ConfigurationError
from dictation.settings import DictationSettings
from dictation.stt_adapter import SttAdapter
from dictation.stt_adapter_deepgram import DeepgramAdapter, DeepgramSttConfig
from dictation.stt_adapter_soniox import SonioxAdapter, SonioxSttConfig


def _build_soniox(settings: DictationSettings) -> SttAdapter:
    return SonioxAdapter(SonioxSttConfig(
        api_key=settings.soniox_api_key,
        language_hints=settings.language_hints,
        dictionary_terms=settings.dictionary_terms,
    ))


def _build_deepgram(settings: DictationSettings) -> SttAdapter:
    # Deepgram runs in "multi" language mode; hints and terms are Soniox-only.
    return DeepgramAdapter(DeepgramSttConfig(api_key=settings.deepgram_api_key))


PROVIDERS: Dict[str, Callable[[DictationSettings], SttAdapter]] = {
    "soniox": _build_soniox,
    "deepgram": _build_deepgram,
}


def build_adapter(provider: str, settings: DictationSettings) -> SttAdapter:
    """Build the adapter for `provider` from a settings snapshot."""
    try:
        builder = PROVIDERS[provider]
    except KeyError:
        raise ConfigurationError(
            f"Unknown STT provider {provider!r} (expected one of: {', '.join(sorted(PROVIDERS))})"
        ) from None
    return builder(settings)
