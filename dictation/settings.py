from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from os import getenv
from typing import Optional, Tuple

from dotenv import load_dotenv

from config import STT_DEFAULT_PROVIDER

logger = getLogger(__name__)


def _split_list(raw: Optional[str]) -> Tuple[str, ...]:
    """Parse a comma-separated env value into a tuple of non-empty items."""
    if not raw:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class DictationSettings:
    """
    Snapshot of user settings, taken when a session connects.

    A later settings change does not alter a connection that is already
    running; it takes effect on the next session.
    """
    provider: str = STT_DEFAULT_PROVIDER
    soniox_api_key: Optional[str] = None
    deepgram_api_key: Optional[str] = None
    language_hints: Tuple[str, ...] = ()
    dictionary_terms: Tuple[str, ...] = ()

    def api_key_for(self, provider: str) -> Optional[str]:
        if provider == "soniox":
            return self.soniox_api_key
        if provider == "deepgram":
            return self.deepgram_api_key
        return None

    def has_credential(self, provider: Optional[str] = None) -> bool:
        return bool(self.api_key_for(provider or self.provider))


def load_settings(dotenv: bool = True) -> DictationSettings:
    """
    Read settings from the environment (and .env, unless disabled).

    Called again for every session, so edits to the environment are picked up
    without restarting.

    Env vars:
        STT_PROVIDER: "soniox" or "deepgram".
        SONIOX_API_KEY / DEEPGRAM_API_KEY: provider credentials.
        STT_LANGUAGE_HINTS: comma-separated ISO-639-1 codes (Soniox only).
        STT_DICTIONARY_TERMS: comma-separated custom vocabulary (Soniox only).
    """
    if dotenv:
        load_dotenv()

    provider = (getenv("STT_PROVIDER") or STT_DEFAULT_PROVIDER).strip().lower()
    settings = DictationSettings(
        provider=provider,
        soniox_api_key=getenv("SONIOX_API_KEY") or None,
        deepgram_api_key=getenv("DEEPGRAM_API_KEY") or None,
        language_hints=_split_list(getenv("STT_LANGUAGE_HINTS")),
        dictionary_terms=_split_list(getenv("STT_DICTIONARY_TERMS")),
    )
    logger.debug("[SETTINGS] provider=%s, credential=%s, hints=%s, terms=%d",
                 settings.provider, settings.has_credential(), settings.language_hints,
                 len(settings.dictionary_terms))
    return settings
