"""
Closed set of languages supported by the interpreter.

Values are the English display names shown by the presentation layer;
each member also carries the BCP-47 code sent to the remote service.
"""

from enum import Enum
from typing import List

from .errors import ConfigurationError


_CODES = {
    "ENGLISH": "en-US",
    "ITALIAN": "it-IT",
    "SPANISH": "es-ES",
    "FRENCH": "fr-FR",
    "GERMAN": "de-DE",
    "PORTUGUESE": "pt-BR",
    "CHINESE": "cmn-CN",
    "JAPANESE": "ja-JP",
    "KOREAN": "ko-KR",
    "RUSSIAN": "ru-RU",
    "ARABIC": "ar-XA",
    "HINDI": "hi-IN",
    "DUTCH": "nl-NL",
    "POLISH": "pl-PL",
    "TURKISH": "tr-TR",
    "UKRAINIAN": "uk-UA",
}


class Language(str, Enum):
    """Supported conversation language."""

    ENGLISH = "English"
    ITALIAN = "Italian"
    SPANISH = "Spanish"
    FRENCH = "French"
    GERMAN = "German"
    PORTUGUESE = "Portuguese"
    CHINESE = "Chinese"
    JAPANESE = "Japanese"
    KOREAN = "Korean"
    RUSSIAN = "Russian"
    ARABIC = "Arabic"
    HINDI = "Hindi"
    DUTCH = "Dutch"
    POLISH = "Polish"
    TURKISH = "Turkish"
    UKRAINIAN = "Ukrainian"

    @property
    def code(self) -> str:
        """BCP-47 language code."""
        return _CODES[self.name]

    @classmethod
    def parse(cls, value) -> "Language":
        """
        Resolve a display name, member name or language code.

        Args:
            value: Language, display name ("Italian"), member name
                ("ITALIAN") or code ("it-IT" / "it")

        Returns:
            Matching Language

        Raises:
            ConfigurationError: If the value names no supported language
        """
        if isinstance(value, cls):
            return value

        text = str(value or "").strip()
        lowered = text.lower()
        for language in cls:
            if lowered in (language.value.lower(), language.name.lower()):
                return language
            code = language.code.lower()
            if lowered == code or lowered == code.split("-")[0]:
                return language

        raise ConfigurationError(f"Unsupported language: {text!r}")


def all_languages() -> List[Language]:
    """All supported languages in display order."""
    return list(Language)


def other_than(language: Language) -> List[Language]:
    """Languages a second speaker may pick once the first one is chosen."""
    return [lang for lang in Language if lang is not language]
