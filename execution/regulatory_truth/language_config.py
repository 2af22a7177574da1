"""
Language Configuration for Regulatory Gazette Processing

Provides per-source language configuration supporting Croatian and English.
Each gazette source can have different settings for provision markers,
model selection, and citation labels.
"""

from dataclasses import dataclass


# Supported languages with their display names and token ratios
SUPPORTED_LANGUAGES = {
    "hr": {
        "name": "Croatian",
        "chars_per_token": 3,
        "sentence_boundary_regex": r"(?<=[.!?;])[ \t]+(?=[A-ZČĆŽŠĐ\"„])|\n+",
    },
    "en": {
        "name": "English",
        "chars_per_token": 4,
        "sentence_boundary_regex": r"(?<=[.!?;])[ \t]+(?=[A-Z\"“])|\n+",
    },
}

DEFAULT_LANGUAGE = "hr"


@dataclass
class LanguageConfig:
    """Per-source language and model configuration."""
    language: str = DEFAULT_LANGUAGE
    llm_model: str = "qwen/qwen3-235b-a22b"
    chars_per_token: int = 3
    sentence_boundary_regex: str = SUPPORTED_LANGUAGES[DEFAULT_LANGUAGE]["sentence_boundary_regex"]

    @classmethod
    def for_language(cls, language: str) -> "LanguageConfig":
        """
        Factory method returning defaults for a given language.

        Args:
            language: ISO 639-1 code ("hr" or "en"). Unsupported codes
                fall back to Croatian, the official gazette language.

        Returns:
            LanguageConfig with appropriate defaults
        """
        if language not in SUPPORTED_LANGUAGES:
            language = DEFAULT_LANGUAGE
        settings = SUPPORTED_LANGUAGES[language]
        return cls(
            language=language,
            chars_per_token=settings["chars_per_token"],
            sentence_boundary_regex=settings["sentence_boundary_regex"],
        )

    @property
    def display_name(self) -> str:
        return SUPPORTED_LANGUAGES[self.language]["name"]

    def estimate_tokens(self, text: str) -> int:
        """Rough token estimate used for prompt budgeting."""
        return max(1, len(text) // self.chars_per_token)
