"""Text normalizer and wake-word matcher for the passive recognizer."""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Iterable, Optional

log = logging.getLogger("stella.hotword")

_WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_VARIANTS: tuple[str, ...] = ("stella", "estela", "tela", "stelar", "stel")
DEFAULT_LEADING_TOKENS: tuple[str, ...] = ("ste", "este")
DEFAULT_TRAILING_TOKENS: tuple[str, ...] = ("la",)


def normalize_text(value: str) -> str:
    """Case-fold, strip diacritics, replace anything that is not a letter with
    a space and collapse whitespace.

        normalize_text("  Éstela, oi!! ")  →  "estela oi"
    """
    decomposed = unicodedata.normalize("NFD", value.casefold())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    letters = "".join(ch if ch.isalpha() or ch.isspace() else " " for ch in stripped)
    return _WHITESPACE_RE.sub(" ", letters).strip()


class HotwordMatcher:
    """Decides whether a recognized phrase contains the wake word.

    Matching is substring based on normalized text.  Besides the fixed
    variants, a phrase that contains both a leading-syllable token and a
    trailing-syllable token also matches, which tolerates engines splitting
    the name ("este la") or mangling it.
    """

    def __init__(
        self,
        variants: Iterable[str] = DEFAULT_VARIANTS,
        leading_tokens: Iterable[str] = DEFAULT_LEADING_TOKENS,
        trailing_tokens: Iterable[str] = DEFAULT_TRAILING_TOKENS,
    ) -> None:
        self.variants = tuple(normalize_text(v) for v in variants if normalize_text(v))
        self.leading_tokens = tuple(normalize_text(t) for t in leading_tokens if normalize_text(t))
        self.trailing_tokens = tuple(normalize_text(t) for t in trailing_tokens if normalize_text(t))

    @classmethod
    def from_config(cls, config) -> "HotwordMatcher":
        return cls(config.variants, config.leading_tokens, config.trailing_tokens)

    def match(self, text: str) -> Optional[str]:
        """Return the rule that matched (for logging) or None."""
        normalized = normalize_text(text)
        if not normalized:
            return None

        for variant in self.variants:
            if variant in normalized:
                return f"variant:{variant}"

        lead = next((t for t in self.leading_tokens if t in normalized), None)
        trail = next((t for t in self.trailing_tokens if t in normalized), None)
        if lead and trail:
            return f"syllables:{lead}+{trail}"
        return None

    def matches(self, text: str) -> bool:
        rule = self.match(text)
        if rule:
            log.debug("event=hotword_match rule=%s text=%.60r", rule, text)
        return rule is not None


_default_matcher = HotwordMatcher()


def matches_hotword(text: str) -> bool:
    """Module-level shortcut using the default wake word."""
    return _default_matcher.matches(text)
