"""Tests for text normalization and wake-word matching."""

import pytest

from apps.conversation.hotword import HotwordMatcher, matches_hotword, normalize_text
from config import HotwordConfig


class TestNormalizeText:
    def test_strips_diacritics_and_case(self):
        assert normalize_text("Éstela") == "estela"

    def test_replaces_punctuation_and_digits(self):
        assert normalize_text("  Oi, Stella!! 123 ") == "oi stella"

    def test_collapses_whitespace(self):
        assert normalize_text("quero\t\n  retirar") == "quero retirar"

    def test_empty(self):
        assert normalize_text("  ?! ") == ""


@pytest.mark.parametrize(
    "phrase",
    ["stella", "Stella", "éstela", "oi Estela, tudo bem?", "STELAR", "este la", "ste... la"],
)
def test_wake_phrases_match(phrase):
    assert matches_hotword(phrase) is True


@pytest.mark.parametrize("phrase", ["oi", "", "bom dia", "quero retirar cem seringas"])
def test_other_phrases_do_not_match(phrase):
    assert matches_hotword(phrase) is False


def test_match_reports_rule():
    matcher = HotwordMatcher()
    assert matcher.match("oi stella") == "variant:stella"
    assert matcher.match("este la") == "syllables:ste+la"
    assert matcher.match("oi") is None


def test_syllable_fallback_needs_both_halves():
    matcher = HotwordMatcher()
    assert matcher.matches("este") is False
    assert matcher.matches("la") is False


def test_matcher_from_config():
    config = HotwordConfig(variants=["aurora"], leading_tokens=[], trailing_tokens=[])
    matcher = HotwordMatcher.from_config(config)
    assert matcher.matches("Oi Aurora") is True
    assert matcher.matches("stella") is False
