"""Tests for name and text normalization."""

from dialog_kg.utils.text import (
    escape_sql_string,
    name_similarity,
    normalize_name,
    normalize_text,
    strip_diacritics,
    text_similarity,
)


class TestNormalizeName:
    def test_possessive_and_article(self):
        assert normalize_name("The Brahms' Violin Concerto") == "brahms violin concerto"
        assert normalize_name("Brahms's") == "brahms"

    def test_diacritics(self):
        assert strip_diacritics("Dvořák") == "Dvorak"
        assert normalize_name("Dvořák") == "dvorak"

    def test_punctuation_and_spacing(self):
        assert normalize_name("  J.S.   Bach ") == "j s bach"

    def test_empty(self):
        assert normalize_name("") == ""


class TestSimilarity:
    def test_partial_name_scores_high(self):
        assert name_similarity("Brahms", "Johannes Brahms") == 100

    def test_unrelated_names_score_low(self):
        assert name_similarity("Brahms", "Mozart") < 60

    def test_empty_names(self):
        assert name_similarity("", "Brahms") == 0.0

    def test_text_similarity_ignores_case_and_punctuation(self):
        assert text_similarity("The user loves Brahms.", "the user loves brahms") == 1.0
        assert normalize_text("Hello,  World!") == "hello world"

    def test_escape_sql_string(self):
        assert escape_sql_string("O'Brien") == "O''Brien"
