"""Tests for title normalization."""

import pytest

from patchwatch.normalize.title import STEPS, normalize, tokens


class TestNormalize:
    """Noise stripping on real-world listing titles."""

    def test_strips_version_repack_and_edition(self):
        title = "The Witcher 3: Wild Hunt - Game of the Year Edition v4.04 [FitGirl Repack]"
        assert normalize(title) == "the witcher 3 wild hunt"

    def test_strips_scene_group_suffix(self):
        assert normalize("Cyberpunk 2077 v2.1-RUNE") == "cyberpunk 2077"

    def test_keeps_lowercase_hyphenated_words(self):
        assert normalize("Half-Life 2") == "half life 2"

    def test_roman_numerals_become_digits(self):
        assert normalize("Final Fantasy VII Remake") == "final fantasy 7 remake"

    def test_html_entities_and_apostrophes(self):
        assert normalize("Baldur&#39;s Gate 3") == "baldurs gate 3"

    def test_trademark_symbols(self):
        assert normalize("DOOM™ Eternal®") == "doom eternal"

    def test_ampersand_and_build_token(self):
        assert normalize("Ratchet & Clank Build 11542") == "ratchet and clank"

    def test_year_and_bracket_asides(self):
        assert normalize("Prey (2017) (MULTI12) [Cracked]") == "prey"

    def test_deluxe_edition(self):
        assert normalize("Elden Ring Deluxe Edition") == "elden ring"

    def test_noise_only_title_falls_back_to_lowercase_input(self):
        assert normalize("  [FitGirl Repack]  ") == "[fitgirl repack]"

    def test_empty_input(self):
        assert normalize("") == ""
        assert normalize(None) == ""

    @pytest.mark.parametrize("title", [
        "The Witcher 3: Wild Hunt - Game of the Year Edition v4.04 [FitGirl Repack]",
        "Cyberpunk 2077 v2.1-RUNE",
        "Final Fantasy VII Remake",
        "[FitGirl Repack]",
        "Assetto Corsa EVO v0.1.2 (Early Access) - Free Download",
        "Dead Space™ Remake Digital Deluxe Edition",
    ])
    def test_idempotent(self, title):
        once = normalize(title)
        assert normalize(once) == once

    def test_tokens(self):
        assert tokens("Hollow Knight v1.5") == ["hollow", "knight"]
        assert tokens("") == []

    def test_steps_are_plain_callables(self):
        for step in STEPS:
            assert step("") == ""
