"""Tests for the localized message catalogue."""

import pytest

from flowbot.prompts.messages import MESSAGES, get_message, message, render
from flowbot.schemas.conversation_schema import Language


class TestCatalogue:
    def test_every_key_has_both_languages(self):
        for key, entry in MESSAGES.items():
            assert set(entry) == {"en", "es"}, key

    def test_rotations_have_matching_lengths(self):
        for key, entry in MESSAGES.items():
            if isinstance(entry["en"], list):
                assert len(entry["en"]) == len(entry["es"]), key


class TestGetMessage:
    def test_spanish(self):
        assert get_message("askName", Language.ES).startswith("¡Perfecto!")

    def test_plain_string_language(self):
        assert get_message("askName", "en") == "Great! What's your name?"

    def test_unknown_language_falls_back_to_english(self):
        assert get_message("askName", "fr") == get_message("askName", "en")

    def test_unknown_key(self):
        with pytest.raises(KeyError):
            get_message("doesNotExist", Language.EN)

    def test_rotation_wraps(self):
        first = get_message("retryEmail", Language.EN, variant=0)
        assert get_message("retryEmail", Language.EN, variant=3) == first
        assert get_message("retryEmail", Language.EN, variant=1) != first


class TestRender:
    def test_substitution(self):
        assert render("Hi {name}, {name}!", name="Ana") == "Hi Ana, Ana!"

    def test_missing_placeholder_left_verbatim(self):
        assert render("Link: {link}", name="Ana") == "Link: {link}"

    def test_values_are_not_rescanned(self):
        text = message(
            "paymentConfirmDetails", Language.EN,
            product="Monthly Membership", amount="$99.00", name="{email}", email="ana@example.com",
        )
        assert "Name: {email}" in text
        assert "Email: ana@example.com" in text

    def test_braces_in_value_left_alone(self):
        assert render("{a} and {b}", a="{b}", b="x") == "{b} and x"

    def test_message_shorthand(self):
        text = message("confirmSlot", Language.EN, slot="Tue 03 Mar 2026, 09:00")
        assert text == "Perfect! I have you down for Tue 03 Mar 2026, 09:00. Confirm?"
