"""
test_chunker.py
~~~~~~~~~~~~~~~
Unit and Hypothesis property tests for the payload chunker.
"""
from __future__ import annotations

import pytest
from hypothesis import given, settings, HealthCheck
from hypothesis import strategies as st

from beyanname_ai.services.chunker import (
    EmptyPayloadError,
    PART_DELIMITER,
    estimate_cost,
    requires_chunking,
    serialize_payload,
    split_payload,
    token_cost,
)


# ─── Strategies ──────────────────────────────────────────────────────────────

tokens = st.text(
    alphabet=st.characters(blacklist_categories=("Zs", "Zl", "Zp", "Cc", "Cs")),
    min_size=1,
    max_size=40,
)
separators = st.sampled_from([" ", "  ", "\n", "\t", " \n "])


@st.composite
def payload_texts(draw):
    """Whitespace-joined token sequences with irregular separators."""
    words = draw(st.lists(tokens, min_size=1, max_size=60))
    text = words[0]
    for word in words[1:]:
        text += draw(separators) + word
    return text


budgets = st.integers(min_value=1, max_value=50)


# ─── Unit Tests ──────────────────────────────────────────────────────────────

class TestCostModel:
    def test_token_cost_is_quarter_of_length(self):
        assert token_cost("abcd") == 1.0
        assert token_cost("abcdef") == 1.5

    def test_estimate_ignores_whitespace(self):
        assert estimate_cost("abcd   efgh\n") == 2.0

    def test_requires_chunking_is_strict(self):
        assert not requires_chunking("abcd efgh", 2)
        assert requires_chunking("abcd efgh i", 2)


class TestSplitPayload:
    def test_under_budget_returns_input_unchanged(self):
        text = "Kurumlar  vergisi\n beyannamesi"
        assert split_payload(text, 100) == [text]

    def test_greedy_packing(self):
        # each token costs 1.0
        parts = split_payload("aaaa bbbb cccc dddd eeee", 2)
        assert parts == ["aaaa bbbb", "cccc dddd", "eeee"]

    def test_oversized_token_gets_own_part(self):
        big = "x" * 40  # cost 10
        parts = split_payload(f"aaaa {big} bbbb", 2)
        assert parts == ["aaaa", big, "bbbb"]

    def test_empty_payload_rejected(self):
        with pytest.raises(EmptyPayloadError):
            split_payload("   \n\t ", 10)

    @pytest.mark.parametrize("budget", [0, -5])
    def test_non_positive_budget_rejected(self, budget):
        with pytest.raises(ValueError):
            split_payload("aaaa", budget)

    def test_deterministic(self):
        text = " ".join(f"satır{i}" for i in range(500))
        assert split_payload(text, 7) == split_payload(text, 7)


class TestSerializePayload:
    def test_string_passes_through(self):
        assert serialize_payload("<Beyanname/>") == "<Beyanname/>"

    def test_json_keeps_turkish_characters(self):
        text = serialize_payload({"unvan": "Şirket Ğ.İ."})
        assert "Şirket Ğ.İ." in text
        assert "\n" in text

    def test_stable_across_calls(self):
        payload = {"b": [1, 2], "a": {"x": "y"}}
        assert serialize_payload(payload) == serialize_payload(payload)


# ─── Property Tests ─────────────────────────────────────────────────────────

class TestSplitPayloadProperties:

    @given(text=payload_texts(), budget=budgets)
    @settings(max_examples=200, suppress_health_check=[HealthCheck.too_slow])
    def test_parts_rejoin_to_original_tokens(self, text, budget):
        parts = split_payload(text, budget)
        assert PART_DELIMITER.join(parts).split() == text.split()

    @given(text=payload_texts(), budget=budgets)
    @settings(max_examples=200, suppress_health_check=[HealthCheck.too_slow])
    def test_parts_within_budget_unless_single_oversized_token(self, text, budget):
        for part in split_payload(text, budget):
            part_tokens = part.split()
            assert part_tokens, "no empty parts"
            if estimate_cost(part) > budget:
                assert len(part_tokens) == 1
                assert token_cost(part_tokens[0]) > budget

    @given(text=payload_texts())
    @settings(max_examples=100)
    def test_fitting_payload_is_single_identical_part(self, text):
        budget = int(estimate_cost(text)) + 1
        assert split_payload(text, budget) == [text]

    @given(text=payload_texts(), budget=budgets)
    @settings(max_examples=100)
    def test_same_input_same_parts(self, text, budget):
        assert split_payload(text, budget) == split_payload(text, budget)
