"""Tests for the topic pattern compiler (``bus/patterns.py``)."""

from __future__ import annotations

import pytest

from domain_bus.bus.patterns import compile_pattern, matches, pattern_to_regex


@pytest.mark.parametrize(
    ("pattern", "event_type", "expected"),
    [
        # literal
        ("product.created", "product.created", True),
        ("product.created", "product.updated", False),
        ("product.created", "product.created.v2", False),
        # single-word wildcard
        ("product.*", "product.created", True),
        ("product.*", "product.variant.added", False),
        ("product.*", "product", False),
        ("*.created", "order.created", True),
        ("*.created", "created", False),
        # multi-word wildcard
        ("product.#", "product", True),
        ("product.#", "product.created", True),
        ("product.#", "product.variant.added", True),
        ("product.#", "productx", False),
        ("product.#", "order.created", False),
        ("#.created", "created", True),
        ("#.created", "order.created", True),
        ("#.created", "shop.order.created", True),
        ("#.created", "order.created.v2", False),
        ("#", "anything.at.all", True),
        ("#", "x", True),
        # middle #
        ("order.#.placed", "order.placed", True),
        ("order.#.placed", "order.eu.placed", True),
        ("order.#.placed", "order.eu.west.placed", True),
        ("order.#.placed", "orderplaced", False),
        ("order.#.placed", "order.placed.late", False),
        # mixed
        ("*.order.#", "shop.order", True),
        ("*.order.#", "shop.order.placed.v1", True),
        ("*.order.#", "order.placed", False),
        ("#.#", "a.b", True),
    ],
)
def test_truth_table(pattern, event_type, expected):
    assert matches(pattern, event_type) is expected


class TestCompilePattern:
    def test_matcher_is_callable_and_exposes_regex(self):
        matcher = compile_pattern("order.*")
        assert matcher("order.placed")
        assert matcher.pattern == "order.*"
        assert matcher.regex.pattern == pattern_to_regex("order.*")

    def test_compiled_matchers_are_cached(self):
        assert compile_pattern("a.b.#") is compile_pattern("a.b.#")

    def test_literal_segments_are_escaped(self):
        assert not matches("a+b.c", "aab.c")
        assert matches("a+b.c", "a+b.c")

    def test_dot_in_literal_is_not_a_wildcard(self):
        assert not matches("order.placed", "orderXplaced")

    def test_star_only_matches_word_characters(self):
        assert matches("user.*", "user.sign_up-v2")
        assert not matches("user.*", "user.sign up")
