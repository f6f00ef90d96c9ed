"""Tests for lumen/utils.py."""

from __future__ import annotations

import pytest
from lumen.utils import clamp, parse_bool, parse_float, parse_int, round_half_up, split_csv


class TestParseBool:
    @pytest.mark.parametrize("value", ["1", "true", "TRUE", " yes ", "on"])
    def test_truthy(self, value):
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["0", "false", "no", "off", "", "maybe"])
    def test_falsy(self, value):
        assert parse_bool(value, default=True) is False

    def test_none_uses_default(self):
        assert parse_bool(None, default=True) is True
        assert parse_bool(None) is False


class TestNumericParsers:
    def test_parse_int(self):
        assert parse_int("42", 0) == 42

    def test_parse_int_invalid_falls_back(self):
        assert parse_int("forty", 7) == 7

    def test_parse_int_none(self):
        assert parse_int(None, 3) == 3

    def test_parse_float(self):
        assert parse_float("0.25", 1.0) == 0.25

    def test_parse_float_invalid_falls_back(self):
        assert parse_float("bright", 1.5) == 1.5

    def test_parse_float_non_finite_falls_back(self):
        assert parse_float("nan", 1.0) == 1.0
        assert parse_float("inf", 1.0) == 1.0


class TestSplitCsv:
    def test_trims_and_drops_empty(self):
        assert split_csv(" a, b ,,c ") == ["a", "b", "c"]

    def test_empty(self):
        assert split_csv(None) == []
        assert split_csv("") == []


class TestClamp:
    def test_inside(self):
        assert clamp(0.4, 0.0, 1.0) == 0.4

    def test_below(self):
        assert clamp(-3, 0, 100) == 0

    def test_above(self):
        assert clamp(3.5, 0.1, 3.0) == 3.0


class TestRoundHalfUp:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(0.5, 1), (1.5, 2), (2.5, 3), (33.333, 33), (66.666, 67), (49.999, 50), (0.49, 0)],
    )
    def test_rounds_ties_up(self, value, expected):
        assert round_half_up(value) == expected

    def test_negative_is_symmetric(self):
        assert round_half_up(-0.5) == -1
        assert round_half_up(-1.4) == -1
