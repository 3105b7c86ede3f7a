"""Tests for the confidence rubric."""

import math

import pytest

from knowwhy.common.rubric import (
    RUBRIC,
    ConfidenceTier,
    format_confidence,
    render_rubric_guidance,
    tier_of,
)


class TestTierOf:
    @pytest.mark.parametrize("confidence,expected", [
        (1.0, ConfidenceTier.EXPLICIT),
        (0.95, ConfidenceTier.EXPLICIT),
        (0.94, ConfidenceTier.STRONG_IMPLICIT),
        (0.70, ConfidenceTier.STRONG_IMPLICIT),
        (0.69, ConfidenceTier.PROBABLE),
        (0.50, ConfidenceTier.PROBABLE),
        (0.49, ConfidenceTier.WEAK),
        (0.25, ConfidenceTier.WEAK),
        (0.24, ConfidenceTier.NOT_A_DECISION),
        (0.0, ConfidenceTier.NOT_A_DECISION),
    ])
    def test_boundaries(self, confidence, expected):
        assert tier_of(confidence) == expected

    def test_out_of_range_is_clamped(self):
        assert tier_of(1.7) == ConfidenceTier.EXPLICIT
        assert tier_of(-0.3) == ConfidenceTier.NOT_A_DECISION

    def test_nan_rejected(self):
        with pytest.raises(ValueError):
            tier_of(math.nan)

    def test_tiers_cover_unit_interval_without_gaps(self):
        for step in range(101):
            value = step / 100
            assert sum(1 for t in RUBRIC if t.contains(value)) == 1


class TestFormatting:
    def test_format_confidence(self):
        shown = format_confidence(0.92)
        assert shown["tier"] == "strong_implicit"
        assert shown["percentage"] == "92%"
        assert shown["description"]

    def test_guidance_lists_every_tier(self):
        text = render_rubric_guidance()
        for tier in ConfidenceTier:
            assert tier.value in text
        assert '"we will"' in text

    def test_tier_lookup_goes_through_tier_of(self):
        from knowwhy.common import rubric
        assert not hasattr(rubric, "get_tier")
        assert [t.low for t in RUBRIC] == [0.95, 0.70, 0.50, 0.25, 0.0]
