"""Unit tests for the pure indicator functions in metag_etl.derived."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from metag_etl.derived import (
    NO_TIMEPOINT,
    age_at,
    body_mass_index,
    bmi_category,
    first_catch_up,
    timepoint_label,
    weight_gain_category,
    zscore,
    zscore_category,
    zscore_subcategory,
)

BIRTH = date(2021, 1, 1)


def _day(n: int) -> date:
    return BIRTH + timedelta(days=n)


# ---------------------------------------------------------------------------
# Timepoints
# ---------------------------------------------------------------------------

class TestTimepointLabel:
    @pytest.mark.parametrize("days,label", [
        (0, "meconium"),
        (1, "meconium"),
        (3, "3d"),
        (14, "2w"),
        (42, "6w"),
        (90, "3m"),
        (180, "6m"),
        (365, "1y"),
        (1095, "3y"),
    ])
    def test_windows(self, days, label):
        assert timepoint_label(BIRTH, _day(days)) == label

    def test_between_windows(self):
        assert timepoint_label(BIRTH, _day(6)) == NO_TIMEPOINT

    def test_before_birth(self):
        assert timepoint_label(BIRTH, _day(-1)) == NO_TIMEPOINT


# ---------------------------------------------------------------------------
# z-scores
# ---------------------------------------------------------------------------

class TestZscore:
    def test_inside_three_sd(self):
        assert zscore(1.0, 10.0, 0.1, 11.0) == 1.0

    def test_median_is_zero(self):
        assert zscore(0.3, 3.3, 0.14, 3.3) == 0.0

    def test_above_three_sd_adjusted(self):
        assert zscore(1.0, 10.0, 0.1, 15.0) == 5.0

    def test_below_three_sd_adjusted(self):
        assert zscore(1.0, 10.0, 0.1, 5.0) == -5.0

    def test_skewed_tail_uses_sd_distance(self):
        # 3 + (value - SD3) / (SD3 - SD2)
        l, m, s = 0.35, 3.3, 0.14
        sd3 = m * (1 + l * s * 3) ** (1 / l)
        sd2 = m * (1 + l * s * 2) ** (1 / l)
        assert zscore(l, m, s, 6.0) == round(3 + (6.0 - sd3) / (sd3 - sd2), 2)


class TestZscoreCategory:
    def test_aga(self):
        assert zscore_category(-1.2) == "AGA"

    def test_boundary_is_aga(self):
        assert zscore_category(-2.0) == "AGA"

    def test_sga(self):
        assert zscore_category(-2.4) == "SGA"

    def test_none(self):
        assert zscore_category(None) is None


class TestCatchUp:
    SERIES = [
        (_day(0), "meconium", -2.5),
        (_day(3), "3d", -2.2),
        (_day(180), "6m", -1.5),
    ]

    def test_first_catch_up(self):
        assert first_catch_up(self.SERIES) == (_day(180), "6m")

    def test_small_gain_is_not_catch_up(self):
        series = [(_day(0), "meconium", -2.5), (_day(3), "3d", -1.9)]
        assert first_catch_up(series) is None

    def test_aga_has_no_catch_up(self):
        assert first_catch_up([(_day(0), "meconium", -1.0)]) is None

    def test_subcategory_at_birth(self):
        assert zscore_subcategory(self.SERIES, _day(0)) == "SGA"

    def test_subcategory_before_catch_up(self):
        assert zscore_subcategory(self.SERIES, _day(3)) == "no catch-up"

    def test_subcategory_early(self):
        assert zscore_subcategory(self.SERIES, _day(180)) == "early catch-up"

    def test_subcategory_late(self):
        series = self.SERIES[:2] + [(_day(270), "9m", -1.5)]
        assert zscore_subcategory(series, _day(270)) == "late catch-up"

    def test_subcategory_aga(self):
        assert zscore_subcategory([(_day(0), "meconium", 0.1)], _day(0)) == "AGA"

    def test_subcategory_empty(self):
        assert zscore_subcategory([], _day(0)) is None


# ---------------------------------------------------------------------------
# Maternal indicators
# ---------------------------------------------------------------------------

class TestMaternal:
    def test_bmi(self):
        assert body_mass_index(70.0, 1.75) == 22.86

    @pytest.mark.parametrize("bmi,category", [
        (17.0, "underweight"),
        (18.5, "normal weight"),
        (24.99, "normal weight"),
        (27.0, "overweight"),
        (30.0, "obesity"),
    ])
    def test_bmi_category(self, bmi, category):
        assert bmi_category(bmi) == category

    @pytest.mark.parametrize("bmi,gain,category", [
        (22.0, 10.0, "not enough"),
        (22.0, 12.0, "appropriate"),
        (22.0, 17.0, "too much"),
        (17.0, 12.5, "appropriate"),
        (31.0, 10.0, "too much"),
    ])
    def test_weight_gain(self, bmi, gain, category):
        assert weight_gain_category(bmi, gain) == category

    def test_age_at(self):
        assert age_at(date(1990, 1, 1), date(2020, 1, 1)) == 30.0
