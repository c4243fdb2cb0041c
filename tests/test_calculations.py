"""Tests for derived clinical field calculations."""

from datetime import date, datetime

import pytest

from studydb.calculations import (
    DerivedFields,
    calculate_day_of_study,
    calculate_total_css,
    calculate_weight_pct_change,
    compute_derived_fields,
    css_severity,
    get_weight_score,
    should_latch_baseline,
)


class TestDayOfStudy:
    def test_accepts_strings_dates_and_datetimes(self):
        assert calculate_day_of_study('2026-03-11', '2026-03-01') == 10
        assert calculate_day_of_study(date(2026, 3, 11), date(2026, 3, 1)) == 10
        assert calculate_day_of_study(datetime(2026, 3, 11, 23, 59), '2026-03-01T00:00:00') == 10

    def test_pre_study_dates_are_negative(self):
        assert calculate_day_of_study('2026-02-27', '2026-03-01') == -2


class TestWeightScore:
    @pytest.mark.parametrize("pct,score", [
        (3.0, 0), (0.0, 0),
        (-0.5, 1), (-4.0, 1),
        (-4.01, 2), (-9.0, 2),
        (-9.5, 3), (-14.0, 3),
        (-14.01, 4), (-30.0, 4),
    ])
    def test_bands(self, pct, score):
        assert get_weight_score(pct) == score

    def test_pct_change_rounds_to_two_decimals(self):
        assert calculate_weight_pct_change(18.0, 19.0) == -5.26
        assert calculate_weight_pct_change(21.0, 20.0) == 5.0

    def test_pct_change_needs_weight_and_nonzero_baseline(self):
        assert calculate_weight_pct_change(None, 20.0) is None
        assert calculate_weight_pct_change(20.0, None) is None
        assert calculate_weight_pct_change(20.0, 0) is None


def test_total_css_requires_all_components():
    assert calculate_total_css(2, 1, 3) == 6
    assert calculate_total_css(None, 1, 3) is None
    assert calculate_total_css(2, None, 3) is None


def test_css_severity_labels():
    assert css_severity(0) == 'normal'
    assert css_severity(4) == 'mild'
    assert css_severity(6) == 'moderate'
    assert css_severity(9) == 'severe'
    assert css_severity(10) == 'critical'


class TestComputeDerivedFields:
    def test_full_observation(self):
        derived = compute_derived_fields(
            weight=19.0, baseline_weight=20.0, stool_score=1, behavior_score=0,
            observation_date='2026-03-04', experiment_start_date='2026-03-01',
        )
        assert derived == DerivedFields(day_of_study=3, weight_pct_change=-5.0,
                                        weight_score=2, total_css=3)

    def test_no_scoring_before_baseline_day(self):
        derived = compute_derived_fields(
            weight=19.0, baseline_weight=20.0, stool_score=1, behavior_score=1,
            observation_date='2026-03-02', experiment_start_date='2026-03-01',
            baseline_day_offset=3,
        )
        assert derived.day_of_study == 1
        assert derived.weight_pct_change is None
        assert derived.weight_score is None
        assert derived.total_css is None

    def test_scoring_starts_on_baseline_day(self):
        derived = compute_derived_fields(
            weight=20.0, baseline_weight=20.0, stool_score=0, behavior_score=0,
            observation_date='2026-03-04', experiment_start_date='2026-03-01',
            baseline_day_offset=3,
        )
        assert derived.weight_pct_change == 0.0
        assert derived.total_css == 0

    def test_missing_baseline_leaves_weight_fields_empty(self):
        derived = compute_derived_fields(
            weight=19.0, baseline_weight=None, stool_score=1, behavior_score=1,
            observation_date='2026-03-05', experiment_start_date='2026-03-01',
        )
        assert derived.weight_pct_change is None
        assert derived.weight_score is None
        assert derived.total_css is None

    def test_fifteen_percent_loss_on_day_four(self):
        start = '2024-01-01'
        assert should_latch_baseline(None, 20.0, calculate_day_of_study('2024-01-01', start), 0)

        weight_only = compute_derived_fields(
            weight=17.0, baseline_weight=20.0, stool_score=None, behavior_score=None,
            observation_date='2024-01-05', experiment_start_date=start,
        )
        assert weight_only == DerivedFields(day_of_study=4, weight_pct_change=-15.0,
                                            weight_score=4, total_css=None)

        scored = compute_derived_fields(
            weight=17.0, baseline_weight=20.0, stool_score=2, behavior_score=1,
            observation_date='2024-01-05', experiment_start_date=start,
        )
        assert scored.total_css == 7

    def test_deterministic(self):
        args = dict(weight=17.3, baseline_weight=20.1, stool_score=2, behavior_score=3,
                    observation_date='2026-03-09', experiment_start_date='2026-03-01',
                    baseline_day_offset=1)
        assert compute_derived_fields(**args) == compute_derived_fields(**args)


class TestBaselineLatch:
    def test_first_weight_on_baseline_day_latches(self):
        assert should_latch_baseline(None, 20.0, day_of_study=0, baseline_day_offset=0)

    def test_existing_baseline_is_kept(self):
        assert not should_latch_baseline(21.0, 20.0, day_of_study=0, baseline_day_offset=0)

    def test_other_days_and_missing_weight_do_not_latch(self):
        assert not should_latch_baseline(None, 20.0, day_of_study=1, baseline_day_offset=0)
        assert not should_latch_baseline(None, None, day_of_study=0, baseline_day_offset=0)
