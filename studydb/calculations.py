"""
Derived clinical field calculations for StudyDB.

Pure functions, no database access. Given the raw inputs of an observation and
the experiment configuration, computes:
- Day of study (offset from experiment start)
- Weight percent change from baseline
- Weight score (banded weight change)
- Total clinical severity score (CSS)

The same functions run on the server when observations are written and on
the field client when writes are applied optimistically, so both sides agree
on every derived value.
"""

from dataclasses import dataclass, asdict
from datetime import date, datetime
from typing import Optional, Union

DateLike = Union[str, date, datetime]

# (lower bound of weight % change, score) - checked top to bottom
WEIGHT_SCORE_BANDS = [
    (0, 0),     # 100% or above baseline
    (-4, 1),    # 96-99% of baseline
    (-9, 2),    # 91-95% of baseline
    (-14, 3),   # 86-90% of baseline
]
WEIGHT_SCORE_FLOOR = 4  # 85% or below baseline

STOOL_SCORES = {
    0: 'Normal - formed, normal color',
    1: 'Soft - soft but formed',
    2: 'Loose - loose, paste-like',
    3: 'Watery - watery, no form',
    4: 'Bloody - visible blood present',
}

BEHAVIOR_SCORES = {
    0: 'Normal - active, alert, grooming',
    1: 'Mild - slightly reduced activity',
    2: 'Moderate - hunched, reduced grooming',
    3: 'Severe - lethargic, piloerection',
    4: 'Critical - moribund, unresponsive',
}

# (max total CSS, severity) - checked top to bottom
CSS_SEVERITY_LEVELS = [
    (2, 'normal'),
    (4, 'mild'),
    (6, 'moderate'),
    (9, 'severe'),
]

DEFAULT_ENDPOINT_WEIGHT_LOSS_PCT = 15.0


@dataclass(frozen=True)
class DerivedFields:
    """Derived values stored alongside an observation's raw inputs."""
    day_of_study: int
    weight_pct_change: Optional[float] = None
    weight_score: Optional[int] = None
    total_css: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def calculate_day_of_study(observation_date: DateLike, experiment_start_date: DateLike) -> int:
    """Whole days between the experiment start and a record date (negative = pre-study)."""
    return (_as_date(observation_date) - _as_date(experiment_start_date)).days


def calculate_weight_pct_change(weight: Optional[float],
                                baseline_weight: Optional[float]) -> Optional[float]:
    """Percent change from baseline, rounded to 2 decimals."""
    if weight is None or baseline_weight is None or baseline_weight == 0:
        return None
    return round((weight - baseline_weight) / baseline_weight * 100, 2)


def get_weight_score(pct_change: float) -> int:
    """Map a weight % change onto the 0-4 weight score."""
    for lower_bound, score in WEIGHT_SCORE_BANDS:
        if pct_change >= lower_bound:
            return score
    return WEIGHT_SCORE_FLOOR


def calculate_total_css(weight_score: Optional[int],
                        stool_score: Optional[int],
                        behavior_score: Optional[int]) -> Optional[int]:
    """Sum of the three component scores, or None if any is missing."""
    if weight_score is None or stool_score is None or behavior_score is None:
        return None
    return weight_score + stool_score + behavior_score


def css_severity(total_css: int) -> str:
    """Severity label for a total CSS."""
    for upper_bound, label in CSS_SEVERITY_LEVELS:
        if total_css <= upper_bound:
            return label
    return 'critical'


def compute_derived_fields(weight: Optional[float],
                           baseline_weight: Optional[float],
                           stool_score: Optional[int],
                           behavior_score: Optional[int],
                           observation_date: DateLike,
                           experiment_start_date: DateLike,
                           baseline_day_offset: int = 0) -> DerivedFields:
    """
    Compute every derived field of an observation.

    CSS scoring starts on the baseline day: for any date before
    ``baseline_day_offset`` only ``day_of_study`` is set.

    Args:
        weight: Body weight in grams (None if not weighed)
        baseline_weight: Subject's baseline weight (None if not yet latched)
        stool_score: 0-4 or None
        behavior_score: 0-4 or None
        observation_date: Date of the observation
        experiment_start_date: Day 0 of the experiment
        baseline_day_offset: Study day on which scoring begins

    Returns:
        DerivedFields
    """
    day_of_study = calculate_day_of_study(observation_date, experiment_start_date)
    if day_of_study < baseline_day_offset:
        return DerivedFields(day_of_study=day_of_study)

    weight_pct_change = calculate_weight_pct_change(weight, baseline_weight)
    weight_score = get_weight_score(weight_pct_change) if weight_pct_change is not None else None

    return DerivedFields(
        day_of_study=day_of_study,
        weight_pct_change=weight_pct_change,
        weight_score=weight_score,
        total_css=calculate_total_css(weight_score, stool_score, behavior_score),
    )


def should_latch_baseline(current_baseline: Optional[float],
                          weight: Optional[float],
                          day_of_study: int,
                          baseline_day_offset: int) -> bool:
    """
    True when this observation should set the subject's baseline weight.

    Only the first weighed observation on the baseline day latches; once set
    the baseline is left alone until the baseline day itself changes.
    """
    return (current_baseline is None
            and weight is not None
            and day_of_study == baseline_day_offset)
