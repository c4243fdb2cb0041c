"""
Kaplan-Meier survival estimates from subject exit events.

Natural deaths are events. Sacrifices and exclusions are censored: they leave
the risk set without lowering survival. Subjects that never exited stay at
risk through every plotted day.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, Iterable, List, Optional, Union

import pandas as pd
from sqlalchemy.orm import Session

from .calculations import calculate_day_of_study
from .schema import Experiment, Subject, TreatmentGroup


@dataclass
class SurvivalSubject:
    """One subject's contribution to a survival curve."""
    exit_day: Optional[int]
    is_event: bool


@dataclass
class SurvivalPoint:
    """A step of the survival curve."""
    day: int
    survival_pct: float
    at_risk: int   # still at risk after this day's exits
    events: int    # deaths on this day

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SurvivalCurve:
    """Survival curve for one treatment group."""
    treatment_group_name: str
    color: Optional[str]
    data: List[SurvivalPoint] = field(default_factory=list)
    total_subjects: int = 0
    total_events: int = 0

    def to_dict(self) -> dict:
        return {
            'treatment_group_name': self.treatment_group_name,
            'color': self.color,
            'data': [p.to_dict() for p in self.data],
            'total_subjects': self.total_subjects,
            'total_events': self.total_events,
        }


def _normalize(subject: Union[SurvivalSubject, Dict]) -> SurvivalSubject:
    if isinstance(subject, SurvivalSubject):
        return subject
    exit_day = subject.get('exit_day', subject.get('exitDay'))
    is_event = subject.get('is_event', subject.get('isEvent', False))
    return SurvivalSubject(exit_day=exit_day, is_event=bool(is_event))


def kaplan_meier(subjects: Iterable[Union[SurvivalSubject, Dict]]) -> List[SurvivalPoint]:
    """
    Compute a Kaplan-Meier step curve.

    At each exit day with d deaths out of n at risk, survival is multiplied by
    (1 - d/n); deaths and censorings on that day then leave the risk set.

    Args:
        subjects: SurvivalSubject records (or dicts with exit_day / is_event)

    Returns:
        Points starting at day 0 / 100%, one per distinct exit day
    """
    subjects = [_normalize(s) for s in subjects]
    df = pd.DataFrame(
        [(s.exit_day, s.is_event) for s in subjects],
        columns=['exit_day', 'is_event'],
    )

    at_risk = len(df)
    survival = 100.0
    points = [SurvivalPoint(day=0, survival_pct=survival, at_risk=at_risk, events=0)]

    exits = df.dropna(subset=['exit_day'])
    if exits.empty:
        return points

    by_day = (exits.astype({'is_event': bool})
              .groupby('exit_day')['is_event']
              .agg(deaths='sum', exits='count')
              .sort_index())

    for day, row in by_day.iterrows():
        deaths = int(row['deaths'])
        if deaths > 0 and at_risk > 0:
            survival = max(0.0, survival * (1 - deaths / at_risk))
        at_risk -= int(row['exits'])
        points.append(SurvivalPoint(day=int(day), survival_pct=survival,
                                    at_risk=at_risk, events=deaths))

    return points


def survival_by_group(session: Session, experiment_ids: List[int]) -> List[SurvivalCurve]:
    """
    Build one survival curve per treatment group across experiments.

    Groups with the same name in different experiments are pooled, so a
    repeated study can be compared against its earlier run.
    """
    if not experiment_ids:
        return []

    rows = (session.query(Subject, TreatmentGroup, Experiment.start_date)
            .join(TreatmentGroup, TreatmentGroup.id == Subject.treatment_group_id)
            .join(Experiment, Experiment.id == Subject.experiment_id)
            .filter(Experiment.id.in_(experiment_ids))
            .order_by(TreatmentGroup.sort_order, TreatmentGroup.name)
            .all())

    groups: Dict[str, dict] = {}
    for subject, group, start_date in rows:
        entry = groups.setdefault(group.name, {'color': group.color, 'subjects': []})
        exit_day = (calculate_day_of_study(subject.exit_date, start_date)
                    if subject.exit_date else None)
        entry['subjects'].append(SurvivalSubject(
            exit_day=exit_day,
            is_event=subject.exit_type == 'natural_death',
        ))

    curves = []
    for name, entry in groups.items():
        curves.append(SurvivalCurve(
            treatment_group_name=name,
            color=entry['color'],
            data=kaplan_meier(entry['subjects']),
            total_subjects=len(entry['subjects']),
            total_events=sum(1 for s in entry['subjects'] if s.is_event),
        ))
    return curves
