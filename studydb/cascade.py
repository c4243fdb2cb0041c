"""
Baseline recompute cascade.

Changing an experiment's baseline day (or its start date) invalidates every
stored baseline weight and derived observation field in the experiment. The
cascade rebuilds them from raw inputs. It is idempotent: running it twice
leaves the same values as running it once.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from .calculations import calculate_day_of_study
from .payloads import ExperimentUpdate
from .records import rederive_subject
from .schema import Experiment, Observation, Subject
from .validators import NotFoundError

logger = logging.getLogger(__name__)

# Changing either of these moves which observation is the baseline
CASCADE_FIELDS = ('baseline_day_offset', 'start_date')

NULLABLE_FIELDS = ('description', 'end_date', 'endpoint_css_threshold', 'endpoint_css_operator')


def recalculate_subject(session: Session, subject: Subject, experiment: Experiment) -> int:
    """
    Re-latch one subject's baseline and re-derive its observations.

    The new baseline is the weight recorded on the experiment's baseline day,
    or unset when there is no such observation (or it has no weight).

    Returns:
        Number of observations re-derived
    """
    baseline_weight = None
    observations = (session.query(Observation)
                    .filter(Observation.subject_id == subject.id)
                    .all())
    for obs in observations:
        day = calculate_day_of_study(obs.observation_date, experiment.start_date)
        if day == experiment.baseline_day_offset:
            baseline_weight = obs.weight
            break

    subject.baseline_weight = baseline_weight
    return rederive_subject(session, subject, experiment)


def recalculate_experiment(session: Session, experiment: Experiment, db=None) -> dict:
    """
    Rebuild baselines and derived fields for every subject in an experiment.

    Runs inside the caller's transaction, so it commits or rolls back
    together with the experiment change that triggered it.

    Args:
        session: Active database session
        experiment: Experiment whose settings were just changed
        db: Optional Database, used for the audit trail

    Returns:
        Summary dict with subject and observation counts
    """
    subjects = (session.query(Subject)
                .filter(Subject.experiment_id == experiment.id)
                .all())
    observation_count = 0
    for subject in subjects:
        observation_count += recalculate_subject(session, subject, experiment)
        for sample in subject.samples:
            sample.day_of_study = calculate_day_of_study(sample.collection_date,
                                                         experiment.start_date)

    summary = {
        'experiment_id': experiment.id,
        'baseline_day_offset': experiment.baseline_day_offset,
        'subjects': len(subjects),
        'observations': observation_count,
    }
    logger.info("Recalculated %d observations for %d subjects in experiment %s",
                observation_count, len(subjects), experiment.id)
    if db is not None:
        db.log_change(session, 'RECALCULATE', 'experiments', experiment.id, new_values=summary)
    return summary


def update_experiment(session: Session, experiment_id: int, update: ExperimentUpdate,
                      db=None) -> tuple:
    """
    Apply an experiment settings change, cascading when the baseline moves.

    Returns:
        (experiment, cascade summary or None)

    Raises:
        NotFoundError: if the experiment does not exist
    """
    experiment = session.get(Experiment, experiment_id)
    if experiment is None:
        raise NotFoundError('Experiment', experiment_id)

    changes = {key: value for key, value in update.model_dump(exclude_unset=True).items()
               if value is not None or key in NULLABLE_FIELDS}
    old_values = {key: getattr(experiment, key) for key in changes}
    for key, value in changes.items():
        setattr(experiment, key, value)

    summary: Optional[dict] = None
    if any(key in changes and changes[key] != old_values[key] for key in CASCADE_FIELDS):
        session.flush()
        summary = recalculate_experiment(session, experiment, db=db)

    if db is not None and changes:
        db.log_change(session, 'UPDATE', 'experiments', experiment.id,
                      old_values=old_values, new_values=changes)
    return experiment, summary
