"""
Server-side write services for observations, exits and samples.

Every write path (sync push, direct HTTP writes, CLI) goes through these
functions, so derived fields, the baseline latch and the (subject, date)
upsert behave identically no matter how a record arrives.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from .calculations import (
    calculate_day_of_study, compute_derived_fields, should_latch_baseline,
)
from .payloads import (
    ClinicalScores, CreateObservationPayload, CreateObservationsBatchPayload,
    CreateSamplesBatchPayload, RecordExitPayload,
)
from .schema import Experiment, Observation, Sample, Subject, get_subject_context
from .validators import NotFoundError, ValidationError, exit_status_for

logger = logging.getLogger(__name__)

RAW_OBSERVATION_FIELDS = ('weight', 'stool_score', 'behavior_score', 'notes')


@dataclass
class ObservationOutcome:
    """Result of one observation upsert."""
    observation: Optional[Observation]
    conflict: bool = False      # incoming data discarded, existing row kept
    created: bool = False
    baseline_latched: bool = False


@dataclass
class ExitOutcome:
    subject: Subject
    changed: bool = True
    conflict: bool = False
    final_observation: Optional[ObservationOutcome] = None


@dataclass
class BatchOutcome:
    outcomes: List[ObservationOutcome] = field(default_factory=list)

    @property
    def conflict(self) -> bool:
        return any(o.conflict for o in self.outcomes)

    @property
    def observations(self) -> List[Observation]:
        return [o.observation for o in self.outcomes if o.observation is not None]


def client_time(timestamp_ms: int) -> datetime:
    """Client epoch milliseconds as a naive UTC datetime, comparable to created_at."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).replace(tzinfo=None)


def _load_context(session: Session, subject_id: int):
    context = get_subject_context(session, subject_id)
    if context is None:
        raise NotFoundError('Subject', subject_id)
    return context


def derive_for(observation: Observation, subject: Subject, experiment: Experiment):
    """Recompute one stored observation's derived fields in place."""
    derived = compute_derived_fields(
        weight=observation.weight,
        baseline_weight=subject.baseline_weight,
        stool_score=observation.stool_score,
        behavior_score=observation.behavior_score,
        observation_date=observation.observation_date,
        experiment_start_date=experiment.start_date,
        baseline_day_offset=experiment.baseline_day_offset,
    )
    observation.apply_derived(derived)


def rederive_subject(session: Session, subject: Subject, experiment: Experiment) -> int:
    """Recompute derived fields for every observation of a subject. Returns the count."""
    observations = (session.query(Observation)
                    .filter(Observation.subject_id == subject.id)
                    .all())
    for obs in observations:
        derive_for(obs, subject, experiment)
    return len(observations)


def upsert_observation(session: Session,
                       subject_id: int,
                       observation_date: date,
                       scores: ClinicalScores,
                       observer: Optional[str] = None,
                       client_timestamp: Optional[int] = None) -> ObservationOutcome:
    """
    Insert or replace the observation for (subject_id, observation_date).

    When ``client_timestamp`` is given (a replayed offline write) and the
    stored row was created after it, the incoming data is discarded and the
    outcome is flagged as a conflict. Otherwise every raw field is replaced;
    ``created_at`` of an existing row is never touched.

    If this write latches the subject's baseline weight, the subject's other
    observations are re-derived against it, so replay order does not matter.

    Raises:
        NotFoundError: if the subject does not exist
    """
    existing = (session.query(Observation)
                .filter(Observation.subject_id == subject_id,
                        Observation.observation_date == observation_date)
                .first())

    if existing is not None and client_timestamp is not None and existing.created_at is not None:
        if existing.created_at > client_time(client_timestamp):
            logger.info("Conflict: observation %s/%s is newer than client write, keeping it",
                        subject_id, observation_date)
            return ObservationOutcome(observation=existing, conflict=True)

    subject, experiment = _load_context(session, subject_id)

    day_of_study = calculate_day_of_study(observation_date, experiment.start_date)
    latched = False
    if should_latch_baseline(subject.baseline_weight, scores.weight,
                             day_of_study, experiment.baseline_day_offset):
        subject.baseline_weight = scores.weight
        latched = True

    obs = existing
    if obs is None:
        obs = Observation(subject_id=subject_id, observation_date=observation_date)
        session.add(obs)

    for name in RAW_OBSERVATION_FIELDS:
        setattr(obs, name, getattr(scores, name))
    obs.observer = observer
    derive_for(obs, subject, experiment)

    if latched:
        session.flush()
        count = rederive_subject(session, subject, experiment)
        logger.info("Baseline latched for subject %s at %sg, re-derived %d observations",
                    subject_id, scores.weight, count)

    return ObservationOutcome(observation=obs, created=existing is None, baseline_latched=latched)


def create_observation(session: Session, payload: CreateObservationPayload,
                       client_timestamp: Optional[int] = None) -> ObservationOutcome:
    return upsert_observation(session, payload.subject_id, payload.observation_date,
                              payload, observer=payload.observer,
                              client_timestamp=client_timestamp)


def create_observations_batch(session: Session, payload: CreateObservationsBatchPayload,
                              client_timestamp: Optional[int] = None) -> BatchOutcome:
    """Upsert one observation per subject for a shared date; each item is conflict-checked."""
    batch = BatchOutcome()
    for item in payload.observations:
        batch.outcomes.append(upsert_observation(
            session, item.subject_id, payload.observation_date, item,
            observer=payload.observer, client_timestamp=client_timestamp,
        ))
    return batch


def record_exit(session: Session, payload: RecordExitPayload,
                client_timestamp: Optional[int] = None) -> ExitOutcome:
    """
    Record a subject's death, sacrifice or exclusion.

    Exits are one-way. Re-sending the exact exit already on record is a no-op;
    any other exit for a subject that has left the study is rejected.

    Raises:
        NotFoundError: if the subject does not exist
        ValidationError: if the subject already exited differently
    """
    subject = session.get(Subject, payload.subject_id)
    if subject is None:
        raise NotFoundError('Subject', payload.subject_id)

    status = exit_status_for(payload.exit_type)

    if not subject.is_alive:
        same = (subject.status == status
                and subject.exit_date == payload.exit_date
                and subject.exit_type == payload.exit_type
                and (subject.exit_reason or None) == (payload.exit_reason or None))
        if same:
            return ExitOutcome(subject=subject, changed=False)
        raise ValidationError('status', status,
                              f"Subject already exited as '{subject.status}' on {subject.exit_date}")

    subject.status = status
    subject.exit_date = payload.exit_date
    subject.exit_type = payload.exit_type
    subject.exit_reason = payload.exit_reason

    outcome = ExitOutcome(subject=subject)
    if payload.final_observation is not None:
        outcome.final_observation = upsert_observation(
            session, subject.id, payload.exit_date, payload.final_observation,
            client_timestamp=client_timestamp,
        )
        outcome.conflict = outcome.final_observation.conflict

    logger.info("Subject %s exited: %s (%s) on %s",
                subject.id, status, payload.exit_type, payload.exit_date)
    return outcome


def create_samples(session: Session, payload: CreateSamplesBatchPayload) -> List[Sample]:
    """
    Insert a batch of samples collected on one date.

    Raises:
        NotFoundError: if any subject does not exist
    """
    samples = []
    for item in payload.samples:
        subject, experiment = _load_context(session, item.subject_id)
        sample = Sample(
            subject_id=subject.id,
            sample_type=item.sample_type,
            collection_date=payload.collection_date,
            day_of_study=calculate_day_of_study(payload.collection_date, experiment.start_date),
            storage_box=item.storage_box,
            box_position=item.box_position,
            volume_ul=item.volume_ul,
            notes=item.notes,
        )
        session.add(sample)
        samples.append(sample)
    session.flush()
    return samples
