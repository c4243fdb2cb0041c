"""
Reconciliation of offline writes (push) and offline snapshots (pull).

Push applies a client's queued mutations in order, inside one transaction.
Each mutation gets its own SAVEPOINT, so a mutation that fails rolls back
only its own partial writes and the rest of the batch still commits.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import records
from .payloads import MutationKind, PushMutation, SyncResult, parse_payload, subject_ids_of
from .schema import Experiment, Observation, Sample, Subject, TreatmentGroup
from .validators import NotFoundError, ValidationError, require, validate_client_timestamp

logger = logging.getLogger(__name__)

PULL_WINDOW_DAYS = 30


# =============================================================================
# PUSH
# =============================================================================

def _apply_create_observation(session, payload, client_timestamp) -> bool:
    return records.create_observation(session, payload, client_timestamp).conflict


def _apply_create_observations_batch(session, payload, client_timestamp) -> bool:
    return records.create_observations_batch(session, payload, client_timestamp).conflict


def _apply_record_exit(session, payload, client_timestamp) -> bool:
    return records.record_exit(session, payload, client_timestamp).conflict


def _apply_create_samples_batch(session, payload, client_timestamp) -> bool:
    records.create_samples(session, payload)
    return False


# One handler per mutation kind; each returns whether incoming data was discarded
HANDLERS: Dict[MutationKind, Callable[[Session, object, int], bool]] = {
    MutationKind.CREATE_OBSERVATION: _apply_create_observation,
    MutationKind.CREATE_OBSERVATIONS_BATCH: _apply_create_observations_batch,
    MutationKind.RECORD_EXIT: _apply_record_exit,
    MutationKind.CREATE_SAMPLES_BATCH: _apply_create_samples_batch,
}


def apply_mutation(session: Session, mutation: PushMutation, db=None) -> SyncResult:
    """
    Apply one pushed mutation inside a savepoint and report its outcome.

    Any error fails this mutation only: its savepoint (audit entry included)
    is rolled back and the rest of the push carries on.
    """
    try:
        kind = MutationKind(mutation.kind)
    except ValueError:
        logger.warning("Rejected mutation %s: unknown type %r", mutation.id, mutation.kind)
        return SyncResult(id=mutation.id, success=False,
                          error=f"Unknown mutation type: {mutation.kind}", error_type="unknown_type")

    try:
        with session.begin_nested():
            require(validate_client_timestamp(mutation.client_timestamp),
                    'client_timestamp', mutation.client_timestamp)
            payload = parse_payload(kind, mutation.payload)
            conflict = HANDLERS[kind](session, payload, mutation.client_timestamp)
            if db is not None:
                db.log_change(session, 'SYNC_PUSH', 'sync_queue', mutation.id, new_values={
                    'kind': kind.value,
                    'client_timestamp': mutation.client_timestamp,
                    'subjects': subject_ids_of(kind, payload),
                    'conflict': conflict,
                })
    except ValidationError as e:
        logger.warning("Mutation %s (%s) failed: %s", mutation.id, kind.value, e)
        return SyncResult(id=mutation.id, success=False, error=str(e), error_type="validation")
    except NotFoundError as e:
        logger.warning("Mutation %s (%s) failed: %s", mutation.id, kind.value, e)
        return SyncResult(id=mutation.id, success=False, error=str(e), error_type="not_found")
    except SQLAlchemyError as e:
        logger.error("Mutation %s (%s) failed in the database: %s", mutation.id, kind.value, e)
        return SyncResult(id=mutation.id, success=False, error=f"Database error: {e.__class__.__name__}",
                          error_type="database")
    except Exception as e:
        logger.exception("Mutation %s (%s) failed unexpectedly", mutation.id, kind.value)
        return SyncResult(id=mutation.id, success=False, error=f"Internal error: {e.__class__.__name__}",
                          error_type="internal")

    return SyncResult(id=mutation.id, success=True, conflict=conflict)


def push(db, mutations: List[PushMutation]) -> List[SyncResult]:
    """
    Replay a batch of client mutations against the store.

    Args:
        db: Database instance; the whole batch runs under its write lock
        mutations: Mutations in client enqueue order

    Returns:
        One SyncResult per mutation, in the same order
    """
    results = []
    with db.writer() as session:
        for mutation in mutations:
            results.append(apply_mutation(session, mutation, db=db))

    failed = sum(1 for r in results if not r.success)
    conflicts = sum(1 for r in results if r.conflict)
    logger.info("Sync push: %d mutations, %d failed, %d conflicts",
                len(results), failed, conflicts)
    return results


# =============================================================================
# PULL
# =============================================================================

def utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def pull(session: Session, experiment_id: int, today: Optional[date] = None,
         window_days: int = PULL_WINDOW_DAYS) -> dict:
    """
    Snapshot of one experiment for offline use.

    Carries the server's current derived fields; this is how clients learn
    about recalculations they did not trigger themselves.

    Args:
        session: Active database session
        experiment_id: Experiment to snapshot
        today: Reference date for the observation window (defaults to today)
        window_days: Only observations this recent are included

    Raises:
        NotFoundError: if the experiment does not exist
    """
    experiment = session.get(Experiment, experiment_id)
    if experiment is None:
        raise NotFoundError('Experiment', experiment_id)

    cutoff = (today or date.today()) - timedelta(days=window_days)

    groups = (session.query(TreatmentGroup)
              .filter(TreatmentGroup.experiment_id == experiment_id)
              .order_by(TreatmentGroup.sort_order)
              .all())
    subjects = (session.query(Subject)
                .filter(Subject.experiment_id == experiment_id)
                .order_by(Subject.cage_number, Subject.ear_tag)
                .all())
    observations = (session.query(Observation)
                    .join(Subject, Subject.id == Observation.subject_id)
                    .filter(Subject.experiment_id == experiment_id,
                            Observation.observation_date >= cutoff)
                    .order_by(Observation.observation_date.desc())
                    .all())
    samples = (session.query(Sample)
               .join(Subject, Subject.id == Sample.subject_id)
               .filter(Subject.experiment_id == experiment_id)
               .order_by(Sample.collection_date.desc())
               .all())

    return {
        'experiment': experiment.to_dict(),
        'treatmentGroups': [g.to_dict() for g in groups],
        'subjects': [s.to_dict() for s in subjects],
        'observations': [o.to_dict() for o in observations],
        'samples': [s.to_dict() for s in samples],
        'syncedAt': utc_iso_now(),
    }
