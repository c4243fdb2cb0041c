"""
Local cache store for the field client.

One SQLite file per device holds the last snapshot pulled for each
experiment, the queue of writes not yet confirmed by the server, and a small
sync-metadata table. Cached rows keep the server's JSON shape in a ``data``
column next to a few indexed lookup columns.

Writes made while offline are applied here optimistically under temporary
negative ids, with derived fields computed by the same calculator the server
uses, so the device shows the same numbers before and after sync.
"""

import asyncio
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, List, Optional

from sqlalchemy import (
    BigInteger, Column, Integer, JSON, String, UniqueConstraint, create_engine, func,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ..calculations import calculate_day_of_study, compute_derived_fields, should_latch_baseline
from ..payloads import MutationKind, parse_payload
from ..validators import exit_status_for
from .config import CACHE_PATH

logger = logging.getLogger(__name__)

CacheBase = declarative_base()


# =============================================================================
# CACHE TABLES
# =============================================================================

class CachedExperiment(CacheBase):
    __tablename__ = 'cached_experiments'

    id = Column(Integer, primary_key=True)
    data = Column(JSON, nullable=False)


class CachedTreatmentGroup(CacheBase):
    __tablename__ = 'cached_treatment_groups'

    id = Column(Integer, primary_key=True)
    experiment_id = Column(Integer, nullable=False, index=True)
    data = Column(JSON, nullable=False)


class CachedSubject(CacheBase):
    __tablename__ = 'cached_subjects'

    id = Column(Integer, primary_key=True)
    experiment_id = Column(Integer, nullable=False, index=True)
    cage_number = Column(String(20), index=True)
    data = Column(JSON, nullable=False)


class CachedObservation(CacheBase):
    __tablename__ = 'cached_observations'
    __table_args__ = (
        UniqueConstraint('subject_id', 'observation_date', name='unique_cached_observation_per_day'),
    )

    id = Column(Integer, primary_key=True)  # negative until the server assigns one
    experiment_id = Column(Integer, index=True)
    subject_id = Column(Integer, nullable=False, index=True)
    observation_date = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD
    data = Column(JSON, nullable=False)


class CachedSample(CacheBase):
    __tablename__ = 'cached_samples'

    id = Column(Integer, primary_key=True)
    experiment_id = Column(Integer, index=True)
    subject_id = Column(Integer, nullable=False, index=True)
    data = Column(JSON, nullable=False)


class QueuedMutation(CacheBase):
    """A write made offline, waiting for the server to confirm it."""
    __tablename__ = 'sync_queue'

    id = Column(String(36), primary_key=True)
    kind = Column(String(30), nullable=False)
    payload = Column(JSON, nullable=False)
    timestamp = Column(BigInteger, nullable=False, index=True)  # ms since epoch
    seq = Column(Integer, nullable=False)  # enqueue order within one timestamp
    experiment_id = Column(Integer, index=True)


class SyncMeta(CacheBase):
    __tablename__ = 'sync_meta'

    experiment_id = Column(Integer, primary_key=True)
    last_synced_at = Column(String(40))
    subject_count = Column(Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            'experiment_id': self.experiment_id,
            'last_synced_at': self.last_synced_at,
            'subject_count': self.subject_count,
        }


def next_temp_id(session: Session, model) -> int:
    """Next temporary id for an optimistic row: below every id in the table and below zero."""
    lowest = session.query(func.min(model.id)).scalar()
    return min(lowest or 0, 0) - 1


# =============================================================================
# CACHE STORE
# =============================================================================

class LocalCache:
    """Per-device offline store. Coroutine methods run on a worker thread."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else CACHE_PATH
        self.path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.path}",
            echo=False,
            connect_args={"check_same_thread": False}  # used from asyncio.to_thread workers
        )
        CacheBase.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._write_lock = threading.RLock()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Session with automatic commit/rollback."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def writer(self) -> Generator[Session, None, None]:
        """Write transaction, serialized across worker threads."""
        with self._write_lock:
            with self.session() as session:
                yield session

    def close(self):
        self.engine.dispose()

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def _store_snapshot(self, snapshot: dict) -> dict:
        experiment = snapshot['experiment']
        experiment_id = experiment['id']

        with self.writer() as session:
            for model in (CachedTreatmentGroup, CachedSubject, CachedObservation, CachedSample):
                session.query(model).filter(model.experiment_id == experiment_id).delete()
            session.merge(CachedExperiment(id=experiment_id, data=experiment))

            for group in snapshot.get('treatmentGroups', []):
                session.add(CachedTreatmentGroup(id=group['id'], experiment_id=experiment_id, data=group))
            for subject in snapshot.get('subjects', []):
                session.add(CachedSubject(id=subject['id'], experiment_id=experiment_id,
                                          cage_number=subject.get('cage_number'), data=subject))
            for obs in snapshot.get('observations', []):
                session.add(CachedObservation(id=obs['id'], experiment_id=experiment_id,
                                              subject_id=obs['subject_id'],
                                              observation_date=obs['observation_date'][:10],
                                              data=obs))
            for sample in snapshot.get('samples', []):
                session.add(CachedSample(id=sample['id'], experiment_id=experiment_id,
                                         subject_id=sample['subject_id'], data=sample))

            meta = SyncMeta(experiment_id=experiment_id,
                            last_synced_at=snapshot.get('syncedAt'),
                            subject_count=len(snapshot.get('subjects', [])))
            session.merge(meta)
            session.flush()

            # Keep writes the server has not confirmed yet visible on top of the snapshot
            pending = (session.query(QueuedMutation)
                       .filter(QueuedMutation.experiment_id == experiment_id)
                       .order_by(QueuedMutation.timestamp, QueuedMutation.seq)
                       .all())
            for item in pending:
                self.apply_optimistic(session, item.kind, item.payload)

        logger.info("Cached experiment %s: %d subjects, %d observations, %d pending re-applied",
                    experiment_id, meta.subject_count, len(snapshot.get('observations', [])),
                    len(pending))
        return meta.to_dict()

    async def store_snapshot(self, snapshot: dict) -> dict:
        """Replace everything cached for the snapshot's experiment."""
        return await asyncio.to_thread(self._store_snapshot, snapshot)

    def _put_observation(self, obs: dict) -> None:
        with self.writer() as session:
            subject = session.get(CachedSubject, obs['subject_id'])
            date_key = obs['observation_date'][:10]
            (session.query(CachedObservation)
             .filter(CachedObservation.subject_id == obs['subject_id'],
                     CachedObservation.observation_date == date_key)
             .delete())
            session.flush()
            session.add(CachedObservation(
                id=obs['id'], subject_id=obs['subject_id'], observation_date=date_key,
                experiment_id=subject.experiment_id if subject else None, data=obs,
            ))

    async def put_observation(self, obs: dict) -> None:
        """Store a server-confirmed observation row, replacing the cached one for that day."""
        await asyncio.to_thread(self._put_observation, obs)

    # -------------------------------------------------------------------------
    # Optimistic writes
    # -------------------------------------------------------------------------

    def apply_optimistic(self, session: Session, kind: str, payload: dict) -> bool:
        """
        Apply a queued write to the cache inside the caller's transaction.

        Subjects that are not cached are skipped; the write still syncs.

        Returns:
            True if anything in the cache changed
        """
        kind = MutationKind(kind)
        parsed = parse_payload(kind, payload)

        if kind == MutationKind.CREATE_OBSERVATION:
            return self._upsert_local_observation(session, parsed.subject_id, parsed.observation_date,
                                                  parsed, parsed.observer)
        if kind == MutationKind.CREATE_OBSERVATIONS_BATCH:
            changed = False
            for item in parsed.observations:
                changed |= self._upsert_local_observation(session, item.subject_id,
                                                          parsed.observation_date, item, parsed.observer)
            return changed
        if kind == MutationKind.RECORD_EXIT:
            return self._apply_local_exit(session, parsed)
        return self._insert_local_samples(session, parsed)

    def _context(self, session: Session, subject_id: int):
        subject = session.get(CachedSubject, subject_id)
        if subject is None:
            logger.warning("Subject %s is not cached; skipping local update", subject_id)
            return None, None
        experiment = session.get(CachedExperiment, subject.experiment_id)
        if experiment is None:
            logger.warning("Experiment %s is not cached; skipping local update", subject.experiment_id)
            return None, None
        return subject, experiment

    def _derive(self, obs_data: dict, subject: CachedSubject, experiment: CachedExperiment) -> dict:
        derived = compute_derived_fields(
            weight=obs_data.get('weight'),
            baseline_weight=subject.data.get('baseline_weight'),
            stool_score=obs_data.get('stool_score'),
            behavior_score=obs_data.get('behavior_score'),
            observation_date=obs_data['observation_date'],
            experiment_start_date=experiment.data['start_date'],
            baseline_day_offset=experiment.data.get('baseline_day_offset') or 0,
        )
        return {**obs_data, **derived.to_dict()}

    def _upsert_local_observation(self, session: Session, subject_id: int, observation_date,
                                  scores, observer: Optional[str]) -> bool:
        subject, experiment = self._context(session, subject_id)
        if subject is None:
            return False

        date_key = observation_date.isoformat()
        row = (session.query(CachedObservation)
               .filter(CachedObservation.subject_id == subject_id,
                       CachedObservation.observation_date == date_key)
               .first())
        is_new = row is None
        if is_new:
            row = CachedObservation(id=next_temp_id(session, CachedObservation),
                                    subject_id=subject_id, observation_date=date_key,
                                    experiment_id=subject.experiment_id)
            data = {'id': row.id, 'subject_id': subject_id, 'observation_date': date_key,
                    'created_at': None}
        else:
            data = dict(row.data)

        # Last write replaces every raw field
        data.update(weight=scores.weight, stool_score=scores.stool_score,
                    behavior_score=scores.behavior_score, notes=scores.notes,
                    observer=observer, pending=True)

        derived = self._derive(data, subject, experiment)
        latched = should_latch_baseline(subject.data.get('baseline_weight'), scores.weight,
                                        derived['day_of_study'],
                                        experiment.data.get('baseline_day_offset') or 0)
        if latched:
            subject.data = {**subject.data, 'baseline_weight': scores.weight}
            derived = self._derive(data, subject, experiment)
        row.data = derived
        if is_new:
            session.add(row)

        if latched:
            session.flush()
            for other in (session.query(CachedObservation)
                          .filter(CachedObservation.subject_id == subject_id,
                                  CachedObservation.id != row.id)
                          .all()):
                other.data = self._derive(dict(other.data), subject, experiment)
        return True

    def _apply_local_exit(self, session: Session, parsed) -> bool:
        subject, experiment = self._context(session, parsed.subject_id)
        if subject is None:
            return False
        if subject.data.get('status', 'alive') == 'alive':
            subject.data = {
                **subject.data,
                'status': exit_status_for(parsed.exit_type),
                'exit_date': parsed.exit_date.isoformat(),
                'exit_type': parsed.exit_type,
                'exit_reason': parsed.exit_reason,
            }
        if parsed.final_observation is not None:
            self._upsert_local_observation(session, parsed.subject_id, parsed.exit_date,
                                           parsed.final_observation, None)
        return True

    def _insert_local_samples(self, session: Session, parsed) -> bool:
        changed = False
        for item in parsed.samples:
            subject, experiment = self._context(session, item.subject_id)
            if subject is None:
                continue
            sample_id = next_temp_id(session, CachedSample)
            session.add(CachedSample(
                id=sample_id, experiment_id=subject.experiment_id, subject_id=item.subject_id,
                data={
                    'id': sample_id,
                    'subject_id': item.subject_id,
                    'sample_type': item.sample_type,
                    'collection_date': parsed.collection_date.isoformat(),
                    'day_of_study': calculate_day_of_study(parsed.collection_date,
                                                           experiment.data['start_date']),
                    'storage_box': item.storage_box,
                    'box_position': item.box_position,
                    'volume_ul': item.volume_ul,
                    'notes': item.notes,
                    'pending': True,
                },
            ))
            session.flush()
            changed = True
        return changed

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _get_experiment(self, experiment_id: int) -> Optional[dict]:
        with self.session() as session:
            row = session.get(CachedExperiment, experiment_id)
            return dict(row.data) if row else None

    async def get_experiment(self, experiment_id: int) -> Optional[dict]:
        return await asyncio.to_thread(self._get_experiment, experiment_id)

    def _get_treatment_groups(self, experiment_id: int) -> List[dict]:
        with self.session() as session:
            rows = (session.query(CachedTreatmentGroup)
                    .filter(CachedTreatmentGroup.experiment_id == experiment_id)
                    .all())
            return sorted((dict(r.data) for r in rows), key=lambda g: g.get('sort_order') or 0)

    async def get_treatment_groups(self, experiment_id: int) -> List[dict]:
        return await asyncio.to_thread(self._get_treatment_groups, experiment_id)

    def _get_subjects(self, experiment_id: int, cage_number: Optional[str] = None) -> List[dict]:
        with self.session() as session:
            query = session.query(CachedSubject).filter(CachedSubject.experiment_id == experiment_id)
            if cage_number is not None:
                query = query.filter(CachedSubject.cage_number == cage_number)
            subjects = [dict(r.data) for r in query.all()]
        return sorted(subjects, key=lambda s: (str(s.get('cage_number')), str(s.get('ear_tag'))))

    async def get_subjects(self, experiment_id: int, cage_number: Optional[str] = None) -> List[dict]:
        return await asyncio.to_thread(self._get_subjects, experiment_id, cage_number)

    def _get_subject(self, subject_id: int) -> Optional[dict]:
        with self.session() as session:
            row = session.get(CachedSubject, subject_id)
            return dict(row.data) if row else None

    async def get_subject(self, subject_id: int) -> Optional[dict]:
        return await asyncio.to_thread(self._get_subject, subject_id)

    async def experiment_id_for_subject(self, subject_id: int) -> Optional[int]:
        subject = await self.get_subject(subject_id)
        return subject['experiment_id'] if subject else None

    def _get_observations(self, subject_id: int) -> List[dict]:
        with self.session() as session:
            rows = (session.query(CachedObservation)
                    .filter(CachedObservation.subject_id == subject_id)
                    .order_by(CachedObservation.observation_date)
                    .all())
            return [dict(r.data) for r in rows]

    async def get_observations(self, subject_id: int) -> List[dict]:
        """All cached observations for a subject, oldest first."""
        return await asyncio.to_thread(self._get_observations, subject_id)

    def _get_observations_on(self, experiment_id: int, observation_date: str) -> List[dict]:
        with self.session() as session:
            rows = (session.query(CachedObservation)
                    .filter(CachedObservation.experiment_id == experiment_id,
                            CachedObservation.observation_date == str(observation_date)[:10])
                    .all())
            return [dict(r.data) for r in rows]

    async def get_observations_on(self, experiment_id: int, observation_date) -> List[dict]:
        """Cached observations in an experiment for one date (the day's checklist)."""
        return await asyncio.to_thread(self._get_observations_on, experiment_id, observation_date)

    def _get_samples(self, experiment_id: int) -> List[dict]:
        with self.session() as session:
            rows = session.query(CachedSample).filter(CachedSample.experiment_id == experiment_id).all()
            return [dict(r.data) for r in rows]

    async def get_samples(self, experiment_id: int) -> List[dict]:
        return await asyncio.to_thread(self._get_samples, experiment_id)

    def _get_sync_meta(self, experiment_id: int) -> Optional[dict]:
        with self.session() as session:
            meta = session.get(SyncMeta, experiment_id)
            return meta.to_dict() if meta else None

    async def get_sync_meta(self, experiment_id: int) -> Optional[dict]:
        return await asyncio.to_thread(self._get_sync_meta, experiment_id)
