"""
SQLAlchemy schema models with validation for StudyDB.

Validation happens at both the Python level (via validators) and the
database level (via CHECK and UNIQUE constraints). Derived observation fields
are stored, not computed on read, so the sync snapshot can ship them to
offline clients as-is.
"""

from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, Text, ForeignKey,
    CheckConstraint, UniqueConstraint, Index, event
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, validates

from .calculations import DEFAULT_ENDPOINT_WEIGHT_LOSS_PCT
from .validators import (
    ValidationError, SUBJECT_STATUSES, TERMINAL_STATUSES, EXIT_TYPES,
    validate_score, validate_weight, validate_css_operator,
)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite has no timezone support)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SerializeMixin:
    """Plain-dict view of a row for JSON snapshots."""

    def to_dict(self) -> dict:
        data = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, (date, datetime)):
                value = value.isoformat()
            data[column.key] = value
        return data


# =============================================================================
# CORE MODELS
# =============================================================================

class Experiment(SerializeMixin, Base):
    """
    A study: a set of subjects followed from a common start date.

    ``baseline_day_offset`` is the study day on which baseline weights are
    taken and CSS scoring begins. Changing it invalidates every derived
    observation field in the experiment (see cascade.py).
    """
    __tablename__ = 'experiments'
    __table_args__ = (
        CheckConstraint("status IN ('active', 'completed', 'archived')", name='valid_experiment_status'),
        CheckConstraint("endpoint_css_operator IS NULL OR endpoint_css_operator IN ('>=', '>', '=', '<', '<=')",
                        name='valid_css_operator'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    status = Column(String(20), nullable=False, default='active')
    baseline_day_offset = Column(Integer, nullable=False, default=0)
    endpoint_weight_loss_pct = Column(Float, nullable=False, default=DEFAULT_ENDPOINT_WEIGHT_LOSS_PCT)
    endpoint_css_threshold = Column(Integer)
    endpoint_css_operator = Column(String(2))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    treatment_groups = relationship("TreatmentGroup", back_populates="experiment",
                                    order_by="TreatmentGroup.sort_order")
    subjects = relationship("Subject", back_populates="experiment")

    @validates('endpoint_css_operator')
    def validate_operator(self, key, value):
        valid, msg = validate_css_operator(value)
        if not valid:
            raise ValidationError(key, value, msg)
        return value


class TreatmentGroup(SerializeMixin, Base):
    """Treatment arm within an experiment."""
    __tablename__ = 'treatment_groups'
    __table_args__ = (
        UniqueConstraint('experiment_id', 'name', name='unique_group_name_per_experiment'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(Integer, ForeignKey('experiments.id', ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    color = Column(String(20))
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    experiment = relationship("Experiment", back_populates="treatment_groups")
    subjects = relationship("Subject", back_populates="treatment_group")


class Subject(SerializeMixin, Base):
    """
    Individual animal.

    Status is one-way: once a subject leaves 'alive' its exit fields are
    fixed. ``baseline_weight`` is latched by the first weighed observation on
    the experiment's baseline day.
    """
    __tablename__ = 'subjects'
    __table_args__ = (
        UniqueConstraint('experiment_id', 'ear_tag', name='unique_ear_tag_per_experiment'),
        CheckConstraint("sex IN ('M', 'F')", name='valid_sex'),
        CheckConstraint("status IN ('alive', 'dead', 'sacrificed', 'excluded')", name='valid_subject_status'),
        Index('idx_subjects_cage', 'experiment_id', 'cage_number'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(Integer, ForeignKey('experiments.id', ondelete='CASCADE'), nullable=False, index=True)
    treatment_group_id = Column(Integer, ForeignKey('treatment_groups.id'), nullable=False, index=True)
    ear_tag = Column(String(20), nullable=False)
    cage_number = Column(String(20), nullable=False)
    sex = Column(String(1), nullable=False)
    diet = Column(String(100))
    date_of_birth = Column(Date)
    baseline_weight = Column(Float)
    status = Column(String(20), nullable=False, default='alive')
    exit_date = Column(Date)
    exit_type = Column(String(30))
    exit_reason = Column(Text)
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    experiment = relationship("Experiment", back_populates="subjects")
    treatment_group = relationship("TreatmentGroup", back_populates="subjects")
    observations = relationship("Observation", back_populates="subject",
                                order_by="Observation.observation_date")
    samples = relationship("Sample", back_populates="subject")

    @validates('sex')
    def validate_sex(self, key, value):
        if value is None or value.upper() not in ('M', 'F'):
            raise ValidationError(key, value, "Sex must be 'M' or 'F'")
        return value.upper()

    @validates('status')
    def validate_status(self, key, value):
        if value not in SUBJECT_STATUSES:
            raise ValidationError(key, value, f"Status must be one of {', '.join(SUBJECT_STATUSES)}")
        current = self.status
        if current in TERMINAL_STATUSES and value != current:
            raise ValidationError(key, value, f"Subject already exited as '{current}'")
        return value

    @validates('exit_type')
    def validate_exit_type(self, key, value):
        if value is not None and value not in EXIT_TYPES:
            raise ValidationError(key, value, f"Exit type must be one of {', '.join(EXIT_TYPES)}")
        return value

    @property
    def is_alive(self) -> bool:
        return self.status == 'alive'


class Observation(SerializeMixin, Base):
    """
    Daily clinical observation.

    Keyed naturally by (subject_id, observation_date). Raw inputs are weight,
    stool_score, behavior_score and notes; day_of_study, weight_pct_change,
    weight_score and total_css are derived (see calculations.py).
    """
    __tablename__ = 'observations'
    __table_args__ = (
        UniqueConstraint('subject_id', 'observation_date', name='unique_observation_per_day'),
        CheckConstraint('stool_score IS NULL OR stool_score BETWEEN 0 AND 4', name='valid_stool_score'),
        CheckConstraint('behavior_score IS NULL OR behavior_score BETWEEN 0 AND 4', name='valid_behavior_score'),
        Index('idx_observations_subject_day', 'subject_id', 'day_of_study'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(Integer, ForeignKey('subjects.id', ondelete='CASCADE'), nullable=False, index=True)
    observation_date = Column(Date, nullable=False, index=True)
    day_of_study = Column(Integer, nullable=False)
    weight = Column(Float)
    weight_pct_change = Column(Float)
    weight_score = Column(Integer)
    stool_score = Column(Integer)
    behavior_score = Column(Integer)
    total_css = Column(Integer)
    notes = Column(Text)
    observer = Column(String(50))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    subject = relationship("Subject", back_populates="observations")

    @validates('stool_score', 'behavior_score')
    def validate_scores(self, key, value):
        valid, msg = validate_score(value, key)
        if not valid:
            raise ValidationError(key, value, msg)
        return value

    @validates('weight')
    def validate_weight(self, key, value):
        valid, msg = validate_weight(value)
        if not valid:
            raise ValidationError(key, value, msg)
        return value

    def apply_derived(self, derived):
        """Overwrite derived fields from a DerivedFields result."""
        self.day_of_study = derived.day_of_study
        self.weight_pct_change = derived.weight_pct_change
        self.weight_score = derived.weight_score
        self.total_css = derived.total_css


class Sample(SerializeMixin, Base):
    """Biospecimen collected from a subject."""
    __tablename__ = 'samples'

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(Integer, ForeignKey('subjects.id', ondelete='CASCADE'), nullable=False, index=True)
    sample_type = Column(String(50), nullable=False)
    collection_date = Column(Date, nullable=False, index=True)
    day_of_study = Column(Integer, nullable=False)
    storage_box = Column(String(100))  # e.g. "Freezer A / Box 3"
    box_position = Column(String(10))  # e.g. "C4"
    volume_ul = Column(Float)
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    subject = relationship("Subject", back_populates="samples")

    @validates('sample_type')
    def validate_sample_type(self, key, value):
        if not value or not value.strip():
            raise ValidationError(key, value, "Sample type is required")
        return value.strip()


class AuditLog(Base):
    """Audit trail for sync pushes and recalculations."""
    __tablename__ = 'audit_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=utcnow)
    user = Column(String(50))
    action = Column(String(30))  # SYNC_PUSH, RECALCULATE, ...
    table_name = Column(String(50))
    record_id = Column(String(50))
    old_values = Column(Text)  # JSON
    new_values = Column(Text)  # JSON


# =============================================================================
# DATABASE INITIALIZATION
# =============================================================================

@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    """Enable foreign keys for SQLite."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_subject_context(session, subject_id: int) -> Optional[tuple]:
    """Return (subject, experiment) for a subject id, or None."""
    row = (session.query(Subject, Experiment)
           .join(Experiment, Experiment.id == Subject.experiment_id)
           .filter(Subject.id == subject_id)
           .first())
    return tuple(row) if row else None
