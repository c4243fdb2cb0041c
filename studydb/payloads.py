"""
Pydantic models for queued mutations and the sync wire format.

Both the field client (before enqueueing) and the server (before applying a
pushed mutation) parse payloads through ``parse_payload``, so a malformed
write is rejected with the same ValidationError on either side.
"""

from datetime import date
from enum import Enum
from typing import List, Optional

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .validators import ValidationError, validate_exit_type


class MutationKind(str, Enum):
    CREATE_OBSERVATION = 'createObservation'
    CREATE_OBSERVATIONS_BATCH = 'createObservationsBatch'
    RECORD_EXIT = 'recordExit'
    CREATE_SAMPLES_BATCH = 'createSamplesBatch'


class _Payload(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)


class ClinicalScores(_Payload):
    """Raw clinical inputs shared by every observation-shaped payload."""
    weight: Optional[float] = Field(default=None, gt=0, lt=1000)
    stool_score: Optional[int] = Field(default=None, ge=0, le=4)
    behavior_score: Optional[int] = Field(default=None, ge=0, le=4)
    notes: Optional[str] = None

    @field_validator('notes')
    @classmethod
    def blank_notes_are_none(cls, value):
        if value is not None and not value.strip():
            return None
        return value


class CreateObservationPayload(ClinicalScores):
    subject_id: int
    observation_date: date
    observer: Optional[str] = None


class BatchObservationItem(ClinicalScores):
    subject_id: int


class CreateObservationsBatchPayload(_Payload):
    observation_date: date
    observations: List[BatchObservationItem] = Field(min_length=1)
    observer: Optional[str] = None


class FinalObservation(ClinicalScores):
    pass


class RecordExitPayload(_Payload):
    subject_id: int
    exit_date: date
    exit_type: str
    exit_reason: Optional[str] = None
    final_observation: Optional[FinalObservation] = None

    @field_validator('exit_type')
    @classmethod
    def known_exit_type(cls, value):
        valid, msg = validate_exit_type(value)
        if not valid:
            raise ValueError(msg)
        return value


class SampleItem(_Payload):
    subject_id: int
    sample_type: str = Field(min_length=1)
    storage_box: Optional[str] = None
    box_position: Optional[str] = None
    volume_ul: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None


class CreateSamplesBatchPayload(_Payload):
    collection_date: date
    samples: List[SampleItem] = Field(min_length=1)


class ExperimentUpdate(_Payload):
    """Editable experiment settings; unset fields are left alone."""
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[str] = Field(default=None, pattern=r'^(active|completed|archived)$')
    baseline_day_offset: Optional[int] = None
    endpoint_weight_loss_pct: Optional[float] = Field(default=None, gt=0, le=100)
    endpoint_css_threshold: Optional[int] = Field(default=None, ge=0, le=12)
    endpoint_css_operator: Optional[str] = Field(default=None, pattern=r'^(>=|>|=|<|<=)$')


PAYLOAD_MODELS = {
    MutationKind.CREATE_OBSERVATION: CreateObservationPayload,
    MutationKind.CREATE_OBSERVATIONS_BATCH: CreateObservationsBatchPayload,
    MutationKind.RECORD_EXIT: RecordExitPayload,
    MutationKind.CREATE_SAMPLES_BATCH: CreateSamplesBatchPayload,
}


def parse_payload(kind: MutationKind, payload: dict) -> BaseModel:
    """
    Validate a raw payload dict for a mutation kind.

    Raises:
        ValidationError: with the first offending field and pydantic's message
    """
    model = PAYLOAD_MODELS[MutationKind(kind)]
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = '.'.join(str(part) for part in first['loc']) or kind
        raise ValidationError(field, first.get('input'), first['msg'])


def subject_ids_of(kind: MutationKind, payload: BaseModel) -> List[int]:
    """Subjects touched by a parsed payload."""
    if kind in (MutationKind.CREATE_OBSERVATION, MutationKind.RECORD_EXIT):
        return [payload.subject_id]
    if kind == MutationKind.CREATE_OBSERVATIONS_BATCH:
        return [item.subject_id for item in payload.observations]
    return [item.subject_id for item in payload.samples]


# =============================================================================
# WIRE FORMAT
# =============================================================================

class PushMutation(BaseModel):
    """One queued mutation as sent to POST /api/sync/push."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(description="Client-generated unique ID for this mutation")
    # Left as a plain string so an unknown kind is reported per mutation
    kind: str = Field(validation_alias=AliasChoices('kind', 'type'))
    payload: dict = Field(default_factory=dict)
    client_timestamp: int = Field(
        validation_alias=AliasChoices('client_timestamp', 'clientTimestamp', 'timestamp'),
        description="Milliseconds since the epoch when the mutation was created on the client",
    )


class PushRequest(BaseModel):
    mutations: List[PushMutation]


class SyncResult(BaseModel):
    id: str
    success: bool
    error: Optional[str] = None
    # validation | not_found | unknown_type | database | internal
    error_type: Optional[str] = None
    conflict: bool = False
