"""Direct (online) observation entry endpoints."""

import logging
from typing import List

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from ... import records
from ...alerts import check_endpoint_alerts
from ...calculations import BEHAVIOR_SCORES, CSS_SEVERITY_LEVELS, STOOL_SCORES, css_severity
from ...database import Database
from ...payloads import MutationKind, parse_payload
from ...schema import Experiment, Observation, Subject
from ..dependencies import get_database

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/observations", tags=["observations"])


def _with_alerts(session: Session, obs: Observation) -> dict:
    """Observation dict plus its CSS severity and any humane-endpoint alerts it triggers."""
    experiment = (session.query(Experiment)
                  .join(Subject, Subject.experiment_id == Experiment.id)
                  .filter(Subject.id == obs.subject_id)
                  .one())
    alerts = check_endpoint_alerts(
        obs.weight_pct_change, obs.total_css,
        experiment.endpoint_weight_loss_pct,
        experiment.endpoint_css_threshold,
        experiment.endpoint_css_operator,
    )
    data = obs.to_dict()
    data['css_severity'] = css_severity(obs.total_css) if obs.total_css is not None else None
    data['alerts'] = [a.to_dict() for a in alerts]
    return data


@router.post("")
def create_observation(payload: dict = Body(...), db: Database = Depends(get_database)) -> dict:
    """Create or replace one subject's observation for a date."""
    parsed = parse_payload(MutationKind.CREATE_OBSERVATION, payload)
    with db.writer() as session:
        outcome = records.create_observation(session, parsed)
        session.flush()
        data = _with_alerts(session, outcome.observation)

    if data['alerts']:
        logger.warning("Subject %s on %s: %d endpoint alert(s)",
                       parsed.subject_id, parsed.observation_date, len(data['alerts']))
    return {"success": True, "data": data}


@router.post("/batch")
def create_observations_batch(payload: dict = Body(...),
                              db: Database = Depends(get_database)) -> dict:
    """Record one observation per subject for a shared date (cage-side batch entry)."""
    parsed = parse_payload(MutationKind.CREATE_OBSERVATIONS_BATCH, payload)
    with db.writer() as session:
        batch = records.create_observations_batch(session, parsed)
        session.flush()
        data: List[dict] = [_with_alerts(session, obs) for obs in batch.observations]

    return {"success": True, "data": data}


@router.get("/scoring")
def scoring_scales() -> dict:
    """Score labels and CSS severity bands for entry screens."""
    return {"success": True, "data": {
        "stool_scores": STOOL_SCORES,
        "behavior_scores": BEHAVIOR_SCORES,
        "css_severity_levels": [{"max_css": upper, "severity": label} for upper, label in CSS_SEVERITY_LEVELS],
    }}
