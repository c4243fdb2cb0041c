"""Experiment settings endpoints."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...cascade import update_experiment
from ...database import Database
from ...payloads import ExperimentUpdate
from ...schema import Experiment, Subject
from ...validators import NotFoundError
from ..dependencies import get_database, get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/experiments", tags=["experiments"])


@router.get("/{experiment_id}")
def get_experiment(experiment_id: int, session: Session = Depends(get_db_session)) -> dict:
    """Experiment with its treatment groups and subject counts."""
    experiment = session.get(Experiment, experiment_id)
    if experiment is None:
        raise NotFoundError('Experiment', experiment_id)

    subjects = session.query(Subject).filter(Subject.experiment_id == experiment_id)
    data = experiment.to_dict()
    data['treatment_groups'] = [g.to_dict() for g in experiment.treatment_groups]
    data['total_subjects'] = subjects.count()
    data['alive_subjects'] = subjects.filter(Subject.status == 'alive').count()
    return {"success": True, "data": data}


@router.put("/{experiment_id}")
def put_experiment(experiment_id: int, update: ExperimentUpdate,
                   db: Database = Depends(get_database)) -> dict:
    """
    Update experiment settings.

    Moving the baseline day (or the start date) recalculates every baseline
    weight and derived observation field in the experiment, in the same
    transaction as the update.
    """
    with db.writer() as session:
        experiment, summary = update_experiment(session, experiment_id, update, db=db)
        session.flush()
        data = experiment.to_dict()

    if summary is not None:
        logger.info("Experiment %s updated with recalculation: %s", experiment_id, summary)
    return {"success": True, "data": data, "recalculated": summary}
