"""Offline sync endpoints: replay queued mutations, download snapshots."""

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ... import sync as sync_core
from ...database import Database
from ...payloads import PushRequest, SyncResult
from ..config import PULL_WINDOW_DAYS
from ..dependencies import get_database, get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/push")
def push_mutations(request: PushRequest, db: Database = Depends(get_database)) -> dict:
    """Apply queued client mutations; one result per mutation, in order."""
    results: List[SyncResult] = sync_core.push(db, request.mutations)
    return {
        "success": True,
        "data": [r.model_dump(exclude_none=True) for r in results],
    }


@router.get("/experiment/{experiment_id}")
def download_experiment(experiment_id: int, session: Session = Depends(get_db_session)) -> dict:
    """Experiment snapshot for offline use."""
    snapshot = sync_core.pull(session, experiment_id, window_days=PULL_WINDOW_DAYS)
    logger.info("Snapshot of experiment %s: %d subjects, %d observations",
                experiment_id, len(snapshot['subjects']), len(snapshot['observations']))
    return {"success": True, "data": snapshot}
