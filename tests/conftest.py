"""Shared fixtures: a throwaway server database, the app, and a field client wired to it."""

import time
from datetime import date, timedelta
from types import SimpleNamespace

import httpx
import pytest

from studydb.database import Database, set_db
from studydb.payloads import PushMutation
from studydb.schema import Experiment, Subject, TreatmentGroup


def now_ms() -> int:
    return int(time.time() * 1000)


def make_mutation(kind: str, payload: dict, timestamp: int = None, mutation_id: str = None) -> PushMutation:
    return PushMutation(
        id=mutation_id or f"m-{kind}-{time.perf_counter_ns()}",
        kind=kind,
        payload=payload,
        client_timestamp=timestamp if timestamp is not None else now_ms(),
    )


def seed_study(db: Database, start_date: date, baseline_day_offset: int = 0,
               css_threshold: int = 8) -> SimpleNamespace:
    """Experiment with two treatment groups and two subjects in each."""
    with db.session() as session:
        experiment = Experiment(
            name="DSS Colitis Pilot",
            start_date=start_date,
            baseline_day_offset=baseline_day_offset,
            endpoint_weight_loss_pct=15.0,
            endpoint_css_threshold=css_threshold,
            endpoint_css_operator='>=',
        )
        session.add(experiment)
        session.flush()

        control = TreatmentGroup(experiment_id=experiment.id, name="Control", color="#1f77b4", sort_order=0)
        treated = TreatmentGroup(experiment_id=experiment.id, name="DSS 3%", color="#d62728", sort_order=1)
        session.add_all([control, treated])
        session.flush()

        subjects = []
        for i, group in enumerate([control, control, treated, treated], start=1):
            subject = Subject(experiment_id=experiment.id, treatment_group_id=group.id,
                              ear_tag=f"ET{i:02d}", cage_number=f"C{(i + 1) // 2}", sex='F')
            session.add(subject)
            subjects.append(subject)
        session.flush()

        return SimpleNamespace(
            experiment_id=experiment.id,
            start_date=start_date,
            control_id=control.id,
            treated_id=treated.id,
            subject_ids=[s.id for s in subjects],
        )


@pytest.fixture
def db(tmp_path):
    """Fresh server database, installed as the global instance."""
    database = Database(tmp_path / "studydb.db", log_path=tmp_path / "logs")
    database.init_db()
    set_db(database)
    yield database
    set_db(None)
    database.engine.dispose()


@pytest.fixture
def study(db):
    """Experiment that started ten days ago, baseline on day 0."""
    return seed_study(db, date.today() - timedelta(days=10))


@pytest.fixture
def app(db):
    from studydb.web.main import create_app
    return create_app()


@pytest.fixture
async def http(app):
    """Raw httpx client talking to the app in-process."""
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app),
                                 base_url="http://testserver") as client:
        yield client


@pytest.fixture
async def api(app):
    from studydb.client import StudyDBClient
    client = StudyDBClient(base_url="http://testserver", transport=httpx.ASGITransport(app=app))
    yield client
    await client.aclose()


@pytest.fixture
def cache(tmp_path):
    from studydb.client import LocalCache
    local = LocalCache(tmp_path / "offline_cache.db")
    yield local
    local.close()


@pytest.fixture
def queue(cache):
    from studydb.client import MutationQueue
    return MutationQueue(cache)
