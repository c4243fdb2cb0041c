"""Tests for the baseline recompute cascade."""

from datetime import timedelta

import pytest

from studydb import sync
from studydb.cascade import recalculate_experiment, update_experiment
from studydb.payloads import ExperimentUpdate, parse_payload
from studydb.records import create_samples
from studydb.schema import AuditLog, Experiment, Observation, Sample, Subject
from studydb.validators import NotFoundError

from conftest import make_mutation


@pytest.fixture
def observed(db, study):
    """One subject weighed on days 0-2, with scores."""
    subject_id = study.subject_ids[0]
    weights = {0: 20.0, 1: 19.0, 2: 18.0}
    sync.push(db, [
        make_mutation('createObservation', {
            'subject_id': subject_id,
            'observation_date': (study.start_date + timedelta(days=day)).isoformat(),
            'weight': weight, 'stool_score': 1, 'behavior_score': 1,
        })
        for day, weight in weights.items()
    ])
    return subject_id


def _by_day(db, subject_id):
    with db.session() as session:
        rows = session.query(Observation).filter(Observation.subject_id == subject_id).all()
        return {o.day_of_study: (o.weight_pct_change, o.weight_score, o.total_css) for o in rows}


def _baseline(db, subject_id):
    with db.session() as session:
        return session.get(Subject, subject_id).baseline_weight


def test_moving_baseline_day_recomputes_everything(db, study, observed):
    assert _baseline(db, observed) == 20.0
    assert _by_day(db, observed)[2] == (-10.0, 3, 5)

    with db.writer() as session:
        _, summary = update_experiment(session, study.experiment_id,
                                       ExperimentUpdate(baseline_day_offset=1), db=db)

    assert summary['subjects'] == 4
    assert summary['observations'] == 3
    assert _baseline(db, observed) == 19.0

    by_day = _by_day(db, observed)
    assert by_day[0] == (None, None, None)
    assert by_day[1] == (0.0, 0, 2)
    assert by_day[2] == (-5.26, 2, 4)


def test_cascade_is_idempotent(db, study, observed):
    with db.writer() as session:
        update_experiment(session, study.experiment_id, ExperimentUpdate(baseline_day_offset=1))
    first = _by_day(db, observed)

    with db.writer() as session:
        recalculate_experiment(session, session.get(Experiment, study.experiment_id))

    assert _by_day(db, observed) == first
    assert _baseline(db, observed) == 19.0


def test_baseline_day_without_observation_unsets_baseline(db, study, observed):
    with db.writer() as session:
        update_experiment(session, study.experiment_id, ExperimentUpdate(baseline_day_offset=5))

    assert _baseline(db, observed) is None
    assert set(_by_day(db, observed).values()) == {(None, None, None)}


def test_unchanged_offset_does_not_cascade(db, study, observed):
    with db.writer() as session:
        _, summary = update_experiment(session, study.experiment_id,
                                       ExperimentUpdate(baseline_day_offset=0, name="Renamed"))
    assert summary is None
    with db.session() as session:
        assert session.get(Experiment, study.experiment_id).name == "Renamed"


def test_start_date_change_shifts_days(db, study, observed):
    new_start = study.start_date - timedelta(days=1)
    with db.writer() as session:
        create_samples(session, parse_payload('createSamplesBatch', {
            'collection_date': study.start_date.isoformat(),
            'samples': [{'subject_id': observed, 'sample_type': 'blood'}],
        }))

    with db.writer() as session:
        update_experiment(session, study.experiment_id, ExperimentUpdate(start_date=new_start))

    by_day = _by_day(db, observed)
    assert sorted(by_day) == [1, 2, 3]
    # Day 0 is now the day before the first weighing, so nothing latches
    assert _baseline(db, observed) is None
    with db.session() as session:
        assert session.query(Sample).one().day_of_study == 1


def test_cascade_is_audited(db, study, observed):
    with db.writer() as session:
        update_experiment(session, study.experiment_id, ExperimentUpdate(baseline_day_offset=2), db=db)

    with db.session() as session:
        actions = {a.action for a in session.query(AuditLog).filter(AuditLog.table_name == 'experiments')}
    assert actions == {'RECALCULATE', 'UPDATE'}


def test_update_missing_experiment(db):
    with db.writer() as session:
        with pytest.raises(NotFoundError):
            update_experiment(session, 999, ExperimentUpdate(name="x"))


def test_audit_entries_carry_the_acting_user(db, study):
    db.set_user('lab-manager')
    with db.writer() as session:
        update_experiment(session, study.experiment_id, ExperimentUpdate(baseline_day_offset=1), db=db)

    with db.session() as session:
        users = {a.user for a in session.query(AuditLog).filter(AuditLog.table_name == 'experiments')}
    assert users == {'lab-manager'}
