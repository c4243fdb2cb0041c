"""Tests for the field client's local cache and optimistic writes."""

import pytest

from studydb.payloads import MutationKind
from studydb.validators import ValidationError


def make_snapshot(observations=None, synced_at='2026-03-05T12:00:00Z'):
    return {
        'experiment': {'id': 1, 'name': 'Pilot', 'start_date': '2026-03-01',
                       'baseline_day_offset': 0, 'endpoint_weight_loss_pct': 15.0},
        'treatmentGroups': [
            {'id': 2, 'experiment_id': 1, 'name': 'Treated', 'sort_order': 1},
            {'id': 1, 'experiment_id': 1, 'name': 'Control', 'sort_order': 0},
        ],
        'subjects': [
            {'id': 11, 'experiment_id': 1, 'treatment_group_id': 2, 'ear_tag': 'B1',
             'cage_number': 'C2', 'baseline_weight': None, 'status': 'alive'},
            {'id': 10, 'experiment_id': 1, 'treatment_group_id': 1, 'ear_tag': 'A1',
             'cage_number': 'C1', 'baseline_weight': 20.0, 'status': 'alive'},
        ],
        'observations': observations if observations is not None else [
            {'id': 100, 'subject_id': 10, 'observation_date': '2026-03-01', 'day_of_study': 0,
             'weight': 20.0, 'weight_pct_change': 0.0, 'weight_score': 0, 'stool_score': 0,
             'behavior_score': 0, 'total_css': 0},
        ],
        'samples': [],
        'syncedAt': synced_at,
    }


@pytest.mark.asyncio
async def test_store_snapshot_and_read_back(cache):
    meta = await cache.store_snapshot(make_snapshot())

    assert meta == {'experiment_id': 1, 'last_synced_at': '2026-03-05T12:00:00Z', 'subject_count': 2}
    assert (await cache.get_experiment(1))['name'] == 'Pilot'
    assert [g['name'] for g in await cache.get_treatment_groups(1)] == ['Control', 'Treated']
    assert [s['ear_tag'] for s in await cache.get_subjects(1)] == ['A1', 'B1']
    assert [s['ear_tag'] for s in await cache.get_subjects(1, cage_number='C2')] == ['B1']
    assert len(await cache.get_observations(10)) == 1
    assert await cache.experiment_id_for_subject(11) == 1
    assert await cache.experiment_id_for_subject(99) is None


@pytest.mark.asyncio
async def test_snapshot_replaces_previous_contents(cache):
    await cache.store_snapshot(make_snapshot())
    await cache.store_snapshot(make_snapshot(observations=[], synced_at='2026-03-06T08:00:00Z'))

    assert await cache.get_observations(10) == []
    assert (await cache.get_sync_meta(1))['last_synced_at'] == '2026-03-06T08:00:00Z'


@pytest.mark.asyncio
async def test_optimistic_observation_gets_temp_id_and_derived_fields(cache, queue):
    await cache.store_snapshot(make_snapshot())
    await queue.enqueue(MutationKind.CREATE_OBSERVATION, {
        'subject_id': 10, 'observation_date': '2026-03-04',
        'weight': 19.0, 'stool_score': 1, 'behavior_score': 1,
    }, experiment_id=1)

    obs = (await cache.get_observations(10))[-1]
    assert obs['id'] < 0
    assert obs['pending'] is True
    assert obs['day_of_study'] == 3
    assert obs['weight_pct_change'] == -5.0
    assert obs['total_css'] == 4


@pytest.mark.asyncio
async def test_temp_ids_keep_decreasing(cache, queue):
    await cache.store_snapshot(make_snapshot())
    for day in ('2026-03-02', '2026-03-03'):
        await queue.enqueue(MutationKind.CREATE_OBSERVATION,
                            {'subject_id': 11, 'observation_date': day, 'weight': 21.0}, experiment_id=1)

    ids = [o['id'] for o in await cache.get_observations(11)]
    assert ids == [-1, -2]


@pytest.mark.asyncio
async def test_offline_resubmission_upserts_by_subject_and_date(cache, queue):
    await cache.store_snapshot(make_snapshot())
    payload = {'subject_id': 10, 'observation_date': '2026-03-04', 'weight': 19.0, 'notes': 'first'}
    await queue.enqueue(MutationKind.CREATE_OBSERVATION, payload, experiment_id=1)
    await queue.enqueue(MutationKind.CREATE_OBSERVATION, {**payload, 'weight': 18.5, 'notes': None},
                        experiment_id=1)

    day4 = [o for o in await cache.get_observations(10) if o['observation_date'] == '2026-03-04']
    assert len(day4) == 1
    assert day4[0]['weight'] == 18.5
    assert day4[0]['notes'] is None
    assert await queue.count() == 2


@pytest.mark.asyncio
async def test_local_baseline_latch(cache, queue):
    await cache.store_snapshot(make_snapshot())
    # Day 2 first: no baseline yet for subject 11
    await queue.enqueue(MutationKind.CREATE_OBSERVATION,
                        {'subject_id': 11, 'observation_date': '2026-03-03', 'weight': 18.0}, experiment_id=1)
    assert (await cache.get_observations(11))[0]['weight_pct_change'] is None

    await queue.enqueue(MutationKind.CREATE_OBSERVATION,
                        {'subject_id': 11, 'observation_date': '2026-03-01', 'weight': 20.0}, experiment_id=1)

    assert (await cache.get_subject(11))['baseline_weight'] == 20.0
    day2 = next(o for o in await cache.get_observations(11) if o['observation_date'] == '2026-03-03')
    assert day2['weight_pct_change'] == -10.0


@pytest.mark.asyncio
async def test_failed_optimistic_write_queues_nothing(cache, queue):
    await cache.store_snapshot(make_snapshot())
    with pytest.raises(ValidationError):
        await queue.enqueue(MutationKind.CREATE_OBSERVATION, {'subject_id': 10}, experiment_id=1)

    assert await queue.count() == 0
    assert len(await cache.get_observations(10)) == 1


@pytest.mark.asyncio
async def test_uncached_subject_is_still_queued(cache, queue):
    await queue.enqueue(MutationKind.CREATE_OBSERVATION,
                        {'subject_id': 77, 'observation_date': '2026-03-04', 'weight': 19.0})
    assert await queue.count() == 1
    assert await cache.get_observations(77) == []


@pytest.mark.asyncio
async def test_pending_writes_survive_snapshot_refresh(cache, queue):
    await cache.store_snapshot(make_snapshot())
    await queue.enqueue(MutationKind.CREATE_OBSERVATION,
                        {'subject_id': 10, 'observation_date': '2026-03-04', 'weight': 19.0}, experiment_id=1)
    await queue.enqueue(MutationKind.RECORD_EXIT,
                        {'subject_id': 11, 'exit_date': '2026-03-04', 'exit_type': 'natural_death'},
                        experiment_id=1)

    await cache.store_snapshot(make_snapshot())

    dates = [o['observation_date'] for o in await cache.get_observations(10)]
    assert dates == ['2026-03-01', '2026-03-04']
    subject = await cache.get_subject(11)
    assert subject['status'] == 'dead'
    assert subject['exit_type'] == 'natural_death'


@pytest.mark.asyncio
async def test_optimistic_samples(cache, queue):
    await cache.store_snapshot(make_snapshot())
    await queue.enqueue(MutationKind.CREATE_SAMPLES_BATCH, {
        'collection_date': '2026-03-05',
        'samples': [{'subject_id': 10, 'sample_type': 'serum'}, {'subject_id': 11, 'sample_type': 'colon'}],
    }, experiment_id=1)

    samples = await cache.get_samples(1)
    assert sorted(s['id'] for s in samples) == [-2, -1]
    assert {s['day_of_study'] for s in samples} == {4}


@pytest.mark.asyncio
async def test_put_observation_replaces_optimistic_row(cache, queue):
    await cache.store_snapshot(make_snapshot())
    await queue.enqueue(MutationKind.CREATE_OBSERVATION,
                        {'subject_id': 10, 'observation_date': '2026-03-04', 'weight': 19.0}, experiment_id=1)

    await cache.put_observation({'id': 555, 'subject_id': 10, 'observation_date': '2026-03-04',
                                 'weight': 19.0, 'weight_pct_change': -5.0})

    day4 = [o for o in await cache.get_observations(10) if o['observation_date'] == '2026-03-04']
    assert [o['id'] for o in day4] == [555]
    assert await cache.get_observations_on(1, '2026-03-04') == day4
