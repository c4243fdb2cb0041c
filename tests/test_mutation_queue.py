"""Tests for the durable offline mutation queue."""

import pytest

from studydb.client import MutationQueue
from studydb.payloads import MutationKind, PushMutation


def _obs(subject_id, day='2026-03-02'):
    return {'subject_id': subject_id, 'observation_date': day, 'weight': 20.0}


@pytest.mark.asyncio
async def test_drain_is_oldest_first_and_stable(queue):
    await queue.enqueue(MutationKind.CREATE_OBSERVATION, _obs(3), mutation_id='late', timestamp=2000)
    await queue.enqueue(MutationKind.CREATE_OBSERVATION, _obs(1), mutation_id='first', timestamp=1000)
    await queue.enqueue(MutationKind.CREATE_OBSERVATION, _obs(2), mutation_id='second', timestamp=1000)

    assert [m.id for m in await queue.drain()] == ['first', 'second', 'late']
    # Draining does not consume
    assert await queue.count() == 3


@pytest.mark.asyncio
async def test_remove_only_named_entries(queue):
    for i in range(3):
        await queue.enqueue(MutationKind.CREATE_OBSERVATION, _obs(i), mutation_id=f"m{i}", timestamp=1000 + i)

    assert await queue.remove(['m0', 'm2', 'not-there']) == 2
    assert [m.id for m in await queue.drain()] == ['m1']
    assert await queue.remove([]) == 0


@pytest.mark.asyncio
async def test_queue_survives_reopen(cache, tmp_path):
    from studydb.client import LocalCache

    await MutationQueue(cache).enqueue(MutationKind.RECORD_EXIT, {
        'subject_id': 5, 'exit_date': '2026-03-04', 'exit_type': 'excluded',
    }, experiment_id=7, mutation_id='exit-5', timestamp=1234)
    cache.close()

    reopened = LocalCache(cache.path)
    try:
        [item] = await MutationQueue(reopened).drain()
    finally:
        reopened.close()
    assert item.id == 'exit-5'
    assert item.kind == 'recordExit'
    assert item.experiment_id == 7
    assert item.payload['exit_type'] == 'excluded'


@pytest.mark.asyncio
async def test_wire_form_matches_push_body(queue):
    item = await queue.enqueue(MutationKind.CREATE_OBSERVATION, _obs(1), timestamp=1700000000000)

    wire = item.to_wire()
    assert set(wire) == {'id', 'kind', 'payload', 'client_timestamp'}
    parsed = PushMutation.model_validate(wire)
    assert parsed.kind == 'createObservation'
    assert parsed.client_timestamp == 1700000000000


@pytest.mark.asyncio
async def test_unknown_kind_is_rejected(queue):
    with pytest.raises(ValueError):
        await queue.enqueue('dropTable', {})
    assert await queue.count() == 0
