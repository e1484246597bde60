"""
Tests for pruning old runs.
"""

from datastash.models import RUN_TYPE, QUEUED, SUCCESS, FAILURE, MANUAL
from datastash.retention import RetentionManager
from datastash.snapshot import SnapshotRepository


def _add_run(store, id, state):
    store.put(RUN_TYPE, id, {'state': state, 'initiator': MANUAL, 'date_queued': id})
    if state == SUCCESS:
        SnapshotRepository(store).save(id, [{'id': id}])


def test_keeps_newest_runs_and_their_snapshots(store):
    for i in range(6):
        _add_run(store, f"2024-01-0{i + 1}", SUCCESS if i % 2 == 0 else FAILURE)

    deleted = RetentionManager(store, retain_count=3).prune()

    assert deleted == ['2024-01-01', '2024-01-02', '2024-01-03']
    assert [run['id'] for run in store.list_by_type(RUN_TYPE)] == ['2024-01-06', '2024-01-05', '2024-01-04']
    assert SnapshotRepository(store).ids() == ['2024-01-05']


def test_nothing_to_prune_under_the_limit(store):
    _add_run(store, '2024-01-01', SUCCESS)

    assert RetentionManager(store, retain_count=3).prune() == []


def test_queued_runs_are_never_pruned(store):
    _add_run(store, '2024-01-01', QUEUED)
    _add_run(store, '2024-01-02', SUCCESS)
    _add_run(store, '2024-01-03', SUCCESS)

    RetentionManager(store, retain_count=1).prune()

    assert [run['id'] for run in store.list_by_type(RUN_TYPE)] == ['2024-01-03', '2024-01-01']


def test_success_without_snapshot_is_still_pruned(store):
    store.put(RUN_TYPE, '2024-01-01', {'state': SUCCESS, 'initiator': MANUAL, 'date_queued': 'x'})
    _add_run(store, '2024-01-02', SUCCESS)

    assert RetentionManager(store, retain_count=1).prune() == ['2024-01-01']
