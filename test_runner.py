"""
Tests for executing a run from queued to its terminal state.
"""

import pytest

from datastash.errors import StorageUnavailable
from datastash.models import RUN_TYPE, MANUAL, SCHEDULED, SUCCESS, FAILURE, SYSTEM_ERROR, Recipe, Run, Trigger
from datastash.recipes import install_recipe
from datastash.retention import RetentionManager
from datastash.run_queue import RunQueue
from datastash.runner import RunExecutor
from datastash.snapshot import SnapshotRepository
from datastash.store import MemoryDocumentStore


@pytest.fixture
def executor(store, workdir, notifier):
    return RunExecutor(store, workdir, notifier=notifier)


def _run(store, executor, initiator=MANUAL):
    run = RunQueue(store).enqueue(initiator)
    return executor.execute(run.id)


def test_successful_first_run_stores_snapshot_and_empty_diff(store, workdir, executor, installed):
    installed(triggers=[{'recipient': 'ops@example.com'}])
    (workdir / 'current.csv').write_text('name\na\nb\n')

    run = _run(store, executor)

    assert run.state == SUCCESS
    assert run.date_started is not None
    assert run.duration >= 0
    assert (run.records_added, run.records_removed) == (0, 0)
    assert run.triggered == []
    assert SnapshotRepository(store).load(run.id) == [{'name': 'a'}, {'name': 'b'}]


def test_second_run_diffs_and_fires_triggers(store, workdir, executor, installed, notifier):
    installed(triggers=[
        {'recipient': 'ops@example.com'},
        {'recipient': 'gone@example.com', 'condition': 'removed'},
    ])
    (workdir / 'current.csv').write_text('name\na\nb\n')
    _run(store, executor)
    (workdir / 'current.csv').write_text('name\nb\nc\n')

    run = _run(store, executor, SCHEDULED)

    assert run.state == SUCCESS
    assert (run.records_added, run.records_removed) == (1, 1)
    assert [t['recipient'] for t in run.triggered] == ['ops@example.com', 'gone@example.com']
    assert all(t['delivered'] for t in run.triggered)
    recipient, subject, body = notifier.sent[0]
    assert subject == 'test-stash: 1 added, 1 removed'
    assert 'name: c' in body


def test_unchanged_data_fires_no_changed_trigger(store, workdir, executor, installed, notifier):
    installed(triggers=[{'recipient': 'ops@example.com'}])
    (workdir / 'current.csv').write_text('name\na\n')
    _run(store, executor)

    run = _run(store, executor)

    assert run.triggered == []
    assert notifier.sent == []


def test_failing_command_is_failure_without_snapshot(store, workdir, executor, installed):
    installed(run=['echo starting', 'exit 2', 'echo unreachable'])

    run = _run(store, executor)

    assert run.state == FAILURE
    assert [c.exit_code for c in run.execution] == [0, 2]
    assert run.records_added is None
    assert SnapshotRepository(store).ids() == []


def test_missing_result_is_system_error(store, workdir, executor, installed):
    installed(run=['true'])

    run = _run(store, executor)

    assert run.state == SYSTEM_ERROR
    assert 'ResultParseError' in run.error
    assert len(run.execution) == 1
    assert SnapshotRepository(store).ids() == []


def test_failed_run_does_not_break_diff_chain(store, workdir, executor, installed):
    installed()
    (workdir / 'current.csv').write_text('name\na\n')
    _run(store, executor)
    (workdir / 'out.csv').unlink()
    installed(run=['exit 1'])
    _run(store, executor)
    installed()
    (workdir / 'current.csv').write_text('name\na\nz\n')

    run = _run(store, executor)

    assert (run.records_added, run.records_removed) == (1, 0)


def test_only_queued_runs_execute(store, workdir, executor, installed):
    installed()
    (workdir / 'current.csv').write_text('name\na\n')
    run = _run(store, executor)

    assert executor.execute(run.id) is None


def test_success_prunes_old_runs(store, workdir, notifier, installed):
    installed()
    (workdir / 'current.csv').write_text('name\na\n')
    executor = RunExecutor(store, workdir, notifier=notifier, retention=RetentionManager(store, retain_count=2))

    for _ in range(4):
        last = _run(store, executor)

    runs = RunQueue(store).runs()
    assert len(runs) == 2
    assert runs[0].id == last.id
    assert len(SnapshotRepository(store).ids()) == 2


class FailingSuccessWriteStore(MemoryDocumentStore):
    """Rejects the first write that would mark a run successful."""

    def __init__(self):
        super().__init__()
        self.failures_left = 1

    def put(self, type, id, data, revision=None):
        if type == RUN_TYPE and data.get('state') == SUCCESS and self.failures_left:
            self.failures_left -= 1
            raise StorageUnavailable("database is locked")
        return super().put(type, id, data, revision)


def test_failed_terminal_write_does_not_stall_queue(workdir, notifier):
    store = FailingSuccessWriteStore()
    install_recipe(store, Recipe(
        name='test-stash', run=['cp current.csv out.csv'], result='out.csv',
        triggers=[Trigger('ops@example.com', condition='always')]
    ))
    (workdir / 'current.csv').write_text('name\na\n')
    queue = RunQueue(store, RunExecutor(store, workdir, notifier=notifier))

    first = queue.enqueue(MANUAL)
    lost = queue.tick()
    second = queue.enqueue(MANUAL)
    retried = queue.tick()

    stored = Run.from_dict(store.get(RUN_TYPE, first.id))
    assert lost.state == stored.state == SYSTEM_ERROR
    assert 'StorageUnavailable' in stored.error
    assert [t['recipient'] for t in stored.triggered] == ['ops@example.com']
    assert retried.id == second.id and retried.state == SUCCESS
    assert SnapshotRepository(store).ids() == [second.id]
    assert (retried.records_added, retried.records_removed) == (0, 0)
