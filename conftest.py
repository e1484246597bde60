"""
Shared pytest fixtures.
"""

import pytest

from datastash.models import Recipe, Trigger
from datastash.notifier import Delivery, Notifier
from datastash.recipes import install_recipe
from datastash.store import MemoryDocumentStore


class RecordingNotifier(Notifier):
    """Keeps every message instead of sending it."""

    channel = 'test'

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def notify(self, recipient, subject, body):
        if recipient in self.fail_for:
            raise RuntimeError(f"cannot reach {recipient}")
        self.sent.append((recipient, subject, body))
        return Delivery(recipient=recipient, channel=self.channel)


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "source"
    path.mkdir()
    return path


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_recipe():
    """Build a recipe whose run command copies `current.csv` to the result."""

    def _make(run=None, triggers=None, schedule=None, result='out.csv'):
        return Recipe(
            name='test-stash',
            run=run or [f'cp current.csv {result}'],
            result=result,
            schedule=schedule,
            triggers=[Trigger(**t) for t in triggers or []],
        )

    return _make


@pytest.fixture
def installed(store, make_recipe):
    """Install a recipe into the store and return it."""

    def _install(**kwargs):
        return install_recipe(store, make_recipe(**kwargs))

    return _install
