"""
End-to-end tests of the datastash command line.
"""

import json
import sys

import pytest

from datastash import cli
from datastash.client import DatastashClient
from datastash.config import StashConfig
from datastash.runner import RunExecutor
from datastash.store import SQLiteDocumentStore


@pytest.fixture
def run_cli(tmp_path, monkeypatch, capsys):
    base = ['datastash', '-c', str(tmp_path / 'config.json'), '--data-dir', str(tmp_path / 'data')]

    def _run(*args):
        monkeypatch.setattr(sys, 'argv', base + list(args))
        cli.main()
        return capsys.readouterr().out

    return _run


@pytest.fixture
def recipe_file(tmp_path):
    path = tmp_path / 'recipe.json'
    path.write_text(json.dumps({
        'name': 'prices',
        'setup': ['printf "sku\\nA\\n" > current.csv'],
        'run': ['cp current.csv out.csv'],
        'result': 'out.csv',
    }))
    return path


def test_setup_then_queue_and_inspect(tmp_path, run_cli, recipe_file):
    run_cli('setup', str(recipe_file))
    out = run_cli('run')
    assert 'Queued run' in out

    config = StashConfig(str(tmp_path / 'config.json'), data_dir=str(tmp_path / 'data'))
    store = SQLiteDocumentStore(config.database)
    run = DatastashClient(store).list_runs()[0]
    RunExecutor(store, config.source_location).execute(run.id)
    store.close()

    history = json.loads(run_cli('history', '--json'))
    assert [(r['id'], r['state']) for r in history] == [(run.id, 'success')]
    assert run_cli('data', run.id, '--csv') == 'sku\nA\n'


def test_setup_failure_exits_non_zero(tmp_path, run_cli):
    path = tmp_path / 'bad.json'
    path.write_text(json.dumps({'name': 'bad', 'setup': ['exit 4'], 'run': ['true'], 'result': 'out.csv'}))

    with pytest.raises(SystemExit) as excinfo:
        run_cli('setup', str(path))

    assert excinfo.value.code == 1


def test_no_command_prints_help(run_cli):
    with pytest.raises(SystemExit):
        run_cli()
