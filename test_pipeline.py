"""
Tests for shell pipeline execution.
"""

import io

import pytest

from datastash.errors import SetupFailed
from datastash.models import Recipe
from datastash.pipeline import PipelineRunner, pipeline_failed, run_setup


def test_captures_stdout_and_stderr(workdir):
    result = PipelineRunner().execute_command('echo out; echo err >&2', workdir)

    assert result.exit_code == 0
    assert not result.failed
    streams = {(entry.stream, entry.data) for entry in result.log}
    assert ('stdout', 'out\n') in streams
    assert ('stderr', 'err\n') in streams


def test_commands_run_in_working_directory(workdir):
    PipelineRunner().execute_command('echo hello > marker.txt', workdir)

    assert (workdir / 'marker.txt').read_text() == 'hello\n'


def test_pipeline_stops_at_first_failure(workdir):
    results = PipelineRunner().execute_pipeline(
        workdir, ['echo one', 'exit 3', 'touch never-created']
    )

    assert [r.command for r in results] == ['echo one', 'exit 3']
    assert results[-1].exit_code == 3
    assert pipeline_failed(results)
    assert not (workdir / 'never-created').exists()


def test_empty_pipeline_succeeds(workdir):
    results = PipelineRunner().execute_pipeline(workdir, [])

    assert results == []
    assert not pipeline_failed(results)


def test_timeout_kills_command(workdir):
    result = PipelineRunner(timeout=1).execute_command('sleep 30', workdir)

    assert result.failed
    assert 'timed out' in result.log[-1].data


def test_run_setup_replays_output_and_creates_directory(tmp_path):
    recipe = Recipe(name='s', setup=['echo ready'], run=['true'], result='out.csv')
    out = io.StringIO()

    results = run_setup(recipe, tmp_path / 'new-dir', stdout=out, stderr=io.StringIO())

    assert (tmp_path / 'new-dir').is_dir()
    assert len(results) == 1
    assert out.getvalue() == 'ready\n'


def test_run_setup_raises_on_failure(workdir):
    recipe = Recipe(name='s', setup=['false', 'echo skipped'], run=['true'], result='out.csv')

    with pytest.raises(SetupFailed) as excinfo:
        run_setup(recipe, workdir, stdout=io.StringIO(), stderr=io.StringIO())

    assert len(excinfo.value.results) == 1
    assert "'false' exited 1" in str(excinfo.value)
