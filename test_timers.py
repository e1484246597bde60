"""
Tests for cron timers.
"""

from unittest.mock import MagicMock

import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from datastash.errors import ScheduleInvalid
from datastash.timers import TimerRegistry, parse_schedule


@pytest.fixture
def scheduler():
    # paused: jobs are stored but never fire on their own
    scheduler = BackgroundScheduler()
    scheduler.start(paused=True)
    yield scheduler
    scheduler.shutdown(wait=False)


@pytest.mark.parametrize('expr', ['0 2 * * *', '*/15 * * * mon-fri', '30 6 1 * *'])
def test_parse_valid_schedules(expr):
    assert isinstance(parse_schedule(expr), CronTrigger)


@pytest.mark.parametrize('expr', ['', 'every day', '61 * * * *', '* * * *'])
def test_parse_invalid_schedules(expr):
    with pytest.raises(ScheduleInvalid):
        parse_schedule(expr)


def test_arm_adds_one_job_per_recipe(scheduler):
    timers = TimerRegistry(scheduler)

    timers.arm('recipe', '0 2 * * *', MagicMock())
    timers.arm('recipe', '0 3 * * *', MagicMock())

    assert [job.id for job in scheduler.get_jobs()] == ['recipe:recipe']
    assert timers.is_armed('recipe')


def test_firing_calls_callback(scheduler):
    timers = TimerRegistry(scheduler)
    callback = MagicMock()
    timers.arm('recipe', '0 2 * * *', callback)

    job = scheduler.get_job(TimerRegistry.job_id('recipe'))
    job.func(*job.args)

    callback.assert_called_once_with()


def test_stale_firing_after_rearm_is_ignored(scheduler):
    timers = TimerRegistry(scheduler)
    old_callback, new_callback = MagicMock(), MagicMock()
    timers.arm('recipe', '0 2 * * *', old_callback)
    stale = scheduler.get_job(TimerRegistry.job_id('recipe'))

    timers.rearm('recipe', '0 4 * * *', new_callback)
    stale.func(*stale.args)

    old_callback.assert_not_called()
    current = scheduler.get_job(TimerRegistry.job_id('recipe'))
    current.func(*current.args)
    new_callback.assert_called_once_with()


def test_disarm_cancels_timer(scheduler):
    timers = TimerRegistry(scheduler)
    callback = MagicMock()
    timers.arm('recipe', '0 2 * * *', callback)
    stale = scheduler.get_job(TimerRegistry.job_id('recipe'))

    assert timers.disarm('recipe') is True
    assert timers.disarm('recipe') is False
    assert scheduler.get_jobs() == []
    stale.func(*stale.args)
    callback.assert_not_called()


def test_invalid_rearm_keeps_current_timer(scheduler):
    timers = TimerRegistry(scheduler)
    timers.arm('recipe', '0 2 * * *', MagicMock())

    with pytest.raises(ScheduleInvalid):
        timers.rearm('recipe', 'not cron', MagicMock())

    assert timers.is_armed('recipe')
    assert scheduler.get_job(TimerRegistry.job_id('recipe')) is not None


def test_rearm_with_empty_schedule_disarms(scheduler):
    timers = TimerRegistry(scheduler)
    timers.arm('recipe', '0 2 * * *', MagicMock())

    timers.rearm('recipe', None, MagicMock())

    assert not timers.is_armed('recipe')
