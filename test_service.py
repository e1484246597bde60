"""
Tests for the worker service, without starting its scheduler.
"""

import os

import pytest

from datastash.config import StashConfig
from datastash.models import SUCCESS
from datastash.notifier import EmailNotifier, LogNotifier
from datastash.recipes import RECIPE_ID, install_recipe
from datastash.service import SchedulerService, build_notifier, is_service_running


@pytest.fixture
def config(tmp_path):
    config = StashConfig(config_path=str(tmp_path / "config.json"), data_dir=str(tmp_path / "data"))
    config.source_location.mkdir(parents=True)
    return config


@pytest.fixture
def service(config, store, notifier):
    return SchedulerService(config, store=store, notifier=notifier)


def test_poll_executes_queued_run(service, config, store, make_recipe):
    install_recipe(store, make_recipe())
    (config.source_location / 'current.csv').write_text('name\na\n')
    run = service.client.enqueue()

    service.poll()

    assert service.client.get_run(run.id).state == SUCCESS


def test_enqueue_scheduled(service, store, make_recipe):
    install_recipe(store, make_recipe())

    service.enqueue_scheduled()
    service.enqueue_scheduled()

    assert [run.initiator for run in service.queue.queued()] == ['scheduled']


def test_client_modification_rearms_timer(service, store, make_recipe):
    current = install_recipe(store, make_recipe())
    service.apply_schedule(current)
    assert not service.timers.is_armed(RECIPE_ID)

    service.client.modify_recipe(make_recipe(schedule='0 2 * * *'), revision=current.revision)

    assert service.timers.is_armed(RECIPE_ID)


def test_sync_schedule_follows_stored_recipe(service, store, make_recipe):
    install_recipe(store, make_recipe(schedule='*/5 * * * *'))
    service.sync_schedule()
    assert service.timers.is_armed(RECIPE_ID)

    install_recipe(store, make_recipe())
    service.sync_schedule()
    assert not service.timers.is_armed(RECIPE_ID)


def test_sync_schedule_without_recipe_disarms(service):
    service.sync_schedule()

    assert not service.timers.is_armed(RECIPE_ID)


def test_pid_file_detection(config):
    pid_file = config.data_dir / "datastash.pid"
    assert is_service_running(config) == (False, None)

    pid_file.write_text(str(os.getpid()))
    assert is_service_running(config) == (True, os.getpid())

    pid_file.write_text("999999999")
    assert is_service_running(config) == (False, None)
    assert not pid_file.exists()


def test_build_notifier_uses_email_when_configured(config):
    assert build_notifier(config).email is None

    config.email.host = 'smtp.example.com'
    notifier = build_notifier(config)

    assert isinstance(notifier.email, EmailNotifier)
    assert notifier.email.host == 'smtp.example.com'
    assert notifier.fallback.channel == LogNotifier.channel


def test_stale_schedule_firing_queues_nothing(service, store, make_recipe):
    current = install_recipe(store, make_recipe(schedule='0 2 * * *'))
    service.apply_schedule(current)
    token = service.timers._tokens[RECIPE_ID]

    service.client.modify_recipe(make_recipe(schedule='0 4 * * *'), revision=current.revision)
    service.timers._fire(RECIPE_ID, token, service.enqueue_scheduled)

    assert service.queue.queued() == []
