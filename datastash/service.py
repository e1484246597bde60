"""
The datastash worker service, built on APScheduler.

Runs two kinds of jobs:
- Dequeue: polls the run queue every few seconds and executes the oldest
  queued run when nothing is running
- Schedule: the recipe's cron timer, which queues a 'scheduled' run

A PID file keeps a second worker from starting against the same data
directory, since only one run may execute at a time.
"""

import atexit
import json
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
    EVENT_JOB_MAX_INSTANCES,
    EVENT_JOB_ADDED,
    EVENT_JOB_REMOVED
)

from datastash.client import DatastashClient
from datastash.config import StashConfig
from datastash.errors import NotFound, ScheduleInvalid, StashError
from datastash.models import SCHEDULED, Recipe
from datastash.notifier import EmailNotifier, Notifier, RoutingNotifier
from datastash.pipeline import PipelineRunner
from datastash.recipes import RECIPE_ID, load_recipe
from datastash.retention import RetentionManager
from datastash.run_queue import RunQueue
from datastash.runner import RunExecutor
from datastash.store import DocumentStore, SQLiteDocumentStore
from datastash.timers import TimerRegistry

logger = logging.getLogger(__name__)

DEQUEUE_JOB_ID = 'dequeue'


def _pid_file_path(config: StashConfig) -> Path:
    return config.data_dir / "datastash.pid"


def _info_file_path(config: StashConfig) -> Path:
    return config.data_dir / "datastash_info.json"


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


def is_service_running(config: StashConfig) -> Tuple[bool, Optional[int]]:
    """
    Check if a worker is running by reading the PID file.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = _pid_file_path(config)

    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
        if _is_process_running(pid):
            return True, pid
        # Stale PID file, clean it up
        pid_file.unlink()
        return False, None
    except (ValueError, OSError):
        return False, None


def get_service_info(config: StashConfig) -> Optional[Dict[str, Any]]:
    """
    Get information about the running worker.

    Returns:
        Dict with worker info or None if not running.
    """
    running, pid = is_service_running(config)
    if not running:
        return None

    try:
        with open(_info_file_path(config), 'r') as f:
            info = json.load(f)
    except (json.JSONDecodeError, OSError):
        info = {'data_dir': str(config.data_dir)}
    info.update(running=True, pid=pid)
    return info


def build_notifier(config: StashConfig) -> Notifier:
    """Notifier for the configured channels."""
    email = None
    if config.email.configured:
        email = EmailNotifier(
            host=config.email.host,
            port=config.email.port,
            sender=config.email.sender,
            username=config.email.username,
            password=config.email.password,
            use_tls=config.email.use_tls
        )
    return RoutingNotifier(email=email)


class SchedulerService:
    """
    Worker that executes queued runs and fires the recipe schedule.

    All state lives in the document store; the service itself can be
    stopped and restarted at any time between runs.
    """

    def __init__(
        self,
        config: StashConfig,
        store: Optional[DocumentStore] = None,
        notifier: Optional[Notifier] = None,
        foreground: bool = False
    ):
        """
        Initialize the service.

        Args:
            config: Datastash configuration
            store: Document store (default: SQLite store at config.database)
            notifier: Notification delivery (default: from config)
            foreground: If True, use blocking scheduler (for foreground mode)
        """
        self.config = config
        self.store = store or SQLiteDocumentStore(config.database)

        self.retention = RetentionManager(self.store, retain_count=config.stored_runs)
        self.executor = RunExecutor(
            self.store,
            working_dir=config.source_location,
            pipeline=PipelineRunner(timeout=config.command_timeout),
            notifier=notifier or build_notifier(config),
            retention=self.retention
        )
        self.queue = RunQueue(self.store, self.executor)
        self.client = DatastashClient(self.store, on_recipe_change=self.apply_schedule)

        # one thread for runs, one so timers can queue while a run executes
        executors = {'default': ThreadPoolExecutor(2)}
        job_defaults = {
            'coalesce': True,  # Combine multiple missed runs into one
            'max_instances': 1,  # Prevent concurrent runs of same job
            'misfire_grace_time': 300  # 5 minutes grace period
        }
        scheduler_class = BlockingScheduler if foreground else BackgroundScheduler
        self.scheduler = scheduler_class(executors=executors, job_defaults=job_defaults)
        self.timers = TimerRegistry(self.scheduler)
        self._schedule_revision: Optional[str] = None

        self._setup_event_listeners()

        logger.info(f"Service initialized with store: {config.database}")

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_error_listener(event):
            logger.error(f"Job '{event.job_id}' raised exception: {event.exception}")

        def job_missed_listener(event):
            logger.warning(f"Job '{event.job_id}' missed scheduled run time")

        def job_max_instances_listener(event):
            logger.debug(f"Job '{event.job_id}' skipped, previous instance still running")

        def job_added_listener(event):
            logger.debug(f"Job '{event.job_id}' added to scheduler")

        def job_removed_listener(event):
            logger.debug(f"Job '{event.job_id}' removed from scheduler")

        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self.scheduler.add_listener(job_max_instances_listener, EVENT_JOB_MAX_INSTANCES)
        self.scheduler.add_listener(job_added_listener, EVENT_JOB_ADDED)
        self.scheduler.add_listener(job_removed_listener, EVENT_JOB_REMOVED)

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.stop(wait=False)
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def enqueue_scheduled(self):
        self.queue.enqueue(SCHEDULED)

    def apply_schedule(self, recipe: Recipe):
        """
        Re-arm the cron timer for recipe.

        Raises:
            ScheduleInvalid: If the recipe's schedule can't be parsed
        """
        self.timers.rearm(RECIPE_ID, recipe.schedule, self.enqueue_scheduled)
        self._schedule_revision = recipe.revision

    def sync_schedule(self):
        """
        Re-arm the timer if the stored recipe changed since it was armed.

        Picks up modifications made by other processes (e.g. the CLI).
        """
        try:
            recipe = load_recipe(self.store)
        except NotFound:
            self.timers.disarm(RECIPE_ID)
            self._schedule_revision = None
            return
        if recipe.revision == self._schedule_revision:
            return
        try:
            self.apply_schedule(recipe)
        except ScheduleInvalid as e:
            logger.error(f"Stored recipe has an invalid schedule, timer disarmed: {e}")
            self.timers.disarm(RECIPE_ID)
            self._schedule_revision = recipe.revision

    def poll(self):
        """One worker cycle: refresh the schedule, then tick the queue."""
        try:
            self.sync_schedule()
        except StashError as e:
            logger.error(f"Could not refresh schedule: {e}")
        self.queue.tick()

    def start(self):
        """
        Start the worker.

        Raises:
            NotFound: If no recipe has been set up
            ScheduleInvalid: If the recipe's schedule can't be parsed
        """
        running, pid = is_service_running(self.config)
        if running:
            logger.warning(f"Datastash is already running (PID: {pid})")
            return

        if self.scheduler.running:
            logger.warning("Service is already running")
            return

        logger.info("Starting service...")
        recipe = load_recipe(self.store)
        self.apply_schedule(recipe)

        stuck = self.queue.active()
        if stuck is not None:
            logger.warning(
                f"Run {stuck.id} was left running by a previous worker; no run will start "
                f"until it is recovered (datastash recover)"
            )

        self.scheduler.add_job(
            self.poll,
            'interval',
            seconds=self.config.poll_interval_seconds,
            id=DEQUEUE_JOB_ID,
            name='dequeue',
            replace_existing=True
        )

        self._write_pid_file()
        self._setup_signal_handlers()
        logger.info(
            f"Service started for recipe '{recipe.name}' "
            f"(schedule: {recipe.schedule or 'manual only'}, poll every {self.config.poll_interval_seconds}s)"
        )
        # BlockingScheduler.start() only returns on shutdown
        self.scheduler.start()

    def _write_pid_file(self):
        """Write the current process PID and service info files."""
        pid_file = _pid_file_path(self.config)
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))
        logger.debug(f"Wrote PID file: {pid_file}")

        info = {
            'pid': os.getpid(),
            'started_at': datetime.now().isoformat(),
            'config_path': str(self.config.config_path),
            'database': str(self.config.database),
            'source_location': str(self.config.source_location),
            'log_file': self.config.logging.file,
        }
        try:
            with open(_info_file_path(self.config), 'w') as f:
                json.dump(info, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to write service info file: {e}")

        atexit.register(self._remove_pid_file)

    def _remove_pid_file(self):
        """Remove the PID and info files."""
        for path in (_pid_file_path(self.config), _info_file_path(self.config)):
            try:
                if path.exists():
                    path.unlink()
            except OSError:
                pass

    def stop(self, wait: bool = True):
        """
        Stop the worker.

        Args:
            wait: If True, wait for a run in progress to complete
        """
        if self.scheduler.running:
            logger.info("Stopping service...")
            self.scheduler.shutdown(wait=wait)
            self._remove_pid_file()
            logger.info("Service stopped")
        else:
            logger.warning("Service is not running")

    def is_running(self) -> bool:
        return self.scheduler.running
