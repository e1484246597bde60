"""
Lifecycle of a single run.

    queued -> running -> success | failure | system-error

A run fails when a run command exits non-zero. It ends in system-error
when anything else goes wrong on the way (unreadable result file, storage
trouble), and succeeds only once the result has been parsed, diffed and
notifications attempted. Terminal runs are never written again.
"""

import logging
import time
from pathlib import Path
from typing import List, Optional

from datastash.differ import diff
from datastash.errors import NotFound, StashError
from datastash.models import (
    RUN_TYPE, QUEUED, RUNNING, SUCCESS, FAILURE, SYSTEM_ERROR,
    CommandResult, Run, timestamp
)
from datastash.notifier import LogNotifier, Notifier, fire_triggers
from datastash.pipeline import PipelineRunner, pipeline_failed
from datastash.recipes import load_recipe
from datastash.retention import RetentionManager
from datastash.snapshot import SnapshotRepository, parse_result
from datastash.store import DocumentStore

logger = logging.getLogger(__name__)


class RunExecutor:
    """
    Drives a queued run to a terminal state.

    Callers must make sure only one run executes at a time; the working
    directory is shared by every run of the recipe.
    """

    def __init__(
        self,
        store: DocumentStore,
        working_dir: Path,
        pipeline: Optional[PipelineRunner] = None,
        notifier: Optional[Notifier] = None,
        retention: Optional[RetentionManager] = None
    ):
        """
        Initialize run executor.

        Args:
            store: Document store holding the recipe and runs
            working_dir: Directory the run commands execute in
            pipeline: Command runner (default: PipelineRunner())
            notifier: Delivers trigger notifications (default: log only)
            retention: Prunes old runs after each success (None disables)
        """
        self.store = store
        self.working_dir = Path(working_dir)
        self.pipeline = pipeline or PipelineRunner()
        self.notifier = notifier or LogNotifier()
        self.retention = retention
        self.snapshots = SnapshotRepository(store)

    def _save(self, run: Run) -> Run:
        stored = self.store.put(RUN_TYPE, run.id, run.to_dict(), revision=run.revision)
        run.revision = stored.revision
        return run

    def execute(self, run_id: str) -> Optional[Run]:
        """
        Execute a queued run.

        Args:
            run_id: Id of a run in the queued state

        Returns:
            The run in its terminal state, or None if it wasn't queued

        Raises:
            NotFound: If the run doesn't exist
            Conflict: If another writer changed the run before it started
            StashError: If neither the outcome nor a system-error record
                could be written
        """
        run = Run.from_dict(self.store.get(RUN_TYPE, run_id))
        if run.state != QUEUED:
            logger.warning(f"Run {run_id} is {run.state}, not queued; skipping")
            return None

        started = time.monotonic()
        run.state = RUNNING
        run.date_started = timestamp()
        self._save(run)

        log_prefix = f"[{run_id}] "
        execution: List[CommandResult] = []
        snapshot_saved = False

        try:
            recipe = load_recipe(self.store)
            log_prefix = f"[{recipe.name}:{run_id}] "
            logger.info(f"{log_prefix}Starting {run.initiator} run")

            execution = self.pipeline.execute_pipeline(self.working_dir, recipe.run, log_prefix=log_prefix)
            run.execution = execution

            if pipeline_failed(execution):
                run.state = FAILURE
                logger.warning(f"{log_prefix}Run failed at '{execution[-1].command}'")
            else:
                rows = parse_result(self.working_dir / recipe.result)
                self.snapshots.save(run_id, rows)
                snapshot_saved = True

                changes = diff(rows, self.snapshots.previous(run_id))
                run.triggered = fire_triggers(
                    recipe.triggers, changes, recipe.name, self.notifier, log_prefix=log_prefix
                )
                run.records_added = len(changes.added)
                run.records_removed = len(changes.removed)
                run.state = SUCCESS
                logger.info(
                    f"{log_prefix}Run succeeded: {len(rows)} rows, "
                    f"{run.records_added} added, {run.records_removed} removed"
                )

        except Exception as e:
            logger.error(f"{log_prefix}Run aborted: {e}", exc_info=True)
            run.state = SYSTEM_ERROR
            run.error = f"{type(e).__name__}: {e}"
            run.execution = execution
            run.triggered = []
            run.records_added = run.records_removed = None

        run.duration = round(time.monotonic() - started, 3)
        try:
            self._save(run)
        except Exception as e:
            logger.error(f"{log_prefix}Could not record {run.state} run: {e}")
            if snapshot_saved:
                self._discard_snapshot(run_id, log_prefix)
                snapshot_saved = False
            run = self._record_system_error(run, f"{type(e).__name__}: {e}")
        if snapshot_saved and run.state != SUCCESS:
            self._discard_snapshot(run_id, log_prefix)
        logger.info(f"{log_prefix}Finished as {run.state} in {run.duration:.2f}s")

        if run.state == SUCCESS and self.retention is not None:
            try:
                self.retention.prune()
            except StashError as e:
                logger.warning(f"{log_prefix}Pruning old runs failed: {e}")

        return run

    def _record_system_error(self, run: Run, error: str) -> Run:
        """
        Write run as system-error against its current stored revision.

        Keeps the captured execution log and notification outcomes.

        Raises:
            StashError: If the store still rejects the write
        """
        run.state = SYSTEM_ERROR
        run.error = error
        run.records_added = run.records_removed = None
        run.revision = self.store.get(RUN_TYPE, run.id)["revision"]
        return self._save(run)

    def _discard_snapshot(self, run_id: str, log_prefix: str):
        # only successful runs keep a snapshot for later diffs
        try:
            self.snapshots.delete(run_id)
        except NotFound:
            pass
        except Exception as e:
            logger.warning(f"{log_prefix}Could not remove snapshot: {e}")
