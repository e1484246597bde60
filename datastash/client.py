"""
DatastashClient - operations behind the management interface.

Reads recipe, run and snapshot documents and queues manual runs. The
client never executes runs itself; the worker picks queued runs up.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from datastash.differ import diff
from datastash.models import (
    RUN_TYPE, MANUAL, RUNNING, SUCCESS, SYSTEM_ERROR, TERMINAL_STATES, Recipe, Run
)
from datastash.recipes import load_recipe, save_recipe
from datastash.run_queue import RunQueue
from datastash.snapshot import SnapshotRepository, rows_to_csv
from datastash.store import DocumentStore

logger = logging.getLogger(__name__)

Rows = List[Dict[str, Any]]


class DatastashClient:
    """Query and control interface for one stash."""

    def __init__(
        self,
        store: DocumentStore,
        on_recipe_change: Optional[Callable[[Recipe], None]] = None
    ):
        """
        Initialize the client.

        Args:
            store: Document store shared with the worker
            on_recipe_change: Called with the saved recipe after every
                modification (the service re-arms its schedule here)
        """
        self.store = store
        self.queue = RunQueue(store)
        self.snapshots = SnapshotRepository(store)
        self.on_recipe_change = on_recipe_change

    def enqueue(self, initiator: str = MANUAL) -> Optional[Run]:
        """Queue a run; None if one from the same initiator is already waiting."""
        return self.queue.enqueue(initiator)

    def get_recipe(self) -> Recipe:
        return load_recipe(self.store)

    def modify_recipe(self, recipe: Recipe, revision: Optional[str] = None) -> Recipe:
        """
        Replace the stored recipe.

        Args:
            recipe: New recipe
            revision: Revision of the recipe being replaced; defaults to
                recipe.revision

        Returns:
            The saved recipe with its new revision

        Raises:
            Conflict: If the stored recipe changed since revision was read
            RecipeInvalid, ScheduleInvalid: If the recipe is rejected
        """
        saved = save_recipe(self.store, recipe, revision=revision or recipe.revision)
        if self.on_recipe_change is not None:
            self.on_recipe_change(saved)
        return saved

    def list_runs(self, state: Optional[str] = None, limit: Optional[int] = None) -> List[Run]:
        """
        Runs, newest first.

        Args:
            state: Only runs in this state
            limit: Maximum number of runs
        """
        runs = self.queue.runs()
        if state:
            runs = [run for run in runs if run.state == state]
        if limit:
            runs = runs[:limit]
        return runs

    def get_run(self, run_id: str) -> Run:
        """
        Raises:
            NotFound: If the run doesn't exist
        """
        return Run.from_dict(self.store.get(RUN_TYPE, run_id))

    def get_status(self) -> Dict[str, Any]:
        """
        The recipe and aggregate statistics over the retained runs.

        successRate is a percentage with one decimal and averageRunTime is
        in seconds; both are None until a run has finished.
        """
        recipe = self.get_recipe()
        runs = self.queue.runs()
        finished = [run for run in runs if run.state in TERMINAL_STATES]
        successful = [run for run in finished if run.state == SUCCESS]
        durations = [run.duration for run in finished if run.duration is not None]

        status = {
            'numberRuns': len(finished),
            'numberRunsSuccessful': len(successful),
            'successRate': round(len(successful) / len(finished) * 100, 1) if finished else None,
            'averageRunTime': round(sum(durations) / len(durations), 3) if durations else None,
            'dateLastSuccessfulRun': successful[0].date_started if successful else None,
            'numberRunsQueued': len(self.queue.queued()),
            'running': next((run.id for run in runs if run.state == RUNNING), None)
        }
        return {'recipe': recipe, 'status': status}

    def get_run_execution_log(self, run_id: str, since: int = 0) -> Dict[str, Any]:
        """
        A run's captured output as one flat list.

        Args:
            run_id: Run id
            since: Number of entries the caller already has

        Returns:
            {'id': run_id, 'log': [{'command', 'stream', 'data'}, ...]}
        """
        run = self.get_run(run_id)
        entries = [
            {'command': result.command, 'stream': entry.stream, 'data': entry.data}
            for result in run.execution
            for entry in result.log
        ]
        return {'id': run.id, 'log': entries[max(since, 0):]}

    def _format(self, rows: Rows, as_csv: bool) -> Union[Rows, str]:
        return rows_to_csv(rows) if as_csv else rows

    def get_run_data(self, run_id: str, as_csv: bool = False) -> Union[Rows, str]:
        """
        The snapshot a successful run produced.

        Raises:
            NotFound: If the run has no snapshot
        """
        return self._format(self.snapshots.load(run_id), as_csv)

    def get_run_diff(self, run_id: str):
        rows = self.snapshots.load(run_id)
        return diff(rows, self.snapshots.previous(run_id))

    def get_run_data_added(self, run_id: str, as_csv: bool = False) -> Union[Rows, str]:
        """Rows the run found that the previous successful run didn't have."""
        return self._format(self.get_run_diff(run_id).added, as_csv)

    def get_run_data_removed(self, run_id: str, as_csv: bool = False) -> Union[Rows, str]:
        """Rows the previous successful run had that this run didn't find."""
        return self._format(self.get_run_diff(run_id).removed, as_csv)

    def recover_stuck_runs(self, reason: str = "abandoned: worker exited while running") -> List[str]:
        """
        Mark runs left in the running state as system errors.

        Only call this when no worker is running; it unblocks a queue whose
        previous worker died mid-run.

        Returns:
            Ids of the runs recovered
        """
        recovered = []
        for run in self.queue.runs():
            if run.state != RUNNING:
                continue
            run.state = SYSTEM_ERROR
            run.error = reason
            self.store.put(RUN_TYPE, run.id, run.to_dict(), revision=run.revision)
            logger.warning(f"Marked stuck run {run.id} as {SYSTEM_ERROR}")
            recovered.append(run.id)
        return recovered
