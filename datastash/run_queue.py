"""
The run queue and its single worker.

Queued runs live in the document store, not in memory: enqueue() writes a
queued run document and tick() picks the oldest one whenever nothing is
running. A restarted process picks up where the last one stopped.
"""

import logging
import threading
from typing import List, Optional

from datastash.errors import NotFound, StashError
from datastash.models import RUN_TYPE, QUEUED, RUNNING, INITIATORS, Run, timestamp
from datastash.runner import RunExecutor
from datastash.store import DocumentStore, add_unique

logger = logging.getLogger(__name__)


class RunQueue:
    """FIFO queue of runs with at most one running at a time."""

    def __init__(self, store: DocumentStore, executor: Optional[RunExecutor] = None):
        """
        Initialize run queue.

        Args:
            store: Document store holding the runs
            executor: Executes dequeued runs; required for tick()
        """
        self.store = store
        self.executor = executor
        self._enqueue_lock = threading.Lock()
        self._tick_lock = threading.Lock()

    def runs(self) -> List[Run]:
        """All runs, newest first."""
        return [Run.from_dict(doc) for doc in self.store.list_by_type(RUN_TYPE)]

    def active(self) -> Optional[Run]:
        """The running run, if any."""
        for run in self.runs():
            if run.state == RUNNING:
                return run
        return None

    def queued(self) -> List[Run]:
        """Queued runs, oldest first."""
        runs = [run for run in self.runs() if run.state == QUEUED]
        return sorted(runs, key=lambda run: (run.date_queued, run.id))

    def enqueue(self, initiator: str) -> Optional[Run]:
        """
        Queue a run.

        A run already queued by the same initiator absorbs the request. The
        check is repeated after the write, so enqueuers in other processes
        racing on the same store also end up with a single queued run.

        Args:
            initiator: 'manual' or 'scheduled'

        Returns:
            The queued run, or None if an identical request was pending
        """
        if initiator not in INITIATORS:
            raise ValueError(f"Unknown initiator '{initiator}'")

        with self._enqueue_lock:
            if any(run.initiator == initiator for run in self.queued()):
                logger.info(f"A {initiator} run is already queued; ignoring request")
                return None

            date_queued = timestamp()
            run = Run(id=date_queued, state=QUEUED, initiator=initiator, date_queued=date_queued)
            stored = add_unique(self.store, RUN_TYPE, run.id, run.to_dict())
            run.id, run.revision = stored.id, stored.revision

            # another process may have queued the same request meanwhile;
            # the oldest one stays queued
            pending = [r.id for r in self.queued() if r.initiator == initiator]
            if run.id in pending and pending[0] != run.id:
                logger.info(f"A {initiator} run was queued concurrently; withdrawing {run.id}")
                try:
                    self.store.delete(RUN_TYPE, run.id)
                except NotFound:
                    pass
                return None

        logger.info(f"Queued {initiator} run {run.id}")
        return run

    def tick(self) -> Optional[Run]:
        """
        Start the oldest queued run if nothing is running.

        Never raises: a run that blows up is logged and the queue moves on.

        Returns:
            The run executed by this tick, if any
        """
        if self.executor is None:
            raise RuntimeError("RunQueue has no executor")

        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Previous tick still executing")
            return None
        try:
            if self.active() is not None:
                logger.debug("A run is in progress; nothing to do")
                return None
            queued = self.queued()
            if not queued:
                return None
            return self.executor.execute(queued[0].id)
        except StashError as e:
            logger.error(f"Tick failed: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected error in tick: {e}", exc_info=True)
            return None
        finally:
            self._tick_lock.release()
