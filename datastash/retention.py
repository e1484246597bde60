"""
Pruning of old runs and their snapshots.
"""

import logging
from typing import List

from datastash.errors import NotFound, StashError
from datastash.models import RUN_TYPE, SUCCESS, TERMINAL_STATES
from datastash.snapshot import SnapshotRepository
from datastash.store import DocumentStore

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Keeps the newest `retain_count` runs.

    Deletion is best-effort: a failure is logged and the next prune tries
    again. Queued and running runs are never deleted.
    """

    def __init__(self, store: DocumentStore, retain_count: int = 50):
        self.store = store
        self.retain_count = retain_count
        self.snapshots = SnapshotRepository(store)

    def prune(self) -> List[str]:
        """
        Delete runs beyond the retained count, oldest first.

        Returns:
            Ids of the runs deleted
        """
        runs = self.store.list_by_type(RUN_TYPE)
        if len(runs) <= self.retain_count:
            return []

        deleted = []
        for run in reversed(runs[self.retain_count:]):
            if run['state'] not in TERMINAL_STATES:
                continue
            try:
                if run['state'] == SUCCESS:
                    try:
                        self.snapshots.delete(run['id'])
                    except NotFound:
                        logger.debug(f"Run {run['id']} had no snapshot")
                self.store.delete(RUN_TYPE, run['id'])
                deleted.append(run['id'])
            except StashError as e:
                logger.warning(f"Failed to delete run {run['id']}: {e}")

        if deleted:
            logger.info(f"Pruned {len(deleted)} old run(s), keeping {self.retain_count}")
        return deleted
