"""
Exception types raised by datastash.

Pipeline command failures are deliberately absent: a non-zero exit is
recorded on the run as data, not raised.
"""

from typing import List, Optional


class StashError(Exception):
    """Base class for datastash errors."""
    pass


class NotFound(StashError):
    """Raised when a document does not exist."""

    def __init__(self, type: str, id: str):
        super().__init__(f"{type}/{id} not found")
        self.type = type
        self.id = id


class Conflict(StashError):
    """
    Raised when a write loses an optimistic-concurrency check.

    Callers may retry after re-reading the current revision.
    """

    def __init__(self, type: str, id: str, revision: Optional[str] = None):
        super().__init__(f"{type}/{id} revision conflict (given: {revision})")
        self.type = type
        self.id = id
        self.revision = revision


class StorageUnavailable(StashError):
    """Raised when the document store cannot be reached."""
    pass


class ResultParseError(StashError):
    """Raised when a recipe's result file is missing or unreadable."""
    pass


class ScheduleInvalid(StashError):
    """Raised when a cron expression cannot be parsed."""
    pass


class RecipeInvalid(StashError):
    """Raised when a recipe fails validation."""

    def __init__(self, errors: List[str]):
        super().__init__("Invalid recipe: " + "; ".join(errors))
        self.errors = errors


class NotificationDeliveryError(StashError):
    """Raised by notifiers when a message cannot be delivered."""
    pass


class SetupFailed(StashError):
    """Raised when a recipe's setup pipeline exits non-zero."""

    def __init__(self, results):
        failed = results[-1] if results else None
        detail = f"'{failed.command}' exited {failed.exit_code}" if failed else "no commands"
        super().__init__(f"Setup failed: {detail}")
        self.results = results
