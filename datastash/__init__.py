"""
Datastash - run a recipe's shell pipeline on a schedule, keep the table it
produces, and report the rows that changed between runs.

Usage:
    from datastash import DatastashClient, SQLiteDocumentStore

    client = DatastashClient(SQLiteDocumentStore("stash.db"))
    client.enqueue()

    for run in client.list_runs(limit=5):
        print(run.id, run.state, run.records_added, run.records_removed)
"""

from datastash.client import DatastashClient
from datastash.config import StashConfig
from datastash.errors import (
    StashError,
    NotFound,
    Conflict,
    StorageUnavailable,
    ResultParseError,
    ScheduleInvalid,
    RecipeInvalid,
    NotificationDeliveryError,
    SetupFailed,
)
from datastash.models import Recipe, Trigger, Run, CommandResult, LogEntry, Diff
from datastash.store import DocumentStore, MemoryDocumentStore, SQLiteDocumentStore

__version__ = "0.1.0"

__all__ = [
    "DatastashClient",
    "StashConfig",
    "StashError",
    "NotFound",
    "Conflict",
    "StorageUnavailable",
    "ResultParseError",
    "ScheduleInvalid",
    "RecipeInvalid",
    "NotificationDeliveryError",
    "SetupFailed",
    "Recipe",
    "Trigger",
    "Run",
    "CommandResult",
    "LogEntry",
    "Diff",
    "DocumentStore",
    "MemoryDocumentStore",
    "SQLiteDocumentStore",
]
