"""
Parsing, storage and export of run results.

A snapshot is the table a successful run leaves behind: an ordered list
of rows, each a mapping of column name to value.
"""

import csv
import io
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from datastash.errors import NotFound, ResultParseError
from datastash.store import ChildCollection, DocumentStore

logger = logging.getLogger(__name__)

SNAPSHOT_TYPE = 'data'

Row = Dict[str, Any]


def parse_result(path: Path) -> List[Row]:
    """
    Read a run's result file into rows.

    JSON files must hold a list of objects; anything else is read as CSV
    with a header row.

    Raises:
        ResultParseError: If the file is missing or malformed
    """
    path = Path(path)
    try:
        text = path.read_text(encoding='utf-8')
    except FileNotFoundError as e:
        raise ResultParseError(f"Result file not found: {path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ResultParseError(f"Cannot read result file {path}: {e}") from e

    if path.suffix.lower() == '.json':
        try:
            rows = json.loads(text)
        except json.JSONDecodeError as e:
            raise ResultParseError(f"Invalid JSON in {path}: {e}") from e
        if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
            raise ResultParseError(f"{path} must contain a list of objects")
        return rows

    try:
        reader = csv.DictReader(io.StringIO(text, newline=''), strict=True)
        if text.strip() and not reader.fieldnames:
            raise ResultParseError(f"{path} has no header row")
        rows = []
        for row in reader:
            if None in row:
                raise ResultParseError(f"{path} line {reader.line_num} has more fields than the header")
            rows.append(dict(row))
    except csv.Error as e:
        raise ResultParseError(f"Invalid CSV in {path}: {e}") from e
    return rows


def rows_to_csv(rows: List[Row]) -> str:
    """Render rows as CSV; columns in first-seen order across all rows."""
    columns: List[str] = []
    for row in rows:
        for column in row:
            if column not in columns:
                columns.append(column)

    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=columns, restval='', lineterminator='\n')
    writer.writeheader()
    writer.writerows(rows)
    return output.getvalue()


class SnapshotRepository:
    """Snapshots of successful runs, keyed by run id."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def _rows(self, run_id: str) -> ChildCollection:
        return ChildCollection(self.store, SNAPSHOT_TYPE, run_id)

    def save(self, run_id: str, rows: List[Row]):
        """Store rows as the snapshot of run_id."""
        columns = list(rows[0].keys()) if rows else []
        self._rows(run_id).replace(rows)
        self.store.put(SNAPSHOT_TYPE, run_id, {'count': len(rows), 'columns': columns})
        logger.debug(f"Saved snapshot {run_id} ({len(rows)} rows)")

    def load(self, run_id: str) -> List[Row]:
        """
        Rows of a snapshot.

        Raises:
            NotFound: If run_id has no snapshot
        """
        self.store.get(SNAPSHOT_TYPE, run_id)
        return self._rows(run_id).items()

    def ids(self) -> List[str]:
        """Snapshot ids, newest first."""
        return [doc['id'] for doc in self.store.list_by_type(SNAPSHOT_TYPE)]

    def previous(self, run_id: str) -> Optional[List[Row]]:
        """
        Rows of the snapshot taken immediately before run_id.

        Returns:
            Rows, or None when run_id holds the oldest snapshot

        Raises:
            NotFound: If run_id has no snapshot
        """
        ids = self.ids()
        if run_id not in ids:
            raise NotFound(SNAPSHOT_TYPE, run_id)
        index = ids.index(run_id)
        if index == len(ids) - 1:
            return None
        return self.load(ids[index + 1])

    def delete(self, run_id: str):
        """Delete a snapshot and its rows."""
        self.store.delete(SNAPSHOT_TYPE, run_id)
        self._rows(run_id).clear()
