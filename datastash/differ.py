"""
Row-level differences between two snapshots.

Rows are compared by content over all columns; row position is ignored.
Duplicate rows are matched one for one, so a snapshot going from two
identical rows to three reports one row added.
"""

import json
from collections import defaultdict
from typing import Any, Dict, List, Optional

from datastash.models import Diff

Row = Dict[str, Any]


def _row_key(row: Row) -> str:
    # canonical text; equal keys mean equal rows, and the dict lookup
    # still compares keys in full on a hash collision
    return json.dumps(row, sort_keys=True, default=str)


def _unmatched(rows: List[Row], others: List[Row]) -> List[Row]:
    """Rows with no counterpart left in others, in order of first occurrence."""
    available = defaultdict(int)
    for row in others:
        available[_row_key(row)] += 1

    unmatched = []
    for row in rows:
        key = _row_key(row)
        if available[key] > 0:
            available[key] -= 1
        else:
            unmatched.append(row)
    return unmatched


def diff(current: List[Row], previous: Optional[List[Row]]) -> Diff:
    """
    Compute rows added and removed since the previous snapshot.

    Args:
        current: Rows of the newer snapshot
        previous: Rows of the older snapshot, or None for a first snapshot

    Returns:
        Diff; empty when there is no previous snapshot
    """
    if previous is None:
        return Diff()
    return Diff(
        added=_unmatched(current, previous),
        removed=_unmatched(previous, current)
    )
