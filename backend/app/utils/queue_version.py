"""
Queue version tokens and rotation metrics.

A version token is a SHA-256 over the canonical (queue_id, position,
requestor, mature) tuples of the live queue in play order. The token for a
proposed arrangement is computed from the same tuples, so once a plan is
applied the live queue hashes to the plan's proposed version.
"""

import hashlib
import json
from collections import Counter
from typing import Iterable, List, Optional, Sequence, Tuple

# (queue_id, position, requestor, is_mature)
VersionRow = Tuple[int, int, str, bool]


def compute_queue_version(rows: Iterable[VersionRow]) -> str:
    """Canonical version token; rows are sorted by (position, queue_id)."""
    ordered = sorted(rows, key=lambda r: (r[1], r[0]))
    payload = json.dumps(
        [[queue_id, position, requestor, bool(is_mature)] for queue_id, position, requestor, is_mature in ordered],
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def fairness_metric(requestors: Sequence[Optional[str]]) -> float:
    """Rotation fairness of a play order, in [0, 1], rounded to 4 places.

    Each entry is tagged with its turn number (1 for a singer's first entry,
    2 for the second...). A pair where a later turn plays before an earlier
    turn of another singer is an inversion; the score is
    1 - inversions / pairs, so a strict round-robin order scores 1.0.
    """
    seen: Counter = Counter()
    turns: List[int] = []
    for name in requestors:
        key = name.strip().casefold() if name and name.strip() else None
        if key is None:
            continue
        seen[key] += 1
        turns.append(seen[key])

    pairs = len(turns) * (len(turns) - 1) // 2
    if pairs == 0:
        return 1.0

    inversions = sum(
        1
        for i in range(len(turns))
        for j in range(i + 1, len(turns))
        if turns[i] > turns[j]
    )
    return round(1.0 - inversions / pairs, 4)


def has_adjacent_repeat(requestors: Sequence[Optional[str]]) -> bool:
    """True when two neighbouring entries belong to the same singer."""
    for previous, current in zip(requestors, requestors[1:]):
        if current and current.strip() and previous and (
            current.strip().casefold() == previous.strip().casefold()
        ):
            return True
    return False
