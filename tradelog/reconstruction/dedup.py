"""Execution identity and the per-symbol duplicate guard.

Users re-upload overlapping date ranges, so the same broker fill can reach
the reconstructor more than once. A fill is identified by its broker id
when the export has one, otherwise by (side, timestamp, quantity, price, fees).
"""

from __future__ import annotations

from typing import Iterable

from ..models import ExecutionRecord, as_naive


def execution_identity(execution: ExecutionRecord) -> tuple:
    """Stable identity of a fill. Split parts share their parent's identity."""
    if execution.split_from:
        return tuple(execution.split_from)
    if execution.external_id:
        return ("id", str(execution.external_id))
    return (
        "fill",
        execution.side,
        as_naive(execution.timestamp).isoformat(),
        round(float(execution.quantity), 8),
        round(float(execution.price), 6),
        round(float(execution.total_fees), 6),
    )


class DedupGuard:
    """Set of execution identities already accounted for.

    One guard covers one symbol for one import run. It is seeded with the
    executions already stored for that symbol (the open position being
    continued and previously closed trades) and consulted before every
    execution is applied to a position.
    """

    def __init__(self, known: Iterable[ExecutionRecord] = ()) -> None:
        self._seen: set[tuple] = set()
        for execution in known:
            self.add(execution)

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, execution: ExecutionRecord) -> bool:
        return execution_identity(execution) in self._seen

    def add(self, execution: ExecutionRecord) -> None:
        self._seen.add(execution_identity(execution))

    def admit(self, execution: ExecutionRecord) -> bool:
        """Record the execution; False if it was already present."""
        identity = execution_identity(execution)
        if identity in self._seen:
            return False
        self._seen.add(identity)
        return True
