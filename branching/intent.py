"""Single-slot pending branch marker."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PendingBranch:
    origin_node_id: str
    label: str


class BranchIntentTracker:
    """
    Records that the next folded message should attach to ``origin_node_id``.

    The slot is never queued: marking twice before the next fold keeps only
    the second intent.
    """

    def __init__(self) -> None:
        self._slot: Optional[PendingBranch] = None

    def mark_branch(self, origin_node_id: str, label: str) -> PendingBranch:
        self._slot = PendingBranch(origin_node_id=origin_node_id, label=label)
        return self._slot

    def take_branch(self) -> Optional[PendingBranch]:
        slot, self._slot = self._slot, None
        return slot

    def peek(self) -> Optional[PendingBranch]:
        return self._slot

    def clear(self) -> None:
        self._slot = None
