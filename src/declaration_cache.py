"""
Declaration Cache - Last successfully applied desired state.

The cache lives in the status block and is only written by the reconciler
after a pass completes without error. Diffing the desired spec against it
yields the incremental changes convergence has to make.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from status import StatusTracker


@dataclass
class SpecDiff:
    """Item-level difference between two specs."""

    added: Dict[str, Any] = field(default_factory=dict)
    changed: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)
    removed: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.changed or self.removed)

    def summary(self) -> str:
        return (
            f"{len(self.added)} to create, {len(self.changed)} to update, "
            f"{len(self.removed)} to delete"
        )


def diff_specs(
    previous: Optional[Dict[str, Any]], desired: Dict[str, Any]
) -> SpecDiff:
    """
    Compare two specs item by item.

    Top-level keys name managed items. With no previous spec every desired
    item is treated as added.
    """
    previous = previous or {}
    result = SpecDiff()

    for key in sorted(desired):
        if key not in previous:
            result.added[key] = copy.deepcopy(desired[key])
        elif previous[key] != desired[key]:
            result.changed[key] = (
                copy.deepcopy(previous[key]),
                copy.deepcopy(desired[key]),
            )

    for key in sorted(previous):
        if key not in desired:
            result.removed[key] = copy.deepcopy(previous[key])

    return result


class DeclarationCache:
    """Read/write access to the last-applied spec of the resource in a pass."""

    def __init__(self, tracker: StatusTracker):
        self._tracker = tracker

    def get(self) -> Optional[Dict[str, Any]]:
        if not self._tracker.supported:
            return None
        return copy.deepcopy(self._tracker.status.last_applied_spec)

    def set(self, snapshot: Dict[str, Any], timestamp: datetime) -> None:
        if not self._tracker.supported:
            return
        self._tracker.status.last_applied_spec = copy.deepcopy(snapshot)
        self._tracker.status.last_applied_time = timestamp

    def diff(self, desired: Dict[str, Any]) -> SpecDiff:
        return diff_specs(self.get(), desired)

    def unchanged(self, desired: Dict[str, Any]) -> bool:
        """True if the desired spec is exactly what was last applied."""
        cached = self.get()
        return cached is not None and cached == desired
