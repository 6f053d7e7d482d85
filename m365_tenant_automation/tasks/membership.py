"""
Pure set reconciliation for group membership.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class MembershipPlan:
    """Membership changes that turn `current` into `target`."""
    to_add: tuple[str, ...]
    to_remove: tuple[str, ...]

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def plan_membership(current: Iterable[str], target: Iterable[str]) -> MembershipPlan:
    """
    Diff current group members against the target set.
    Ids are returned sorted so runs touch members in a stable order.
    """
    current_ids = set(current)
    target_ids = set(target)
    return MembershipPlan(
        to_add=tuple(sorted(target_ids - current_ids)),
        to_remove=tuple(sorted(current_ids - target_ids)),
    )
