"""Snapshot retention."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from .snapshots import SnapshotSet, SnapshotStore

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RetentionPlan:
    """Which snapshots survive and which are deleted."""

    keep: list[SnapshotSet] = field(default_factory=list)
    delete: list[SnapshotSet] = field(default_factory=list)
    protected: SnapshotSet | None = None

    @property
    def delete_ids(self) -> list[str]:
        return [snapshot.id for snapshot in self.delete]


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    """Keep the newest ``keep_count`` snapshots; ``0`` keeps everything.

    A protected snapshot is taken out of consideration entirely: it does not
    use up a slot and it is never deleted.
    """

    keep_count: int

    def __post_init__(self) -> None:
        if self.keep_count < 0:
            raise ValueError("keep_count must be zero (unlimited) or positive.")

    def plan(
        self,
        ledger: Sequence[SnapshotSet],
        *,
        protected_id: str | None = None,
    ) -> RetentionPlan:
        """Decide the fate of every snapshot in *ledger* without touching disk."""
        ordered = sorted(ledger, key=lambda item: (item.created_at, item.id), reverse=True)
        protected = None
        candidates: list[SnapshotSet] = []
        for snapshot in ordered:
            if protected_id is not None and snapshot.id == protected_id:
                protected = snapshot
                continue
            candidates.append(snapshot)

        if self.keep_count == 0:
            return RetentionPlan(keep=list(ordered), delete=[], protected=protected)

        doomed = candidates[self.keep_count :]
        doomed_ids = {item.id for item in doomed}
        keep = [item for item in ordered if item.id not in doomed_ids]
        return RetentionPlan(keep=keep, delete=doomed, protected=protected)

    def enforce(
        self,
        store: SnapshotStore,
        *,
        protected_id: str | None = None,
    ) -> list[str]:
        """Delete snapshots beyond the limit and return their ids."""
        plan = self.plan(store.list_snapshots(), protected_id=protected_id)
        deleted: list[str] = []
        for snapshot in plan.delete:
            LOGGER.info("Retention: deleting snapshot %s (%s)", snapshot.id, snapshot.kind)
            store.delete(snapshot.id)
            deleted.append(snapshot.id)
        return deleted


__all__ = ["RetentionPlan", "RetentionPolicy"]
