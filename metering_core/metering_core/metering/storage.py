"""Storage snapshots and the time-weighted storage average."""

from __future__ import annotations

import logging
import math
from collections.abc import Container, Iterable
from datetime import UTC, date, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from metering_core.context import Action, RequestContext
from metering_core.errors import ValidationError
from metering_core.models.usage import StorageDailySnapshot
from metering_core.state.repository import StorageSnapshotRepository

logger = logging.getLogger(__name__)


def time_weighted_average(
    snapshots: Iterable[StorageDailySnapshot],
    window_start: date,
    window_end: date,
    billed_days: Container[date] | None = None,
) -> float:
    """Average storage in GB per day over ``[window_start, window_end)``.

    Each project's level on a given day is its most recent snapshot on or
    before that day, so a reading carries forward until the next one.
    Project levels are summed per day, and the daily totals are averaged
    over every day of the window.  Days before a project's first snapshot
    count as zero for that project.  An empty window averages to ``0.0``.

    With *billed_days*, only those days contribute to the sum while the
    divisor stays the full window, so averages over disjoint day sets add
    up to the whole-window average.
    """
    days = (window_end - window_start).days
    if days <= 0:
        return 0.0

    ordered = sorted(snapshots, key=lambda s: (s.snapshot_date, s.project_id or ""))
    levels: dict[str, float] = {}
    daily_totals: list[float] = []
    idx = 0
    day = window_start
    while day < window_end:
        while idx < len(ordered) and ordered[idx].snapshot_date <= day:
            levels[ordered[idx].project_id or ""] = ordered[idx].storage_gb
            idx += 1
        if billed_days is None or day in billed_days:
            daily_totals.append(math.fsum(levels[k] for k in sorted(levels)))
        day += timedelta(days=1)

    return math.fsum(daily_totals) / days


class StorageSnapshotRecorder:
    """Records daily storage readings reported by the storage service."""

    def __init__(self, session: AsyncSession) -> None:
        self._snapshots = StorageSnapshotRepository(session)

    async def record_storage_snapshot(
        self,
        ctx: RequestContext,
        workspace_id: str,
        storage_gb: float,
        snapshot_date: date | None = None,
        project_id: str | None = None,
    ) -> StorageDailySnapshot:
        """Record storage held on *snapshot_date* (today, UTC, by default).

        A second reading for the same workspace, project and day replaces
        the first.
        """
        if not workspace_id:
            raise ValidationError("workspace_id is required")
        if not math.isfinite(storage_gb) or storage_gb < 0:
            raise ValidationError(f"storage_gb must be a non-negative number, got {storage_gb}")
        await ctx.authorize(workspace_id, Action.RECORD_STORAGE)

        now = datetime.now(UTC)
        day = snapshot_date or now.date()
        await self._snapshots.upsert(
            workspace_id=workspace_id,
            snapshot_date=day,
            storage_gb=float(storage_gb),
            project_id=project_id,
            recorded_at=now,
        )
        logger.info(
            "Recorded storage snapshot workspace=%s project=%s date=%s gb=%s",
            workspace_id,
            project_id or "-",
            day.isoformat(),
            storage_gb,
        )
        return StorageDailySnapshot(
            workspace_id=workspace_id,
            project_id=project_id,
            storage_gb=float(storage_gb),
            snapshot_date=day,
            recorded_at=now,
        )

    async def snapshots_for_window(self, workspace_id: str, start: date, end: date) -> list[StorageDailySnapshot]:
        rows = await self._snapshots.list_for_window(workspace_id, start, end)
        return [StorageDailySnapshot.from_row(r) for r in rows]
