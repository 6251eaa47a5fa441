"""Per-workspace storage metering with a hard cap.

``storage_used_bytes`` is an incrementally maintained counter. Increments go
through a single conditional UPDATE so concurrent uploads serialize on the
workspace row; ``reconcile`` re-derives the true value from the files table.
"""
from dataclasses import dataclass
from datetime import datetime
import logging
import uuid
from typing import Optional
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from foldly.config import settings
from foldly.core.errors import NotFound, QuotaExceeded
from foldly.models.file import File
from foldly.models.link import Link
from foldly.models.workspace import Workspace

logger = logging.getLogger(__name__)

PLAN_STORAGE_LIMITS = {
    "free": lambda: settings.FREE_STORAGE_BYTES,
    "pro": lambda: settings.PRO_STORAGE_BYTES,
    "business": lambda: settings.BUSINESS_STORAGE_BYTES,
}

PLAN_FILE_LIMITS = {
    "free": lambda: settings.FREE_MAX_FILE_BYTES,
    "pro": lambda: settings.PRO_MAX_FILE_BYTES,
    "business": lambda: settings.BUSINESS_MAX_FILE_BYTES,
}


def storage_limit_for_plan(plan: Optional[str]) -> int:
    return PLAN_STORAGE_LIMITS.get(plan or "free", PLAN_STORAGE_LIMITS["free"])()


def max_file_bytes(plan: Optional[str]) -> int:
    return PLAN_FILE_LIMITS.get(plan or "free", PLAN_FILE_LIMITS["free"])()


def warning_level(used: int, limit: int) -> Optional[str]:
    """Advisory only; never blocks."""
    if limit <= 0:
        return "critical"
    if used * 100 >= settings.QUOTA_CRITICAL_PERCENT * limit:
        return "critical"
    if used * 100 >= settings.QUOTA_WARNING_PERCENT * limit:
        return "warning"
    return None


@dataclass
class QuotaCheck:
    allowed: bool
    used_bytes: int
    limit_bytes: int
    projected_bytes: int
    warning: Optional[str] = None

    @property
    def available_bytes(self) -> int:
        return max(self.limit_bytes - self.used_bytes, 0)

    @property
    def usage_percent(self) -> float:
        if self.limit_bytes <= 0:
            return 100.0
        return round(self.used_bytes * 100 / self.limit_bytes, 2)

    def as_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "used_bytes": self.used_bytes,
            "limit_bytes": self.limit_bytes,
            "projected_bytes": self.projected_bytes,
            "available_bytes": self.available_bytes,
            "usage_percent": self.usage_percent,
            "warning": self.warning,
        }


class QuotaAccountant:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _counters(self, workspace_id: uuid.UUID) -> tuple[int, int]:
        # Column select bypasses the identity map so the values are current
        result = await self.db.execute(
            select(Workspace.storage_used_bytes, Workspace.storage_limit_bytes)
            .where(Workspace.id == workspace_id)
        )
        row = result.first()
        if row is None:
            raise NotFound("Workspace not found", {"workspace_id": str(workspace_id)})
        return row.storage_used_bytes or 0, row.storage_limit_bytes

    async def check_quota(self, workspace_id: uuid.UUID, incoming_bytes: int) -> QuotaCheck:
        used, limit = await self._counters(workspace_id)
        projected = used + incoming_bytes
        allowed = used < limit and projected <= limit
        return QuotaCheck(allowed, used, limit, projected, warning_level(projected if allowed else used, limit))

    async def reserve(self, workspace_id: uuid.UUID, nbytes: int) -> QuotaCheck:
        """Atomically add ``nbytes`` if it fits, else raise QuotaExceeded.

        Runs in the caller's transaction; a rollback releases the reservation.
        """
        result = await self.db.execute(
            update(Workspace)
            .where(
                Workspace.id == workspace_id,
                Workspace.storage_used_bytes < Workspace.storage_limit_bytes,
                Workspace.storage_used_bytes + nbytes <= Workspace.storage_limit_bytes,
            )
            .values(storage_used_bytes=Workspace.storage_used_bytes + nbytes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            check = await self.check_quota(workspace_id, nbytes)
            logger.info(
                f"Quota exceeded for workspace {workspace_id}: "
                f"{check.used_bytes}+{nbytes} > {check.limit_bytes}"
            )
            raise QuotaExceeded("Storage quota exceeded", check.as_dict())

        used, limit = await self._counters(workspace_id)
        return QuotaCheck(True, used - nbytes, limit, used, warning_level(used, limit))

    async def apply_delta(self, workspace_id: uuid.UUID, delta_bytes: int):
        """Adjust the counter by a signed delta, never going below zero."""
        if delta_bytes == 0:
            return
        new_value = Workspace.storage_used_bytes + delta_bytes
        await self.db.execute(
            update(Workspace)
            .where(Workspace.id == workspace_id)
            .values(storage_used_bytes=case((new_value < 0, 0), else_=new_value))
            .execution_options(synchronize_session=False)
        )

    async def reconcile(self, workspace_id: uuid.UUID) -> tuple[int, int]:
        """Recompute usage from file rows. Returns (previous, actual)."""
        previous, _ = await self._counters(workspace_id)
        result = await self.db.execute(
            select(func.coalesce(func.sum(File.size_bytes), 0)).where(File.workspace_id == workspace_id)
        )
        actual = int(result.scalar_one())
        if actual != previous:
            await self.db.execute(
                update(Workspace)
                .where(Workspace.id == workspace_id)
                .values(storage_used_bytes=actual)
                .execution_options(synchronize_session=False)
            )
            logger.warning(f"Storage drift for workspace {workspace_id}: counter {previous}, files {actual}")
        await self.db.commit()
        return previous, actual

    async def usage_summary(self, workspace_id: uuid.UUID) -> dict:
        used, limit = await self._counters(workspace_id)
        check = QuotaCheck(used < limit, used, limit, used, warning_level(used, limit))
        summary = check.as_dict()
        summary["used_gb"] = round(used / (1024 ** 3), 2)
        summary["limit_gb"] = round(limit / (1024 ** 3), 2)
        return summary

    # ------------------------------------------------------------------
    # Per-link counters
    # ------------------------------------------------------------------

    async def reserve_link_slot(self, link_id: uuid.UUID, nbytes: int, enforce_cap: bool = True):
        """Count one upload against a link, honouring ``max_files`` when asked.

        Same conditional UPDATE as ``reserve``; runs in the caller's
        transaction so a failed upload gives the slot back on rollback.
        """
        query = update(Link).where(Link.id == link_id)
        if enforce_cap:
            query = query.where(or_(Link.max_files.is_(None), Link.total_files < Link.max_files))
        result = await self.db.execute(
            query.values(
                total_uploads=Link.total_uploads + 1,
                total_files=Link.total_files + 1,
                total_size_bytes=Link.total_size_bytes + nbytes,
                last_upload_at=datetime.utcnow(),
            ).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            counts = await self.db.execute(
                select(Link.total_files, Link.max_files).where(Link.id == link_id)
            )
            row = counts.first()
            logger.info(f"File limit reached on link {link_id}")
            raise QuotaExceeded(
                "This link has reached its file limit",
                {"link_id": str(link_id), "total_files": row.total_files if row else None,
                 "max_files": row.max_files if row else None},
            )

    async def release_link_usage(self, files: list[File]):
        """Take deleted files off their links' live counters."""
        per_link: dict[uuid.UUID, list[int]] = {}
        for f in files:
            if f.link_id is not None:
                count_size = per_link.setdefault(f.link_id, [0, 0])
                count_size[0] += 1
                count_size[1] += f.size_bytes
        for link_id, (count, size) in per_link.items():
            new_files = Link.total_files - count
            new_size = Link.total_size_bytes - size
            await self.db.execute(
                update(Link)
                .where(Link.id == link_id)
                .values(
                    total_files=case((new_files < 0, 0), else_=new_files),
                    total_size_bytes=case((new_size < 0, 0), else_=new_size),
                )
                .execution_options(synchronize_session=False)
            )
