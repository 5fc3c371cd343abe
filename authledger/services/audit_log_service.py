"""Audit log store: append-only persistence and the read/aggregate surface."""

import csv
import io
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from authledger.config import Settings
from authledger.errors import NotFoundError
from authledger.models.audit import (
    AuditActor,
    AuditLogEntry,
    AuditLogQuery,
    AuditLogView,
    EntityStats,
)
from authledger.repositories.base import AuditLogRepository, UserRepository

logger = structlog.get_logger(__name__)

CSV_HEADERS = [
    "ID",
    "User ID",
    "User Name",
    "User Email",
    "Action",
    "Entity",
    "Entity ID",
    "Timestamp",
    "Description",
    "IP Address",
    "User Agent",
    "Route",
    "Method",
    "Status Code",
]


class AuditLogService:
    """Persist and query immutable audit entries.

    ``append`` and ``cleanup`` never raise: failures are logged and reported
    as ``None`` / ``0``. Query methods propagate storage errors.
    """

    def __init__(
        self,
        settings: Settings,
        repository: AuditLogRepository,
        users: UserRepository,
    ):
        self.settings = settings
        self.repository = repository
        self.users = users

    async def append(self, entry: AuditLogEntry) -> Optional[AuditLogEntry]:
        """Persist one entry.

        Returns:
            The stored entry, or None if the write failed
        """
        try:
            return await self.repository.insert(entry)
        except Exception as e:
            logger.error(
                "audit_log_write_failed",
                audit_id=entry.id,
                action=entry.action.value,
                entity=entry.entity,
                error=str(e),
            )
            return None

    async def search(
        self, query: AuditLogQuery, page: int = 1, limit: int = 20
    ) -> tuple[list[AuditLogEntry], int]:
        """Filtered, paginated listing, newest first.

        Returns:
            Tuple of (entries for the page, total matching count)
        """
        entries = await self.repository.find(query, skip=(page - 1) * limit, limit=limit)
        total = await self.repository.count(query)
        return entries, total

    async def query_by_entity(
        self,
        entity: str,
        entity_id: str,
        filters: Optional[AuditLogQuery] = None,
        page: int = 1,
        limit: int = 20,
    ) -> list[AuditLogEntry]:
        """History of one entity, newest first."""
        filters = filters or AuditLogQuery()
        query = filters.model_copy(update={"entity": entity, "entity_id": entity_id})
        return await self.repository.find(query, skip=(page - 1) * limit, limit=limit)

    async def query_by_user(
        self,
        user_id: str,
        filters: Optional[AuditLogQuery] = None,
        page: int = 1,
        limit: int = 20,
    ) -> list[AuditLogEntry]:
        """Everything one actor did, newest first."""
        filters = filters or AuditLogQuery()
        query = filters.model_copy(update={"user_id": user_id})
        return await self.repository.find(query, skip=(page - 1) * limit, limit=limit)

    async def aggregate_stats(self, filters: Optional[AuditLogQuery] = None) -> list[EntityStats]:
        """Counts grouped by entity then action, sorted by entity total descending."""
        return await self.repository.aggregate_stats(filters or AuditLogQuery())

    async def get(self, log_id: str) -> AuditLogView:
        """Fetch one entry with its actor.

        Raises:
            NotFoundError: If no entry has this id
        """
        entry = await self.repository.get(log_id)
        if entry is None:
            raise NotFoundError("Audit log not found")
        views = await self._with_actors([entry])
        return views[0]

    async def export(self, filters: Optional[AuditLogQuery] = None) -> list[AuditLogView]:
        """Newest-first bulk read, capped at ``audit_export_limit`` records."""
        entries = await self.repository.find(
            filters or AuditLogQuery(), skip=0, limit=self.settings.audit_export_limit
        )
        return await self._with_actors(entries[: self.settings.audit_export_limit])

    async def cleanup(self, days_old: Optional[int] = None) -> int:
        """Delete entries older than the retention horizon.

        Returns:
            Number of deleted entries (0 on failure)
        """
        days_old = days_old if days_old is not None else self.settings.audit_retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_old)
        try:
            deleted = await self.repository.delete_older_than(cutoff)
        except Exception as e:
            logger.error("audit_log_cleanup_failed", cutoff=cutoff.isoformat(), error=str(e))
            return 0
        logger.info("audit_log_cleanup_completed", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted

    async def _with_actors(self, entries: list[AuditLogEntry]) -> list[AuditLogView]:
        actors = await self.users.get_many(sorted({e.user_id for e in entries}))
        views = []
        for entry in entries:
            actor = actors.get(entry.user_id)
            views.append(
                AuditLogView(
                    **entry.model_dump(),
                    user=AuditActor(
                        id=entry.user_id,
                        name=actor.name if actor else None,
                        email=actor.email if actor else None,
                    ),
                )
            )
        return views


def to_csv(views: list[AuditLogView]) -> str:
    """Render exported entries as CSV with a header row."""
    if not views:
        return "No data available"

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for view in views:
        meta = view.metadata
        writer.writerow(
            [
                view.id,
                view.user_id,
                view.user.name if view.user and view.user.name else "",
                view.user.email if view.user and view.user.email else "",
                view.action.value,
                view.entity,
                view.entity_id,
                view.timestamp.isoformat(),
                view.description,
                meta.ip or "",
                meta.user_agent or "",
                meta.route or "",
                meta.method or "",
                meta.status_code if meta.status_code is not None else "",
            ]
        )
    return buffer.getvalue().rstrip("\n")
