"""Audit trail models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import ConfigDict, Field

from authledger.models.common import CamelModel


class AuditAction(str, Enum):
    """Kinds of action recorded in the audit trail."""

    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuditChanges(CamelModel):
    """Before/after snapshot of the audited entity. Either side may be null."""

    model_config = ConfigDict(frozen=True)

    before: Optional[Any] = None
    after: Optional[Any] = None


class RequestMetadata(CamelModel):
    """Request context attached to an audit entry."""

    model_config = ConfigDict(frozen=True)

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    route: Optional[str] = None
    method: Optional[str] = None
    status_code: Optional[int] = None
    request_id: Optional[str] = None


class AuditLogEntry(CamelModel):
    """One immutable fact about an action taken against an entity."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    action: AuditAction
    entity: str
    entity_id: str
    changes: AuditChanges = Field(default_factory=AuditChanges)
    metadata: RequestMetadata = Field(default_factory=RequestMetadata)
    timestamp: datetime
    description: str = ""


class AuditActor(CamelModel):
    """Actor details joined onto an entry for admin views and exports."""

    id: str
    name: Optional[str] = None
    email: Optional[str] = None


class AuditLogView(AuditLogEntry):
    user: Optional[AuditActor] = None


class AuditLogQuery(CamelModel):
    """Filters shared by audit listing, stats and export.

    Attributes:
        action: Exact action match
        entity: Exact entity type match
        entity_id: Exact entity id match
        user_id: Actor id
        start_date: Inclusive lower bound on timestamp
        end_date: Inclusive upper bound on timestamp
    """

    action: Optional[AuditAction] = None
    entity: Optional[str] = None
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ActionStat(CamelModel):
    action: AuditAction
    count: int
    last_activity: datetime


class EntityStats(CamelModel):
    """Per-entity counts, grouped by action."""

    entity: str
    actions: list[ActionStat]
    total_count: int


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = (total + limit - 1) // limit if limit else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total_items=total,
            items_per_page=limit,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )


class AuditLogPage(CamelModel):
    audit_logs: list[AuditLogEntry]
    pagination: Pagination


class EntityAuditLogs(CamelModel):
    entity: str
    entity_id: str
    audit_logs: list[AuditLogEntry]


class UserActivity(CamelModel):
    user_id: str
    activity_logs: list[AuditLogEntry]


class StatsPeriod(CamelModel):
    start_date: str
    end_date: str


class AuditStats(CamelModel):
    statistics: list[EntityStats]
    period: StatsPeriod


class AuditLogDetail(CamelModel):
    audit_log: AuditLogView


class AuditExport(CamelModel):
    audit_logs: list[AuditLogView]
    export_date: datetime
    total_records: int
