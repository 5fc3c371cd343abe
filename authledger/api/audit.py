"""Audit trail query, statistics and export endpoints."""

from datetime import datetime, timezone
from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response

from authledger.api.dependencies import get_audit_log_service, get_current_user, require_admin
from authledger.errors import ForbiddenError, ValidationError
from authledger.models.audit import (
    AuditAction,
    AuditExport,
    AuditLogDetail,
    AuditLogPage,
    AuditLogQuery,
    AuditStats,
    EntityAuditLogs,
    Pagination,
    StatsPeriod,
    UserActivity,
)
from authledger.models.common import ApiResponse
from authledger.models.user import User
from authledger.services.audit_log_service import AuditLogService, to_csv

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/audit", tags=["Audit"])

MAX_PAGE_SIZE = 100


def _page_bounds(page: int, limit: int) -> tuple[int, int]:
    return max(1, page), min(MAX_PAGE_SIZE, max(1, limit))


def _parse_action(action: Optional[str]) -> Optional[AuditAction]:
    if not action:
        return None
    try:
        return AuditAction(action.upper())
    except ValueError:
        raise ValidationError(
            f"Invalid action: {action}",
            {"errors": [{"field": "action", "message": "Must be one of CREATE, READ, UPDATE, DELETE"}]},
        )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _build_query(
    action: Optional[str] = None,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> AuditLogQuery:
    return AuditLogQuery(
        action=_parse_action(action),
        entity=entity or None,
        entity_id=entity_id or None,
        user_id=user_id or None,
        start_date=_as_utc(start_date),
        end_date=_as_utc(end_date),
    )


def _export_filename(extension: str) -> str:
    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"audit-logs-{stamp}.{extension}"


@router.get("/logs", response_model=ApiResponse[AuditLogPage])
async def list_audit_logs(
    page: int = Query(1),
    limit: int = Query(20),
    action: Optional[str] = Query(None),
    entity: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None, alias="entityId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    current_user: User = Depends(get_current_user),
    audit: AuditLogService = Depends(get_audit_log_service),
) -> ApiResponse[AuditLogPage]:
    """Filtered, paginated audit listing.

    Non-admin callers only ever see their own entries, whatever ``userId`` they pass.
    """
    page, limit = _page_bounds(page, limit)
    if not current_user.is_admin:
        user_id = current_user.id
    query = _build_query(action, entity, entity_id, user_id, start_date, end_date)

    entries, total = await audit.search(query, page=page, limit=limit)
    return ApiResponse(
        data=AuditLogPage(
            audit_logs=entries,
            pagination=Pagination.build(page, limit, total),
        )
    )


@router.get("/entity/{entity}/{entity_id}", response_model=ApiResponse[EntityAuditLogs])
async def entity_audit_logs(
    entity: str,
    entity_id: str,
    page: int = Query(1),
    limit: int = Query(20),
    action: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    current_user: User = Depends(get_current_user),
    audit: AuditLogService = Depends(get_audit_log_service),
) -> ApiResponse[EntityAuditLogs]:
    """History of one entity.

    Raises:
        ForbiddenError 403: Non-admin asking for another user's record
    """
    page, limit = _page_bounds(page, limit)
    filters = _build_query(action=action, start_date=start_date, end_date=end_date)

    if not current_user.is_admin:
        if entity == "User" and entity_id != current_user.id:
            raise ForbiddenError("Access denied. You can only view your own audit logs.")
        filters = filters.model_copy(update={"user_id": current_user.id})

    entries = await audit.query_by_entity(entity, entity_id, filters, page=page, limit=limit)
    return ApiResponse(
        data=EntityAuditLogs(entity=entity, entity_id=entity_id, audit_logs=entries)
    )


@router.get("/user/{user_id}/activity", response_model=ApiResponse[UserActivity])
async def user_activity(
    user_id: str,
    page: int = Query(1),
    limit: int = Query(20),
    action: Optional[str] = Query(None),
    entity: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    current_user: User = Depends(get_current_user),
    audit: AuditLogService = Depends(get_audit_log_service),
) -> ApiResponse[UserActivity]:
    """Everything one user did.

    Raises:
        ForbiddenError 403: Non-admin asking for someone else's activity
    """
    if not current_user.is_admin and user_id != current_user.id:
        raise ForbiddenError("Access denied. You can only view your own activity.")

    page, limit = _page_bounds(page, limit)
    filters = _build_query(action=action, entity=entity, start_date=start_date, end_date=end_date)
    entries = await audit.query_by_user(user_id, filters, page=page, limit=limit)
    return ApiResponse(data=UserActivity(user_id=user_id, activity_logs=entries))


@router.get("/stats", response_model=ApiResponse[AuditStats])
async def audit_stats(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    user_id: Optional[str] = Query(None, alias="userId"),
    entity: Optional[str] = Query(None),
    admin: User = Depends(require_admin),
    audit: AuditLogService = Depends(get_audit_log_service),
) -> ApiResponse[AuditStats]:
    """Counts grouped by entity and action (admin only)."""
    try:
        query = AuditLogQuery(
            entity=entity or None,
            user_id=user_id or None,
            start_date=start_date or None,
            end_date=end_date or None,
        )
    except ValueError:
        raise ValidationError("Invalid date range")
    query = query.model_copy(
        update={"start_date": _as_utc(query.start_date), "end_date": _as_utc(query.end_date)}
    )

    stats = await audit.aggregate_stats(query)
    return ApiResponse(
        data=AuditStats(
            statistics=stats,
            period=StatsPeriod(
                start_date=start_date or "All time",
                end_date=end_date or "Present",
            ),
        )
    )


@router.get("/log/{log_id}", response_model=ApiResponse[AuditLogDetail])
async def get_audit_log(
    log_id: str,
    admin: User = Depends(require_admin),
    audit: AuditLogService = Depends(get_audit_log_service),
) -> ApiResponse[AuditLogDetail]:
    """Single entry with its actor (admin only).

    Raises:
        NotFoundError 404: If the entry does not exist
    """
    view = await audit.get(log_id)
    return ApiResponse(data=AuditLogDetail(audit_log=view))


@router.get("/export")
async def export_audit_logs(
    format: Literal["json", "csv"] = Query("json"),
    action: Optional[str] = Query(None),
    entity: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    admin: User = Depends(require_admin),
    audit: AuditLogService = Depends(get_audit_log_service),
) -> Response:
    """Bulk export as a JSON or CSV attachment (admin only), newest first and capped."""
    query = _build_query(action, entity, None, user_id, start_date, end_date)
    views = await audit.export(query)
    logger.info("audit_log_export", admin_id=admin.id, format=format, records=len(views))

    if format == "csv":
        return Response(
            content=to_csv(views),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{_export_filename("csv")}"'},
        )

    payload = ApiResponse[AuditExport](
        data=AuditExport(
            audit_logs=views,
            export_date=datetime.now(timezone.utc),
            total_records=len(views),
        )
    )
    return JSONResponse(
        content=payload.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers={"Content-Disposition": f'attachment; filename="{_export_filename("json")}"'},
    )
