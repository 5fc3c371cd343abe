"""Models package exports."""

from authledger.models.audit import (
    AuditAction,
    AuditChanges,
    AuditLogEntry,
    AuditLogQuery,
    RequestMetadata,
)
from authledger.models.common import ApiResponse
from authledger.models.user import ExternalIdentity, User, UserRole, UserSummary

__all__ = [
    "ApiResponse",
    "AuditAction",
    "AuditChanges",
    "AuditLogEntry",
    "AuditLogQuery",
    "ExternalIdentity",
    "RequestMetadata",
    "User",
    "UserRole",
    "UserSummary",
]
