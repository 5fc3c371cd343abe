"""Services package exports."""

from authledger.services.audit_log_service import AuditLogService
from authledger.services.audit_recorder import AuditDispatcher, AuditRecorder
from authledger.services.auth_service import AuthService
from authledger.services.logging_service import configure_logging, get_logger

__all__ = [
    "AuditDispatcher",
    "AuditLogService",
    "AuditRecorder",
    "AuthService",
    "configure_logging",
    "get_logger",
]
