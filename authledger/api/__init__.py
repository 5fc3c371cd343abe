"""API package exports."""

from authledger.api.audit import router as audit_router
from authledger.api.auth import router as auth_router
from authledger.api.health import router as health_router
from authledger.api.middleware import AuditMiddleware, CorrelationIdMiddleware

__all__ = [
    "AuditMiddleware",
    "CorrelationIdMiddleware",
    "audit_router",
    "auth_router",
    "health_router",
]
