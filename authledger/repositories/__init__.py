"""Persistence layer: repository protocols and their implementations."""

from authledger.repositories.base import (
    AuditLogRepository,
    DuplicateKeyError,
    InvalidIdentifierError,
    StorageError,
    UserRepository,
    is_object_id,
    new_object_id,
)
from authledger.repositories.memory import InMemoryAuditLogRepository, InMemoryUserRepository
from authledger.repositories.postgres import PostgresAuditLogRepository, PostgresUserRepository

__all__ = [
    "AuditLogRepository",
    "DuplicateKeyError",
    "InMemoryAuditLogRepository",
    "InMemoryUserRepository",
    "InvalidIdentifierError",
    "PostgresAuditLogRepository",
    "PostgresUserRepository",
    "StorageError",
    "UserRepository",
    "is_object_id",
    "new_object_id",
]
