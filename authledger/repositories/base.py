"""Repository protocols, identifiers and storage-layer errors."""

import os
import re
import time
from datetime import datetime
from typing import Any, Optional, Protocol

from authledger.models.audit import AuditLogEntry, AuditLogQuery, EntityStats
from authledger.models.user import User

OBJECT_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")


def new_object_id() -> str:
    """Generate a 24-hex-character identifier: 4-byte seconds timestamp + 8 random bytes."""
    return int(time.time()).to_bytes(4, "big").hex() + os.urandom(8).hex()


def is_object_id(value: Any) -> bool:
    return isinstance(value, str) and bool(OBJECT_ID_PATTERN.match(value))


class StorageError(Exception):
    """Base class for storage-layer failures."""


class DuplicateKeyError(StorageError):
    """A unique index rejected the write."""

    def __init__(self, field: str, value: Any):
        super().__init__(f"{field} '{value}' already exists")
        self.field = field
        self.value = value


class InvalidIdentifierError(StorageError):
    """An identifier does not have the shape the store expects."""

    def __init__(self, field: str, value: Any):
        super().__init__(f"Invalid {field}: {value}")
        self.field = field
        self.value = value


def ensure_object_id(field: str, value: str) -> str:
    if not is_object_id(value):
        raise InvalidIdentifierError(field, value)
    return value


class UserRepository(Protocol):
    async def create(self, user: User) -> User: ...

    async def get_by_id(self, user_id: str) -> Optional[User]: ...

    async def get_by_email(self, email: str) -> Optional[User]: ...

    async def get_many(self, user_ids: list[str]) -> dict[str, User]: ...

    async def find_by_email_or_external_id(
        self, email: str, external_id: str
    ) -> Optional[User]: ...

    async def get_by_password_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[User]: ...

    async def consume_password_reset_token(
        self, token_hash: str, now: datetime, **fields: Any
    ) -> Optional[User]: ...

    async def consume_email_verification_token(
        self, token_hash: str, now: datetime, **fields: Any
    ) -> Optional[User]: ...

    async def update(self, user_id: str, **fields: Any) -> Optional[User]: ...

    async def register_failed_login(
        self, user_id: str, max_attempts: int, lock_until: datetime
    ) -> Optional[User]: ...


class AuditLogRepository(Protocol):
    async def insert(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    async def get(self, log_id: str) -> Optional[AuditLogEntry]: ...

    async def find(
        self, query: AuditLogQuery, skip: int = 0, limit: Optional[int] = None
    ) -> list[AuditLogEntry]: ...

    async def count(self, query: AuditLogQuery) -> int: ...

    async def aggregate_stats(self, query: AuditLogQuery) -> list[EntityStats]: ...

    async def delete_older_than(self, cutoff: datetime) -> int: ...
