"""In-memory repositories for development and tests."""

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from authledger.models.audit import (
    ActionStat,
    AuditLogEntry,
    AuditLogQuery,
    EntityStats,
)
from authledger.models.user import User
from authledger.repositories.base import (
    DuplicateKeyError,
    ensure_object_id,
)

logger = structlog.get_logger(__name__)


class InMemoryUserRepository:
    """Dict-backed user store.

    A single lock serialises writes so read-modify-write updates are atomic
    per record, mirroring per-document atomicity of the real store.
    """

    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self._lock = asyncio.Lock()

    def _check_unique(self, user: User, exclude_id: Optional[str] = None) -> None:
        for other in self.users.values():
            if other.id == exclude_id:
                continue
            if other.email.lower() == user.email.lower():
                raise DuplicateKeyError("email", user.email)
            if user.external_id and other.external_id == user.external_id:
                raise DuplicateKeyError("externalId", user.external_id)

    async def create(self, user: User) -> User:
        async with self._lock:
            if user.id in self.users:
                raise DuplicateKeyError("id", user.id)
            self._check_unique(user)
            self.users[user.id] = user.model_copy()
        logger.debug("memory_user_created", user_id=user.id)
        return user.model_copy()

    async def get_by_id(self, user_id: str) -> Optional[User]:
        ensure_object_id("userId", user_id)
        user = self.users.get(user_id)
        return user.model_copy() if user else None

    async def get_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        for user in self.users.values():
            if user.email.lower() == email:
                return user.model_copy()
        return None

    async def get_many(self, user_ids: list[str]) -> dict[str, User]:
        return {
            uid: self.users[uid].model_copy() for uid in user_ids if uid in self.users
        }

    async def find_by_email_or_external_id(
        self, email: str, external_id: str
    ) -> Optional[User]:
        email = email.lower()
        for user in self.users.values():
            if user.email.lower() == email or (
                user.external_id is not None and user.external_id == external_id
            ):
                return user.model_copy()
        return None

    async def get_by_password_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[User]:
        for user in self.users.values():
            if (
                user.password_reset_token_hash == token_hash
                and user.password_reset_expires is not None
                and user.password_reset_expires > now
            ):
                return user.model_copy()
        return None

    async def _consume_token(
        self, hash_field: str, expires_field: str, token_hash: str, now: datetime, fields: dict
    ) -> Optional[User]:
        async with self._lock:
            for user_id, current in self.users.items():
                expires = getattr(current, expires_field)
                if getattr(current, hash_field) != token_hash or expires is None or expires <= now:
                    continue
                changes = {
                    **fields,
                    hash_field: None,
                    expires_field: None,
                    "updated_at": datetime.now(timezone.utc),
                }
                updated = current.model_copy(update=changes)
                self.users[user_id] = updated
                return updated.model_copy()
        return None

    async def consume_password_reset_token(
        self, token_hash: str, now: datetime, **fields: Any
    ) -> Optional[User]:
        return await self._consume_token(
            "password_reset_token_hash", "password_reset_expires", token_hash, now, fields
        )

    async def consume_email_verification_token(
        self, token_hash: str, now: datetime, **fields: Any
    ) -> Optional[User]:
        return await self._consume_token(
            "email_verification_token_hash", "email_verification_expires", token_hash, now, fields
        )

    async def update(self, user_id: str, **fields: Any) -> Optional[User]:
        ensure_object_id("userId", user_id)
        async with self._lock:
            current = self.users.get(user_id)
            if current is None:
                return None
            fields.setdefault("updated_at", datetime.now(timezone.utc))
            updated = current.model_copy(update=fields)
            self._check_unique(updated, exclude_id=user_id)
            self.users[user_id] = updated
        return updated.model_copy()

    async def register_failed_login(
        self, user_id: str, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        ensure_object_id("userId", user_id)
        async with self._lock:
            current = self.users.get(user_id)
            if current is None:
                return None
            attempts = current.failed_login_attempts + 1
            if attempts >= max_attempts:
                changes = {"failed_login_attempts": 0, "lock_until": lock_until}
            else:
                changes = {"failed_login_attempts": attempts}
            changes["updated_at"] = datetime.now(timezone.utc)
            updated = current.model_copy(update=changes)
            self.users[user_id] = updated
        return updated.model_copy()


def _matches(entry: AuditLogEntry, query: AuditLogQuery) -> bool:
    if query.action is not None and entry.action != query.action:
        return False
    if query.entity is not None and entry.entity != query.entity:
        return False
    if query.entity_id is not None and entry.entity_id != query.entity_id:
        return False
    if query.user_id is not None and entry.user_id != query.user_id:
        return False
    if query.start_date is not None and entry.timestamp < query.start_date:
        return False
    if query.end_date is not None and entry.timestamp > query.end_date:
        return False
    return True


class InMemoryAuditLogRepository:
    """Append-only list of audit entries."""

    def __init__(self) -> None:
        self.entries: list[AuditLogEntry] = []

    async def insert(self, entry: AuditLogEntry) -> AuditLogEntry:
        if any(e.id == entry.id for e in self.entries):
            raise DuplicateKeyError("id", entry.id)
        self.entries.append(entry)
        return entry

    async def get(self, log_id: str) -> Optional[AuditLogEntry]:
        ensure_object_id("logId", log_id)
        for entry in self.entries:
            if entry.id == log_id:
                return entry
        return None

    async def find(
        self, query: AuditLogQuery, skip: int = 0, limit: Optional[int] = None
    ) -> list[AuditLogEntry]:
        matched = [e for e in self.entries if _matches(e, query)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        end = None if limit is None else skip + limit
        return matched[skip:end]

    async def count(self, query: AuditLogQuery) -> int:
        return sum(1 for e in self.entries if _matches(e, query))

    async def aggregate_stats(self, query: AuditLogQuery) -> list[EntityStats]:
        grouped: dict[str, dict[str, list[datetime]]] = defaultdict(
            lambda: defaultdict(list)
        )
        for entry in self.entries:
            if _matches(entry, query):
                grouped[entry.entity][entry.action.value].append(entry.timestamp)

        stats = []
        for entity, actions in grouped.items():
            action_stats = [
                ActionStat(action=action, count=len(stamps), last_activity=max(stamps))
                for action, stamps in actions.items()
            ]
            stats.append(
                EntityStats(
                    entity=entity,
                    actions=action_stats,
                    total_count=sum(a.count for a in action_stats),
                )
            )
        stats.sort(key=lambda s: s.total_count, reverse=True)
        return stats

    async def delete_older_than(self, cutoff: datetime) -> int:
        before = len(self.entries)
        self.entries = [e for e in self.entries if e.timestamp >= cutoff]
        return before - len(self.entries)


__all__ = ["InMemoryUserRepository", "InMemoryAuditLogRepository"]
