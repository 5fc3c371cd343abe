"""PostgreSQL repositories backed by the asyncpg pool."""

import json
from datetime import datetime, timezone
from typing import Any, Optional

import asyncpg
import structlog

from authledger.database import get_pool
from authledger.models.audit import (
    AuditLogEntry,
    AuditLogQuery,
    EntityStats,
)
from authledger.models.user import User
from authledger.repositories.base import DuplicateKeyError, ensure_object_id

logger = structlog.get_logger(__name__)

USER_COLUMNS = (
    "id",
    "name",
    "email",
    "password_hash",
    "external_id",
    "avatar",
    "role",
    "is_email_verified",
    "is_active",
    "last_login",
    "failed_login_attempts",
    "lock_until",
    "password_reset_token_hash",
    "password_reset_expires",
    "email_verification_token_hash",
    "email_verification_expires",
    "created_at",
    "updated_at",
)

_USER_SELECT = f"SELECT {', '.join(USER_COLUMNS)} FROM users"

# Unique index name -> public field name reported in Conflict errors
_UNIQUE_INDEX_FIELDS = {
    "users_email_lower_key": "email",
    "users_external_id_key": "externalId",
    "users_pkey": "id",
    "audit_logs_pkey": "id",
}


def _row_to_user(row) -> User:
    return User(**{column: row[column] for column in USER_COLUMNS})


def _duplicate_key(error: asyncpg.UniqueViolationError, value: Any) -> DuplicateKeyError:
    field = _UNIQUE_INDEX_FIELDS.get(error.constraint_name or "", "key")
    return DuplicateKeyError(field, value)


def _set_clauses(fields: dict[str, Any]) -> tuple[list[str], list[Any]]:
    """Build ``column = $n`` assignments numbered from $1.

    Raises:
        ValueError: If a field is not a writable users column
    """
    set_clauses = []
    params: list[Any] = []
    for param_idx, (column, value) in enumerate(fields.items(), start=1):
        if column not in USER_COLUMNS or column == "id":
            raise ValueError(f"Unknown users column: {column}")
        if hasattr(value, "value"):
            value = value.value
        set_clauses.append(f"{column} = ${param_idx}")
        params.append(value)
    return set_clauses, params


class PostgresUserRepository:
    """User store over the ``users`` table."""

    async def create(self, user: User) -> User:
        values = user.model_dump()
        values["role"] = user.role.value
        placeholders = ", ".join(f"${i}" for i in range(1, len(USER_COLUMNS) + 1))

        pool = await get_pool()
        async with pool.acquire() as conn:
            try:
                await conn.execute(
                    f"INSERT INTO users ({', '.join(USER_COLUMNS)}) VALUES ({placeholders})",
                    *[values[column] for column in USER_COLUMNS],
                )
            except asyncpg.UniqueViolationError as e:
                raise _duplicate_key(e, user.email) from e

        logger.info("user_row_inserted", user_id=user.id)
        return user

    async def get_by_id(self, user_id: str) -> Optional[User]:
        ensure_object_id("userId", user_id)
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(f"{_USER_SELECT} WHERE id = $1", user_id)
        return _row_to_user(row) if row else None

    async def get_by_email(self, email: str) -> Optional[User]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"{_USER_SELECT} WHERE LOWER(email) = LOWER($1)", email
            )
        return _row_to_user(row) if row else None

    async def get_many(self, user_ids: list[str]) -> dict[str, User]:
        if not user_ids:
            return {}
        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(f"{_USER_SELECT} WHERE id = ANY($1::text[])", user_ids)
        return {row["id"]: _row_to_user(row) for row in rows}

    async def find_by_email_or_external_id(
        self, email: str, external_id: str
    ) -> Optional[User]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                {_USER_SELECT}
                WHERE LOWER(email) = LOWER($1) OR external_id = $2
                ORDER BY (LOWER(email) = LOWER($1)) DESC
                LIMIT 1
                """,
                email,
                external_id,
            )
        return _row_to_user(row) if row else None

    async def get_by_password_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[User]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                {_USER_SELECT}
                WHERE password_reset_token_hash = $1 AND password_reset_expires > $2
                """,
                token_hash,
                now,
            )
        return _row_to_user(row) if row else None

    async def _consume_token(
        self, hash_column: str, expires_column: str, token_hash: str, now: datetime, fields: dict
    ) -> Optional[User]:
        """Apply ``fields`` and clear the token in one UPDATE guarded by hash and expiry.

        Concurrent callers holding the same token race on the row lock; the
        loser re-evaluates the WHERE clause against the cleared row and gets
        nothing back.
        """
        fields = {**fields, hash_column: None, expires_column: None}
        fields.setdefault("updated_at", datetime.now(timezone.utc))
        set_clauses, params = _set_clauses(fields)
        params.extend([token_hash, now])

        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE users SET {', '.join(set_clauses)}
                WHERE {hash_column} = ${len(params) - 1} AND {expires_column} > ${len(params)}
                RETURNING {', '.join(USER_COLUMNS)}
                """,
                *params,
            )
        return _row_to_user(row) if row else None

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
        """Update the given columns and return the new row.

        Raises:
            ValueError: If a field is not a writable users column
        """
        ensure_object_id("userId", user_id)
        fields.setdefault("updated_at", datetime.now(timezone.utc))

        set_clauses, params = _set_clauses(fields)
        params.append(user_id)

        pool = await get_pool()
        async with pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    f"""
                    UPDATE users SET {', '.join(set_clauses)}
                    WHERE id = ${len(params)}
                    RETURNING {', '.join(USER_COLUMNS)}
                    """,
                    *params,
                )
            except asyncpg.UniqueViolationError as e:
                raise _duplicate_key(e, fields.get("email") or fields.get("external_id")) from e

        return _row_to_user(row) if row else None

    async def register_failed_login(
        self, user_id: str, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        """Increment the failed-login counter in one conditional UPDATE.

        Reaching ``max_attempts`` sets ``lock_until`` and resets the counter.
        Right-hand expressions see the pre-update row, so concurrent failures
        on the same account are never lost.
        """
        ensure_object_id("userId", user_id)
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE users SET
                    failed_login_attempts = CASE
                        WHEN failed_login_attempts + 1 >= $2 THEN 0
                        ELSE failed_login_attempts + 1
                    END,
                    lock_until = CASE
                        WHEN failed_login_attempts + 1 >= $2 THEN $3
                        ELSE lock_until
                    END,
                    updated_at = $4
                WHERE id = $1
                RETURNING {', '.join(USER_COLUMNS)}
                """,
                user_id,
                max_attempts,
                lock_until,
                datetime.now(timezone.utc),
            )
        return _row_to_user(row) if row else None


def _build_where(query: AuditLogQuery) -> tuple[str, list[Any]]:
    """Translate filters into a parameterised WHERE clause."""
    clauses = []
    params: list[Any] = []

    def add(sql: str, value: Any) -> None:
        params.append(value)
        clauses.append(sql.format(f"${len(params)}"))

    if query.action is not None:
        add("action = {}", query.action.value)
    if query.entity is not None:
        add("entity = {}", query.entity)
    if query.entity_id is not None:
        add("entity_id = {}", query.entity_id)
    if query.user_id is not None:
        add("user_id = {}", query.user_id)
    if query.start_date is not None:
        add("timestamp >= {}", query.start_date)
    if query.end_date is not None:
        add("timestamp <= {}", query.end_date)

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row["id"],
        user_id=row["user_id"],
        action=row["action"],
        entity=row["entity"],
        entity_id=row["entity_id"],
        changes=json.loads(row["changes"]) if row["changes"] else {},
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        timestamp=row["timestamp"],
        description=row["description"] or "",
    )


_AUDIT_SELECT = (
    "SELECT id, user_id, action, entity, entity_id, changes, metadata, timestamp, description "
    "FROM audit_logs"
)


class PostgresAuditLogRepository:
    """Append-only audit store over the ``audit_logs`` table."""

    async def insert(self, entry: AuditLogEntry) -> AuditLogEntry:
        pool = await get_pool()
        async with pool.acquire() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO audit_logs
                        (id, user_id, action, entity, entity_id, changes, metadata, timestamp, description)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9)
                    """,
                    entry.id,
                    entry.user_id,
                    entry.action.value,
                    entry.entity,
                    entry.entity_id,
                    json.dumps(entry.changes.model_dump(mode="json")),
                    json.dumps(entry.metadata.model_dump(mode="json", by_alias=True)),
                    entry.timestamp,
                    entry.description,
                )
            except asyncpg.UniqueViolationError as e:
                raise _duplicate_key(e, entry.id) from e
        return entry

    async def get(self, log_id: str) -> Optional[AuditLogEntry]:
        ensure_object_id("logId", log_id)
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(f"{_AUDIT_SELECT} WHERE id = $1", log_id)
        return _row_to_entry(row) if row else None

    async def find(
        self, query: AuditLogQuery, skip: int = 0, limit: Optional[int] = None
    ) -> list[AuditLogEntry]:
        where, params = _build_where(query)
        sql = f"{_AUDIT_SELECT} {where} ORDER BY timestamp DESC"
        params.append(skip)
        sql += f" OFFSET ${len(params)}"
        if limit is not None:
            params.append(limit)
            sql += f" LIMIT ${len(params)}"

        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *params)
        return [_row_to_entry(row) for row in rows]

    async def count(self, query: AuditLogQuery) -> int:
        where, params = _build_where(query)
        pool = await get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(f"SELECT COUNT(*) FROM audit_logs {where}", *params)

    async def aggregate_stats(self, query: AuditLogQuery) -> list[EntityStats]:
        where, params = _build_where(query)
        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                WITH per_action AS (
                    SELECT entity, action, COUNT(*) AS count, MAX(timestamp) AS last_activity
                    FROM audit_logs
                    {where}
                    GROUP BY entity, action
                )
                SELECT
                    entity,
                    SUM(count) AS total_count,
                    json_agg(json_build_object(
                        'action', action,
                        'count', count,
                        'lastActivity', last_activity
                    )) AS actions
                FROM per_action
                GROUP BY entity
                ORDER BY total_count DESC
                """,
                *params,
            )
        return [
            EntityStats(
                entity=row["entity"],
                actions=json.loads(row["actions"]),
                total_count=int(row["total_count"]),
            )
            for row in rows
        ]

    async def delete_older_than(self, cutoff: datetime) -> int:
        pool = await get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("DELETE FROM audit_logs WHERE timestamp < $1", cutoff)
        # asyncpg returns the command tag, e.g. "DELETE 42"
        return int(result.split()[-1])
