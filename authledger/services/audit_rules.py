"""Inference rules turning a captured HTTP exchange into an audit entry.

All functions here are pure: they take plain values and return plain values,
so the request interceptor stays a thin adapter over them.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from authledger.models.audit import AuditAction, AuditChanges

UNKNOWN_ENTITY_ID = "unknown"

ACTION_BY_METHOD = {
    "POST": AuditAction.CREATE,
    "GET": AuditAction.READ,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
}

# Ordered: exact match wins, then the first prefix match.
ENTITY_PATH_TABLE: tuple[tuple[str, str], ...] = (
    ("auth/signup", "User"),
    ("auth/signin", "User"),
    ("auth/identity", "User"),
    ("auth/google", "User"),
    ("auth/profile", "User"),
    ("auth/me", "User"),
    ("auth/forgot-password", "User"),
    ("auth/reset-password", "User"),
    ("auth/change-password", "User"),
    ("auth/verify-email", "User"),
    ("auth/logout", "User"),
    ("auth/refresh-token", "User"),
    ("users", "User"),
    ("audit", "AuditLog"),
)

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "currentpassword",
        "newpassword",
        "passwordhash",
        "secret",
    }
)

_OBJECT_ID_SEGMENT = re.compile(r"^[0-9a-fA-F]{24}$")

_DESCRIPTION_VERBS = {
    AuditAction.CREATE: "Created",
    AuditAction.READ: "Accessed",
    AuditAction.UPDATE: "Updated",
    AuditAction.DELETE: "Deleted",
}


def _normalize_key(key: str) -> str:
    return key.replace("_", "").lower()


def is_sensitive_key(key: str) -> bool:
    """Password material, secrets and anything token-shaped."""
    normalized = _normalize_key(key)
    return (
        normalized in SENSITIVE_KEYS
        or normalized.endswith("token")
        or normalized.endswith("tokenhash")
    )


def sanitize(data: Any) -> Any:
    """Return a deep copy of ``data`` with sensitive keys removed at every depth."""
    if isinstance(data, dict):
        return {k: sanitize(v) for k, v in data.items() if not is_sensitive_key(str(k))}
    if isinstance(data, list):
        return [sanitize(item) for item in data]
    return data


def action_for_method(method: str) -> AuditAction:
    """Map an HTTP method to an action; unlisted methods count as reads."""
    return ACTION_BY_METHOD.get(method.upper(), AuditAction.READ)


def _path_segments(path: str) -> list[str]:
    path = path.split("?", 1)[0].strip("/")
    if path.startswith("api/"):
        path = path[len("api/"):]
    return [s for s in path.split("/") if s]


def entity_for_path(
    path: str, table: Sequence[tuple[str, str]] = ENTITY_PATH_TABLE
) -> Optional[str]:
    """Infer the entity type a path operates on.

    Falls back to the capitalized first path segment; returns None for the root.
    """
    segments = _path_segments(path)
    if not segments:
        return None
    normalized = "/".join(segments)

    for pattern, entity in table:
        if normalized == pattern:
            return entity
    for pattern, entity in table:
        if normalized.startswith(pattern + "/"):
            return entity

    first = segments[0]
    return first[:1].upper() + first[1:]


def _data_section(payload: Any) -> Optional[dict]:
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    return None


def entity_id_for_exchange(
    path: str, request_body: Any = None, response_payload: Any = None
) -> str:
    """Find the id of the entity an exchange touched.

    Checked in order: an object-id path segment, the response ``data.id``,
    ``data._id``, ``data.user.id``, then the request body's ``id``, ``_id``
    and ``userId``.
    """
    for segment in _path_segments(path):
        if _OBJECT_ID_SEGMENT.match(segment):
            return segment

    data = _data_section(response_payload)
    if data is not None:
        for key in ("id", "_id"):
            if data.get(key):
                return str(data[key])
        user = data.get("user")
        if isinstance(user, dict) and user.get("id"):
            return str(user["id"])

    if isinstance(request_body, dict):
        for key in ("id", "_id", "userId"):
            if request_body.get(key):
                return str(request_body[key])

    return UNKNOWN_ENTITY_ID


def changes_for_exchange(
    action: AuditAction,
    request_body: Any = None,
    response_payload: Any = None,
    original: Any = None,
) -> AuditChanges:
    """Before/after snapshot for an inferred entry.

    Creations take the response data as ``after``; updates pair the
    controller-supplied original with the request body; deletions keep only
    the original.
    """
    if action == AuditAction.CREATE:
        data = _data_section(response_payload)
        return AuditChanges(before=None, after=sanitize(data) if data is not None else None)
    if action == AuditAction.UPDATE:
        return AuditChanges(before=sanitize(original), after=sanitize(request_body))
    if action == AuditAction.DELETE:
        return AuditChanges(before=sanitize(original), after=None)
    return AuditChanges()


def describe(action: AuditAction, entity: str, entity_id: str) -> str:
    """Human-readable summary, e.g. ``Updated User with ID <id>``."""
    verb = _DESCRIPTION_VERBS.get(action, action.value.capitalize())
    return f"{verb} {entity} with ID {entity_id}"


def matches_prefix(path: str, prefixes: Sequence[str]) -> bool:
    """Whether ``path`` equals or sits under any of ``prefixes``."""
    for prefix in prefixes:
        prefix = prefix.rstrip("/")
        if not prefix:
            continue
        if path == prefix or path.startswith(prefix + "/") or path.startswith(prefix + "?"):
            return True
    return False


@dataclass(frozen=True)
class AuditRules:
    """Path policy for the request interceptor.

    Attributes:
        skip_paths: Prefixes never audited (health, docs, the audit API itself)
        sensitive_read_paths: Prefixes whose reads are audited; other reads are not
        entity_table: Ordered path-pattern to entity mapping
    """

    skip_paths: tuple[str, ...] = ()
    sensitive_read_paths: tuple[str, ...] = ()
    entity_table: tuple[tuple[str, str], ...] = field(default=ENTITY_PATH_TABLE)

    @classmethod
    def from_settings(cls, settings) -> "AuditRules":
        return cls(
            skip_paths=tuple(settings.audit_skip_paths_list),
            sensitive_read_paths=tuple(settings.audit_sensitive_read_paths_list),
        )

    def is_skipped(self, path: str) -> bool:
        return matches_prefix(path, self.skip_paths)

    def should_audit(self, method: str, path: str) -> bool:
        """Skip-listed paths never; reads only on sensitive paths; writes always."""
        if self.is_skipped(path):
            return False
        if action_for_method(method) == AuditAction.READ:
            return matches_prefix(path, self.sensitive_read_paths)
        return True

    def entity_for(self, path: str) -> Optional[str]:
        return entity_for_path(path, self.entity_table)
