"""Unit tests for audit inference rules."""

import pytest

from authledger.models.audit import AuditAction
from authledger.services.audit_rules import (
    UNKNOWN_ENTITY_ID,
    AuditRules,
    action_for_method,
    changes_for_exchange,
    describe,
    entity_for_path,
    entity_id_for_exchange,
    is_sensitive_key,
    matches_prefix,
    sanitize,
)
from tests.conftest import make_settings

OBJECT_ID = "64f7a1b2c3d4e5f6a7b8c9d0"


class TestActionForMethod:
    @pytest.mark.parametrize(
        "method, expected",
        [
            ("POST", AuditAction.CREATE),
            ("GET", AuditAction.READ),
            ("PUT", AuditAction.UPDATE),
            ("PATCH", AuditAction.UPDATE),
            ("DELETE", AuditAction.DELETE),
            ("delete", AuditAction.DELETE),
            ("OPTIONS", AuditAction.READ),
            ("HEAD", AuditAction.READ),
        ],
    )
    def test_mapping(self, method, expected):
        assert action_for_method(method) == expected


class TestEntityForPath:
    """Ordered table lookup: exact, then prefix, then capitalized first segment."""

    def test_exact_match(self):
        assert entity_for_path("/auth/profile") == "User"

    def test_prefix_match(self):
        assert entity_for_path(f"/users/{OBJECT_ID}") == "User"
        assert entity_for_path("/audit/logs") == "AuditLog"

    def test_api_prefix_is_ignored(self):
        assert entity_for_path("/api/auth/signup") == "User"

    def test_query_string_is_ignored(self):
        assert entity_for_path("/auth/me?fields=name") == "User"

    def test_fallback_capitalizes_first_segment(self):
        assert entity_for_path("/orders/123") == "Orders"

    def test_root_has_no_entity(self):
        assert entity_for_path("/") is None

    def test_prefix_requires_segment_boundary(self):
        # "auditors" must not match the "audit" row
        assert entity_for_path("/auditors") == "Auditors"

    def test_first_row_wins(self):
        table = (("things", "Thing"), ("things", "Other"))
        assert entity_for_path("/things/1", table) == "Thing"


class TestEntityIdForExchange:
    """Path segment, then response data, then request body, then the sentinel."""

    def test_path_segment_wins(self):
        assert (
            entity_id_for_exchange(
                f"/users/{OBJECT_ID}",
                request_body={"id": "body-id"},
                response_payload={"data": {"id": "resp-id"}},
            )
            == OBJECT_ID
        )

    def test_response_data_id(self):
        assert entity_id_for_exchange("/users", None, {"data": {"id": "abc"}}) == "abc"

    def test_response_data_underscore_id(self):
        assert entity_id_for_exchange("/users", None, {"data": {"_id": "abc"}}) == "abc"

    def test_response_nested_user_id(self):
        payload = {"success": True, "data": {"user": {"id": OBJECT_ID}}}
        assert entity_id_for_exchange("/auth/profile", None, payload) == OBJECT_ID

    def test_request_body_fields(self):
        assert entity_id_for_exchange("/things", {"userId": "u-1"}, None) == "u-1"
        assert entity_id_for_exchange("/things", {"_id": "x-1"}, None) == "x-1"

    def test_unknown_sentinel(self):
        assert entity_id_for_exchange("/things", {"name": "n"}, {"data": []}) == UNKNOWN_ENTITY_ID

    def test_short_hex_segment_is_not_an_id(self):
        assert entity_id_for_exchange("/things/abc123", None, None) == UNKNOWN_ENTITY_ID


class TestSanitize:
    """Secrets are removed at every depth; flags survive."""

    @pytest.mark.parametrize(
        "key",
        [
            "password",
            "currentPassword",
            "newPassword",
            "passwordHash",
            "password_hash",
            "token",
            "accessToken",
            "refreshToken",
            "passwordResetToken",
            "email_verification_token_hash",
        ],
    )
    def test_sensitive_keys(self, key):
        assert is_sensitive_key(key) is True

    @pytest.mark.parametrize(
        "key", ["passwordChanged", "passwordResetRequested", "emailVerified", "name", "email"]
    )
    def test_flags_are_not_sensitive(self, key):
        assert is_sensitive_key(key) is False

    def test_nested_removal(self):
        data = {
            "user": {"name": "Jane", "passwordHash": "$2b$..."},
            "accessToken": "a",
            "items": [{"refreshToken": "r", "id": 1}],
        }
        assert sanitize(data) == {"user": {"name": "Jane"}, "items": [{"id": 1}]}

    def test_does_not_mutate_input(self):
        data = {"password": "x", "name": "y"}
        sanitize(data)
        assert data == {"password": "x", "name": "y"}

    def test_scalars_pass_through(self):
        assert sanitize(None) is None
        assert sanitize("text") == "text"


class TestChangesForExchange:
    def test_create_uses_response_data(self):
        payload = {"data": {"id": "1", "name": "N", "accessToken": "t"}}
        changes = changes_for_exchange(AuditAction.CREATE, {"password": "p"}, payload)
        assert changes.before is None
        assert changes.after == {"id": "1", "name": "N"}

    def test_update_pairs_original_with_body(self):
        changes = changes_for_exchange(
            AuditAction.UPDATE,
            request_body={"name": "New", "password": "p"},
            original={"name": "Old"},
        )
        assert changes.before == {"name": "Old"}
        assert changes.after == {"name": "New"}

    def test_delete_keeps_original_only(self):
        changes = changes_for_exchange(
            AuditAction.DELETE, request_body={"x": 1}, original={"name": "Gone"}
        )
        assert changes.before == {"name": "Gone"}
        assert changes.after is None

    def test_read_has_no_snapshot(self):
        changes = changes_for_exchange(AuditAction.READ, {"a": 1}, {"data": {"b": 2}})
        assert changes.before is None
        assert changes.after is None


class TestDescribe:
    def test_update_description(self):
        assert describe(AuditAction.UPDATE, "User", OBJECT_ID) == f"Updated User with ID {OBJECT_ID}"

    def test_read_description(self):
        assert describe(AuditAction.READ, "User", "1") == "Accessed User with ID 1"


class TestAuditRules:
    @pytest.fixture
    def rules(self):
        return AuditRules.from_settings(make_settings())

    def test_skip_list(self, rules):
        assert rules.should_audit("POST", "/health") is False
        assert rules.should_audit("GET", "/audit/logs") is False
        assert rules.should_audit("GET", "/docs") is False

    def test_plain_reads_are_not_audited(self, rules):
        assert rules.should_audit("GET", "/things/1") is False

    def test_sensitive_reads_are_audited(self, rules):
        assert rules.should_audit("GET", "/auth/me") is True
        assert rules.should_audit("GET", f"/users/{OBJECT_ID}") is True

    def test_writes_are_audited(self, rules):
        assert rules.should_audit("PUT", "/things/1") is True
        assert rules.should_audit("DELETE", f"/users/{OBJECT_ID}") is True

    def test_matches_prefix_boundaries(self):
        assert matches_prefix("/audit", ["/audit"]) is True
        assert matches_prefix("/audit/logs", ["/audit/"]) is True
        assert matches_prefix("/auditors", ["/audit"]) is False
        assert matches_prefix("/anything", ["", "/"]) is False
