"""Integration tests for the /audit query, stats and export endpoints."""

import csv
import io
import re
from datetime import datetime, timedelta, timezone

import pytest

from authledger.models.audit import AuditAction, AuditLogEntry
from authledger.repositories.base import new_object_id
from authledger.services.audit_log_service import CSV_HEADERS
from tests.conftest import bearer, create_user, settle, signin, signup


def _entry(user_id, action=AuditAction.UPDATE, entity="User", entity_id=None, age=timedelta(0)):
    return AuditLogEntry(
        id=new_object_id(),
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=entity_id or user_id,
        timestamp=datetime.now(timezone.utc) - age,
        description=f"{action.value} {entity}",
    )


@pytest.fixture
async def admin(app, async_client):
    user = await create_user(app)
    data = await signin(async_client, user.email)
    return {"id": user.id, "headers": bearer(data["accessToken"])}


@pytest.fixture
async def member(app, async_client):
    data = await signup(async_client)
    return {"id": data["user"]["id"], "headers": bearer(data["accessToken"])}


@pytest.fixture
async def seeded(app, admin, member, audit_repository):
    """Settled log holding the sign-in/sign-up entries plus a few extra rows."""
    await settle(app)
    audit_repository.entries.clear()
    for minutes in range(3):
        await audit_repository.insert(_entry(member["id"], age=timedelta(minutes=minutes)))
    await audit_repository.insert(_entry(admin["id"], action=AuditAction.DELETE, entity="Order", entity_id="o-1"))
    return audit_repository


class TestListLogs:
    async def test_admin_sees_everything(self, async_client, admin, seeded):
        response = await async_client.get("/audit/logs", headers=admin["headers"])

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pagination"]["totalItems"] == 4
        assert len(data["auditLogs"]) == 4

    async def test_member_is_scoped_to_self(self, async_client, admin, member, seeded):
        response = await async_client.get(
            "/audit/logs", params={"userId": admin["id"]}, headers=member["headers"]
        )

        logs = response.json()["data"]["auditLogs"]
        assert len(logs) == 3
        assert {log["userId"] for log in logs} == {member["id"]}

    async def test_pagination(self, async_client, admin, seeded):
        response = await async_client.get(
            "/audit/logs", params={"page": 2, "limit": 3}, headers=admin["headers"]
        )

        pagination = response.json()["data"]["pagination"]
        assert pagination == {
            "currentPage": 2,
            "totalPages": 2,
            "totalItems": 4,
            "itemsPerPage": 3,
            "hasNextPage": False,
            "hasPrevPage": True,
        }

    async def test_limit_is_clamped(self, async_client, admin, seeded):
        response = await async_client.get(
            "/audit/logs", params={"limit": 1000, "page": 0}, headers=admin["headers"]
        )

        pagination = response.json()["data"]["pagination"]
        assert pagination["itemsPerPage"] == 100
        assert pagination["currentPage"] == 1

    async def test_action_filter(self, async_client, admin, seeded):
        response = await async_client.get(
            "/audit/logs", params={"action": "delete"}, headers=admin["headers"]
        )

        logs = response.json()["data"]["auditLogs"]
        assert [log["action"] for log in logs] == ["DELETE"]

    async def test_invalid_action(self, async_client, admin, seeded):
        response = await async_client.get(
            "/audit/logs", params={"action": "EXPLODE"}, headers=admin["headers"]
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_requires_authentication(self, async_client):
        response = await async_client.get("/audit/logs")
        assert response.status_code == 401


class TestEntityLogs:
    async def test_member_own_record(self, async_client, member, seeded):
        response = await async_client.get(
            f"/audit/entity/User/{member['id']}", headers=member["headers"]
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["entity"] == "User"
        assert data["entityId"] == member["id"]
        assert len(data["auditLogs"]) == 3

    async def test_member_other_user_forbidden(self, async_client, admin, member, seeded):
        response = await async_client.get(
            f"/audit/entity/User/{admin['id']}", headers=member["headers"]
        )

        assert response.status_code == 403

    async def test_admin_any_entity(self, async_client, admin, seeded):
        response = await async_client.get("/audit/entity/Order/o-1", headers=admin["headers"])

        assert len(response.json()["data"]["auditLogs"]) == 1


class TestUserActivity:
    async def test_member_other_user_forbidden(self, async_client, admin, member, seeded):
        response = await async_client.get(
            f"/audit/user/{admin['id']}/activity", headers=member["headers"]
        )
        assert response.status_code == 403

    async def test_admin_reads_member_activity(self, async_client, admin, member, seeded):
        response = await async_client.get(
            f"/audit/user/{member['id']}/activity", headers=admin["headers"]
        )

        data = response.json()["data"]
        assert data["userId"] == member["id"]
        assert len(data["activityLogs"]) == 3


class TestStats:
    async def test_admin_only(self, async_client, member, seeded):
        response = await async_client.get("/audit/stats", headers=member["headers"])
        assert response.status_code == 403

    async def test_grouped_counts(self, async_client, admin, seeded):
        response = await async_client.get("/audit/stats", headers=admin["headers"])

        data = response.json()["data"]
        assert data["period"] == {"startDate": "All time", "endDate": "Present"}
        by_entity = {s["entity"]: s for s in data["statistics"]}
        assert by_entity["User"]["totalCount"] == 3
        assert by_entity["Order"]["actions"][0]["action"] == "DELETE"
        assert data["statistics"][0]["entity"] == "User"


class TestSingleLog:
    async def test_returns_entry_with_actor(self, async_client, admin, member, seeded):
        entry = seeded.entries[0]

        response = await async_client.get(f"/audit/log/{entry.id}", headers=admin["headers"])

        log = response.json()["data"]["auditLog"]
        assert log["id"] == entry.id
        assert log["user"] == {"id": member["id"], "name": "John Doe", "email": "john@example.com"}

    async def test_missing(self, async_client, admin, seeded):
        response = await async_client.get(f"/audit/log/{new_object_id()}", headers=admin["headers"])

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Audit log not found"

    async def test_malformed_id(self, async_client, admin, seeded):
        response = await async_client.get("/audit/log/not-an-id", headers=admin["headers"])

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestExport:
    async def test_json_export(self, async_client, admin, seeded):
        response = await async_client.get("/audit/export", headers=admin["headers"])

        assert response.status_code == 200
        assert re.search(r'filename="audit-logs-\d+\.json"', response.headers["content-disposition"])
        data = response.json()["data"]
        assert data["totalRecords"] == 4
        assert data["exportDate"]

    async def test_csv_export(self, async_client, admin, seeded):
        response = await async_client.get(
            "/audit/export", params={"format": "csv", "entity": "User"}, headers=admin["headers"]
        )

        assert response.headers["content-type"].startswith("text/csv")
        assert re.search(r'filename="audit-logs-\d+\.csv"', response.headers["content-disposition"])
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0] == CSV_HEADERS
        assert len(rows) == 4

    async def test_empty_csv(self, async_client, admin, seeded):
        response = await async_client.get(
            "/audit/export", params={"format": "csv", "entity": "Nothing"}, headers=admin["headers"]
        )
        assert response.text == "No data available"

    async def test_unknown_format(self, async_client, admin, seeded):
        response = await async_client.get(
            "/audit/export", params={"format": "xml"}, headers=admin["headers"]
        )
        assert response.status_code == 400

    async def test_member_forbidden(self, async_client, member, seeded):
        response = await async_client.get("/audit/export", headers=member["headers"])
        assert response.status_code == 403
