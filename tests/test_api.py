"""Tests for the Custodian HTTP API.

Tests cover:
- Health check and request ID propagation
- Caller identification through gateway headers
- Session admission against the daily quota
- Session status, extension and expiry permissions
- Quota status and reservation error mapping
- Retention record registration
- Admin cleanup endpoints and their role check
"""

from __future__ import annotations

import hashlib

import pytest

from custodian.db.models.base import CleanupTaskStatus
from custodian.services.cleanup import CancellationToken
from custodian.services.types import CleanupTask


def sha(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


class TestHealthAndMiddleware:
    """Tests for health check and middleware behaviour."""

    @pytest.mark.asyncio
    async def test_health(self, api_client):
        response = await api_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_generates_request_id(self, api_client):
        response = await api_client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 36

    @pytest.mark.asyncio
    async def test_keeps_client_request_id(self, api_client):
        response = await api_client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_error_carries_request_id(self, api_client):
        response = await api_client.get("/api/quota", headers={"X-Request-ID": "req-err"})

        assert response.status_code == 401
        body = response.json()
        assert body["error"] == "unauthorized"
        assert body["request_id"] == "req-err"


class TestSessionEndpoints:
    """Tests for /api/sessions."""

    @pytest.mark.asyncio
    async def test_create_session(self, api_client, user_headers):
        response = await api_client.post(
            "/api/sessions",
            json={"session_id": "s1", "security_level": "enhanced", "requested_hours": 100},
            headers=user_headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["session_id"] == "s1"
        assert body["owner_id"] == "user-1"
        assert body["max_extensions"] == 2
        assert body["quota_remaining"] == 2

    @pytest.mark.asyncio
    async def test_create_generates_id(self, api_client, user_headers):
        response = await api_client.post("/api/sessions", json={}, headers=user_headers)

        assert response.status_code == 201
        assert len(response.json()["session_id"]) == 32

    @pytest.mark.asyncio
    async def test_create_beyond_quota(self, api_client, user_headers, engine):
        for i in range(3):
            response = await api_client.post(
                "/api/sessions", json={"session_id": f"s{i}"}, headers=user_headers
            )
            assert response.status_code == 201

        response = await api_client.post(
            "/api/sessions", json={"session_id": "s3"}, headers=user_headers
        )

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "quota_exceeded"
        assert body["detail"]["used"] == 3
        assert body["detail"]["reset_at"] == "2025-03-10T15:00:00+00:00"
        assert await engine.sessions.get("s3") is None

    @pytest.mark.asyncio
    async def test_create_with_taken_id_conflicts(self, api_client, engine):
        """Reusing another user's session id neither replaces nor resets it."""
        alice = {"X-User-ID": "alice"}
        mallory = {"X-User-ID": "mallory"}
        await api_client.post(
            "/api/sessions",
            json={"session_id": "s-alice", "security_level": "maximum"},
            headers=alice,
        )
        await api_client.post(
            "/api/sessions/s-alice/extend", json={"reason": "reviewing"}, headers=alice
        )

        response = await api_client.post(
            "/api/sessions",
            json={"session_id": "s-alice", "security_level": "standard"},
            headers=mallory,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"
        session = await engine.sessions.get("s-alice")
        assert session.owner_id == "alice"
        assert session.extension_count == 1
        assert (await engine.quota.status("mallory")).used == 0

    @pytest.mark.asyncio
    async def test_create_requires_caller(self, api_client):
        response = await api_client.post("/api/sessions", json={})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_create_rejects_bad_level(self, api_client, user_headers):
        response = await api_client.post(
            "/api/sessions", json={"security_level": "extreme"}, headers=user_headers
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_status(self, api_client, user_headers):
        await api_client.post(
            "/api/sessions", json={"session_id": "s1", "requested_hours": 2}, headers=user_headers
        )

        response = await api_client.get("/api/sessions/s1/status", headers=user_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["exists"] is True
        assert body["expired"] is False
        assert body["time_remaining_seconds"] == 7200
        assert body["extensions_remaining"] == 3

    @pytest.mark.asyncio
    async def test_status_unknown_session(self, api_client, user_headers):
        response = await api_client.get("/api/sessions/missing/status", headers=user_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["exists"] is False
        assert body["expired"] is True

    @pytest.mark.asyncio
    async def test_status_of_other_users_session(self, api_client, user_headers, admin_headers):
        await api_client.post("/api/sessions", json={"session_id": "s1"}, headers=user_headers)

        response = await api_client.get(
            "/api/sessions/s1/status", headers={"X-User-ID": "user-2"}
        )
        assert response.status_code == 403

        response = await api_client.get("/api/sessions/s1/status", headers=admin_headers)
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_extend(self, api_client, user_headers):
        await api_client.post(
            "/api/sessions",
            json={"session_id": "s1", "security_level": "maximum", "requested_hours": 1},
            headers=user_headers,
        )

        first = await api_client.post(
            "/api/sessions/s1/extend",
            json={"reason": "still reading", "additional_hours": 4},
            headers=user_headers,
        )
        second = await api_client.post(
            "/api/sessions/s1/extend", json={"reason": "again"}, headers=user_headers
        )

        assert first.status_code == 200
        assert first.json()["extended"] is True
        assert first.json()["status"]["time_remaining_seconds"] == 4 * 3600
        assert second.status_code == 200
        assert second.json()["extended"] is False
        assert second.json()["status"]["can_extend"] is False

    @pytest.mark.asyncio
    async def test_extend_errors(self, api_client, user_headers):
        response = await api_client.post(
            "/api/sessions/missing/extend", json={"reason": "x"}, headers=user_headers
        )
        assert response.status_code == 404

        await api_client.post("/api/sessions", json={"session_id": "s1"}, headers=user_headers)
        response = await api_client.post(
            "/api/sessions/s1/extend", json={"reason": "x"}, headers={"X-User-ID": "user-2"}
        )
        assert response.status_code == 403

        response = await api_client.post(
            "/api/sessions/s1/extend", json={"reason": ""}, headers=user_headers
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_expire(self, api_client, user_headers, engine):
        await api_client.post("/api/sessions", json={"session_id": "s1"}, headers=user_headers)

        first = await api_client.post("/api/sessions/s1/expire", headers=user_headers)
        second = await api_client.post("/api/sessions/s1/expire", headers=user_headers)

        assert first.json() == {"session_id": "s1", "expired": True}
        assert second.json() == {"session_id": "s1", "expired": False}
        assert await engine.sessions.get("s1") is None

    @pytest.mark.asyncio
    async def test_expire_other_users_session(self, api_client, user_headers, admin_headers):
        await api_client.post("/api/sessions", json={"session_id": "s1"}, headers=user_headers)

        response = await api_client.post(
            "/api/sessions/s1/expire", headers={"X-User-ID": "user-2"}
        )
        assert response.status_code == 403

        response = await api_client.post("/api/sessions/s1/expire", headers=admin_headers)
        assert response.json()["expired"] is True


class TestQuotaEndpoints:
    """Tests for /api/quota."""

    @pytest.mark.asyncio
    async def test_status(self, api_client, user_headers):
        response = await api_client.get("/api/quota", headers=user_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["period_key"] == "2025-03-10"
        assert body["used"] == 0
        assert body["remaining"] == 3

    @pytest.mark.asyncio
    async def test_reserve(self, api_client, user_headers):
        response = await api_client.post(
            "/api/quota/reserve", json={"amount": 2}, headers=user_headers
        )

        assert response.status_code == 200
        assert response.json()["used"] == 2
        assert response.json()["remaining"] == 1

    @pytest.mark.asyncio
    async def test_reserve_beyond_limit(self, api_client, user_headers):
        await api_client.post("/api/quota/reserve", json={"amount": 2}, headers=user_headers)

        response = await api_client.post(
            "/api/quota/reserve", json={"amount": 2}, headers=user_headers
        )

        assert response.status_code == 429
        status = await api_client.get("/api/quota", headers=user_headers)
        assert status.json()["used"] == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, 11])
    async def test_reserve_rejects_bad_amount(self, api_client, user_headers, amount):
        response = await api_client.post(
            "/api/quota/reserve", json={"amount": amount}, headers=user_headers
        )
        assert response.status_code == 422


class TestRetentionEndpoints:
    """Tests for /api/retention."""

    @pytest.mark.asyncio
    async def test_register(self, api_client, user_headers, engine):
        response = await api_client.post(
            "/api/retention/records",
            json={
                "data_id": "doc-1",
                "data_type": "analysis_result",
                "content_hash": sha("doc-1"),
                "policy_id": "analysis-results",
            },
            headers=user_headers,
        )

        assert response.status_code == 201
        assert response.json()["is_archived"] is False
        record = await engine.catalog.get_record("doc-1")
        assert record.metadata["registered_by"] == "user-1"

    @pytest.mark.asyncio
    async def test_register_unknown_policy(self, api_client, user_headers):
        response = await api_client.post(
            "/api/retention/records",
            json={
                "data_id": "doc-1",
                "data_type": "analysis_result",
                "content_hash": sha("doc-1"),
                "policy_id": "missing",
            },
            headers=user_headers,
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_register_bad_hash(self, api_client, user_headers):
        response = await api_client.post(
            "/api/retention/records",
            json={
                "data_id": "doc-1",
                "data_type": "analysis_result",
                "content_hash": "g" * 64,
                "policy_id": "analysis-results",
            },
            headers=user_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"


class TestAdminEndpoints:
    """Tests for /api/admin."""

    @pytest.mark.asyncio
    async def test_requires_admin_role(self, api_client, user_headers):
        response = await api_client.post("/api/admin/cleanup/run", headers=user_headers)

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    @pytest.mark.asyncio
    async def test_run_and_verify_cleanup(self, api_client, admin_headers, engine, clock):
        await engine.catalog.register("rec-1", "session_data", sha("rec-1"), "session-data")
        clock.advance(days=31)

        response = await api_client.post("/api/admin/cleanup/run", headers=admin_headers)

        assert response.status_code == 200
        report = response.json()
        assert report["status"] == "completed"
        assert report["records_deleted"] == 1

        response = await api_client.get(
            f"/api/admin/cleanup/{report['task_id']}/verify", headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["is_complete"] is True
        assert response.json()["verification_hash"] == report["verification_hash"]

        response = await api_client.get("/api/admin/cleanup/history", headers=admin_headers)
        assert [t["task_id"] for t in response.json()] == [report["task_id"]]

    @pytest.mark.asyncio
    async def test_run_scoped_cleanup(self, api_client, admin_headers):
        response = await api_client.post(
            "/api/admin/cleanup/run",
            json={"policy_id": "analysis-results"},
            headers=admin_headers,
        )
        assert response.json()["policy_id"] == "analysis-results"

    @pytest.mark.asyncio
    async def test_run_while_running_conflicts(self, api_client, admin_headers, engine):
        engine.cleanup._running["busy"] = CancellationToken()
        try:
            response = await api_client.post("/api/admin/cleanup/run", headers=admin_headers)
        finally:
            engine.cleanup._running.clear()

        assert response.status_code == 409
        assert response.json()["detail"] == {"running_task_ids": ["busy"]}

    @pytest.mark.asyncio
    async def test_run_while_other_process_runs_conflicts(
        self, api_client, admin_headers, engine, clock
    ):
        await engine.store.put_task(
            CleanupTask(
                task_id="other-worker",
                policy_id=None,
                scheduled_at=clock.now,
                status=CleanupTaskStatus.RUNNING,
                started_at=clock.now,
            )
        )

        response = await api_client.post("/api/admin/cleanup/run", headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["detail"] == {"running_task_ids": ["other-worker"]}

    @pytest.mark.asyncio
    async def test_verify_unknown_task(self, api_client, admin_headers):
        response = await api_client.get("/api/admin/cleanup/missing/verify", headers=admin_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_abort(self, api_client, admin_headers, engine):
        response = await api_client.post("/api/admin/cleanup/abort", headers=admin_headers)
        assert response.json() == {"aborted": False, "running_task_ids": []}

        token = engine.cleanup._running["busy"] = CancellationToken()
        try:
            response = await api_client.post(
                "/api/admin/cleanup/abort", json={"task_id": "busy"}, headers=admin_headers
            )
        finally:
            engine.cleanup._running.clear()

        assert response.json()["aborted"] is True
        assert token.cancelled is True

    @pytest.mark.asyncio
    async def test_retention_stats(self, api_client, admin_headers, engine):
        await engine.catalog.register("rec-1", "session_data", sha("rec-1"), "session-data")

        response = await api_client.get("/api/admin/retention/stats", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["total_records"] == 1
        assert response.json()["by_policy"] == {"session-data": 1}
