import pytest
import os
import tempfile
import gc
from unittest.mock import patch
from fastapi.testclient import TestClient

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
from lockout_service import attempt_logger, db, main
from lockout_service.errors import StorageUnavailable


@pytest.fixture(scope="function")
def temp_db():
    """Create a temporary database for testing"""
    fd, temp_path = tempfile.mkstemp(suffix='.db')
    os.close(fd)

    try:
        yield temp_path
    finally:
        if db.engine is not None:
            db.engine.dispose()
        gc.collect()
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(temp_path + suffix):
                os.remove(temp_path + suffix)


@pytest.fixture(scope="function")
def client(temp_db, tmp_path):
    """Create a test client wired to a temporary database"""
    main.init_service(temp_db)
    # Reset rate limiter for each test
    main.rate_limiter.reset()
    attempt_logger.configure(str(tmp_path / "attempts.log"))

    test_client = TestClient(main.app)
    yield test_client

    test_client.close()
    main.statistics.shutdown()


def fail(client, account_id, times=1, kind="login"):
    response = None
    for _ in range(times):
        response = client.post(f"/accounts/{account_id}/failures", json={"kind": kind})
        assert response.status_code == 200
    return response.json()


class TestHealthEndpoint:
    """Test the health check endpoint"""

    def test_health_endpoint(self, client):
        """Test that health endpoint returns ok"""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestAccounts:
    """Test the account directory endpoint"""

    def test_register_account(self, client):
        response = client.post("/accounts", json={"accountId": "acct_001", "name": "Asha Levi", "email": "asha@example.com"})
        assert response.status_code == 200
        assert response.json()["accountId"] == "acct_001"

    def test_register_duplicate_account(self, client):
        body = {"accountId": "acct_001", "name": "Asha Levi", "email": "asha@example.com"}
        client.post("/accounts", json=body)

        response = client.post("/accounts", json=body)
        assert response.status_code == 400
        assert "Account already exists" in response.json()["detail"]

    def test_register_requires_id(self, client):
        response = client.post("/accounts", json={"accountId": "", "name": "x", "email": "x@example.com"})
        assert response.status_code == 422


class TestFailures:
    """Test recording attempt outcomes"""

    def test_failures_lock_account(self, client):
        """Three failed logins lock the account at tier 1"""
        first = fail(client, "alice", times=2)
        assert first["locked"] is False
        assert first["attemptsRemaining"] == 1

        decision = fail(client, "alice")
        assert decision["locked"] is True
        assert decision["tier"] == 1
        assert decision["lockReason"] == "failed_login"

        status = client.get("/accounts/alice/status").json()
        assert status["locked"] is True
        assert status["failedLoginAttempts"] == 3

    def test_failure_without_body_counts_login(self, client):
        response = client.post("/accounts/alice/failures")
        assert response.status_code == 200
        assert client.get("/accounts/alice/status").json()["failedLoginAttempts"] == 1

    def test_invalid_kind(self, client):
        response = client.post("/accounts/alice/failures", json={"kind": "sms"})
        assert response.status_code == 422

    def test_success_resets_counter(self, client):
        fail(client, "alice", times=2)
        fail(client, "alice", kind="password_change")

        status = client.post("/accounts/alice/successes", json={"kind": "login"}).json()
        assert status["failedLoginAttempts"] == 0
        assert status["failedPasswordChangeAttempts"] == 1

    def test_status_of_unknown_account(self, client):
        status = client.get("/accounts/nobody/status").json()
        assert status["locked"] is False
        assert status["tier"] == 0

    def test_attempts_are_logged(self, client, tmp_path):
        fail(client, "alice")
        lines = (tmp_path / "attempts.log").read_text().splitlines()
        assert len(lines) == 1
        assert '"account_id": "alice"' in lines[0]

    def test_storage_failure_fails_closed(self, client):
        """When the ledger is unreachable the caller is told to treat the account as locked"""
        with patch.object(main.ledger, "get_record", side_effect=StorageUnavailable("Ledger unavailable during get_record")):
            response = client.post("/accounts/alice/failures", json={"kind": "login"})

        assert response.status_code == 503
        assert response.json()["locked"] is True
        assert response.json()["retryable"] is True


class TestUnlock:
    """Test administrative unlock endpoints"""

    def test_unlock_with_reset(self, client):
        fail(client, "alice", times=3)

        response = client.post("/accounts/alice/unlock", json={"resetAttempts": True}, headers={"X-Actor": "ops"})
        assert response.status_code == 200
        assert response.json()["unlocked"] is True
        assert response.json()["previousTier"] == 1

        assert fail(client, "alice", times=2)["locked"] is False

    def test_unlock_unknown_account(self, client):
        response = client.post("/accounts/nobody/unlock", json={"resetAttempts": True})
        assert response.status_code == 200
        assert response.json()["unlocked"] is False

    def test_bulk_unlock(self, client):
        fail(client, "A", times=3)
        fail(client, "C", times=3)

        response = client.post("/accounts/bulk-unlock", json={"ids": ["A", "B", "C"], "resetAttempts": False})
        assert response.status_code == 200
        assert response.json() == {"succeeded": ["A", "C"], "failed": {"B": "not_found"}}

    def test_unlock_all(self, client):
        fail(client, "A", times=3)
        fail(client, "B", times=4)

        response = client.post("/accounts/unlock-all", json={"resetAttempts": True})
        assert response.status_code == 200
        assert response.json()["unlockedCount"] == 2

        locked = client.get("/locked-accounts").json()
        assert locked["totalLocked"] == 0

    def test_unlock_is_audited(self, client):
        fail(client, "alice", times=3)
        client.post("/accounts/alice/unlock", json={"resetAttempts": True}, headers={"X-Actor": "ops"})

        entries = client.get("/audit-log", params={"accountId": "alice"}).json()
        assert entries[0]["eventType"] == "admin_unlock"
        assert entries[0]["actor"] == "ops"
        assert entries[1]["eventType"] == "lockout"

    def test_admin_rate_limit(self, client):
        client.put("/security-policy", json={"advanced_security": {"max_requests_per_minute": 2}})

        for _ in range(2):
            response = client.post("/accounts/nobody/unlock", headers={"X-Actor": "ops"})
            assert response.status_code == 200

        response = client.post("/accounts/nobody/unlock", headers={"X-Actor": "ops"})
        assert response.status_code == 429
        assert "Retry-After" in response.headers


class TestAdminLock:
    """Test manual locks"""

    def test_lock_account(self, client):
        response = client.post("/accounts/alice/lock", json={"durationMinutes": 15, "tier": 2})
        assert response.status_code == 200
        assert response.json()["tier"] == 2
        assert response.json()["lockReason"] == "admin_lock"

        locked = client.get("/locked-accounts").json()
        assert locked["accounts"][0]["accountId"] == "alice"
        assert locked["accounts"][0]["remainingMinutes"] == 15

    def test_lock_unknown_tier(self, client):
        response = client.post("/accounts/alice/lock", json={"tier": 9})
        assert response.status_code == 400


class TestLockedAccounts:
    """Test the locked accounts listing"""

    def test_lists_directory_details(self, client):
        client.post("/accounts", json={"accountId": "alice", "name": "Alice", "email": "alice@example.com"})
        fail(client, "alice", times=3)
        fail(client, "bob", times=1)

        locked = client.get("/locked-accounts").json()
        assert locked["totalLocked"] == 1
        account = locked["accounts"][0]
        assert account["name"] == "Alice"
        assert account["failedLoginAttempts"] == 3
        assert account["lockReason"] == "failed_login"
        assert locked["byReason"] == {"failed_login": 1}

    def test_paging_and_reason_filter(self, client):
        fail(client, "alice", times=3)
        fail(client, "bob", times=3, kind="password_change")
        client.post("/accounts/carol/lock", json={"durationMinutes": 15})

        first = client.get("/locked-accounts", params={"page": 1, "limit": 1}).json()
        assert [a["accountId"] for a in first["accounts"]] == ["carol"]

        page = client.get("/locked-accounts", params={"page": 2, "limit": 2}).json()
        assert len(page["accounts"]) == 1
        assert page["totalLocked"] == 3
        assert page["recentLockouts"] == 3

        filtered = client.get("/locked-accounts", params={"lockoutReason": "admin_lock"}).json()
        assert [a["accountId"] for a in filtered["accounts"]] == ["carol"]
        assert filtered["accounts"][0]["remainingTimeFormatted"] in ("15m", "14m 59s")
        assert filtered["byReason"] == {"failed_login": 1, "failed_password_change": 1, "admin_lock": 1}

    def test_bad_query(self, client):
        assert client.get("/locked-accounts", params={"lockoutReason": "captcha"}).status_code == 422
        assert client.get("/locked-accounts", params={"page": 0}).status_code == 422


class TestSecurityPolicy:
    """Test policy read and update"""

    def test_get_default_policy(self, client):
        policy = client.get("/security-policy").json()
        assert policy["version"] == 1
        assert policy["lockout_thresholds"]["level_1"] == {"attempts": 3, "duration": 1}
        assert len(policy["lockout_thresholds"]) == 4

    def test_update_policy(self, client):
        response = client.put(
            "/security-policy",
            json={"lockout_thresholds": {"level_1": {"attempts": 2, "duration": 5}}},
            headers={"X-Actor": "ops"},
        )
        assert response.status_code == 200
        assert response.json()["version"] == 2

        assert fail(client, "alice", times=2)["locked"] is True
        history = client.get("/security-policy/history").json()
        assert [entry["version"] for entry in history] == [1, 2]
        assert history[1]["actor"] == "ops"

    def test_partial_level_update(self, client):
        """Only the named level changes and the response shows the whole table"""
        response = client.put("/security-policy", json={"lockout_thresholds": {"level_3": {"duration": 20}}})
        assert response.status_code == 200

        levels = client.get("/security-policy").json()["lockout_thresholds"]
        assert levels == response.json()["lockout_thresholds"]
        assert levels["level_3"] == {"attempts": 5, "duration": 20}
        assert levels["level_4"] == {"attempts": 6, "duration": 30}

    def test_invalid_policy_rejected(self, client):
        """Decreasing thresholds are refused and the active policy stays in effect"""
        response = client.put(
            "/security-policy",
            json={"lockout_thresholds": [{"attempts": 5, "duration": 1}, {"attempts": 3, "duration": 5}]},
        )
        assert response.status_code == 422
        assert response.json()["detail"] == "Invalid security policy"
        assert response.json()["errors"]

        assert client.get("/security-policy").json()["version"] == 1
        assert fail(client, "alice", times=3)["locked"] is True


class TestStatistics:
    """Test the statistics endpoint"""

    def test_statistics(self, client):
        fail(client, "alice", times=3)
        fail(client, "bob", times=3)
        fail(client, "bob")

        stats = client.get("/lockout-statistics", params={"range": "24h"}).json()
        assert stats["range"] == "24h"
        assert stats["overview"]["currently_locked"] == 2
        assert stats["most_affected_accounts"][0]["account_id"] == "bob"

    def test_default_range(self, client):
        assert client.get("/lockout-statistics").json()["range"] == "30d"

    def test_unknown_range(self, client):
        response = client.get("/lockout-statistics", params={"range": "1y"})
        assert response.status_code == 400
