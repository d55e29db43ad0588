"""
Tests for the FastAPI layer
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from keygate.config.settings import Settings
from keygate.errors import StorageUnavailableError
from keygate.keygate_service import KeyGate
from keygate.services.rate_limiter import FailedAttemptLimiter, RateLimiter, RateLimitPolicy
from keygate_api import create_app

ADMIN_TOKEN = "api-test-token"
ADMIN = {"X-Admin-Token": ADMIN_TOKEN}
MASTER_KEY = "api-master-key"


def build_keygate(db_config, clock, admin_token=ADMIN_TOKEN, master_key=MASTER_KEY):
    settings = Settings(admin_token=admin_token, master_key=master_key,
                        database=db_config, public_url="https://keys.example.com")
    return KeyGate(
        settings,
        validate_limiter=RateLimiter(RateLimitPolicy(8, 15), clock=clock, name="validate"),
        delivery_limiter=RateLimiter(RateLimitPolicy(20, 15), clock=clock, name="delivery"),
        operator_limiter=RateLimiter(RateLimitPolicy(100, 60), clock=clock, name="operator"),
        failed_logins=FailedAttemptLimiter(3, 900, clock=clock),
    )


@pytest.fixture
def keygate(db_config, clock):
    return build_keygate(db_config, clock)


@pytest.fixture
def client(keygate):
    return TestClient(create_app(keygate))


@pytest.fixture
def payload_hash(client):
    response = client.post("/admin/payloads", json={"content": "print('api')", "label": "Api"}, headers=ADMIN)
    return response.json()["payload"]["payload_hash"]


@pytest.fixture
def key_id(client, payload_hash):
    response = client.post("/admin/keys", json={"scriptHash": payload_hash}, headers=ADMIN)
    return response.json()["key"]["key_id"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestValidateEndpoint:

    def test_get_with_aliases(self, client, key_id, payload_hash):
        response = client.get("/api/validate", params={
            "key": key_id, "scriptHash": payload_hash, "hwid": "F1", "username": "alice"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "content": "print('api')"}

    def test_post_body(self, client, key_id, payload_hash):
        response = client.post("/api/validate", json={
            "key": key_id, "payload_hash": payload_hash, "hwid": "F1", "robloxUsername": "alice"})

        assert response.status_code == 200
        assert response.json()["ok"] is True

        usage = client.get(f"/admin/keys/{key_id}/usage", headers=ADMIN).json()
        assert usage["stats"]["known_identities"] == ["alice"]

    def test_missing_fields(self, client):
        response = client.post("/api/validate", json={"key": "KG-AAAA"})

        assert response.status_code == 400
        assert response.json()["error"] == "MalformedRequest"

    def test_invalid_key(self, client, payload_hash):
        response = client.get("/api/validate", params={"key": "KG-NOPE", "payload_hash": payload_hash})

        assert response.status_code == 404
        assert response.json() == {"ok": False, "error": "InvalidKey", "message": "Invalid key"}

    def test_device_mismatch(self, client, key_id, payload_hash):
        client.get("/api/validate", params={"key": key_id, "payload_hash": payload_hash, "hwid": "F1"})
        response = client.get("/api/validate", params={"key": key_id, "payload_hash": payload_hash, "hwid": "F2"})

        assert response.status_code == 403
        assert response.json()["error"] == "DeviceMismatch"

    def test_rate_limited(self, client, payload_hash):
        params = {"key": "KG-NOPE", "payload_hash": payload_hash}
        headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
        for _ in range(8):
            client.get("/api/validate", params=params, headers=headers)

        response = client.get("/api/validate", params=params, headers=headers)

        assert response.status_code == 429
        assert response.json()["error"] == "RateLimited"
        assert response.headers["Retry-After"] == "15"

        # Other clients keep their own window
        other = client.get("/api/validate", params=params, headers={"X-Forwarded-For": "203.0.113.8"})
        assert other.status_code == 404

    def test_storage_unavailable(self, client, keygate, key_id, payload_hash):
        failing = AsyncMock(side_effect=StorageUnavailableError("database is locked"))
        with patch.object(keygate.validation_engine, "validate", failing):
            response = client.get("/api/validate", params={"key": key_id, "payload_hash": payload_hash})

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        body = response.json()
        assert body["error"] == "StorageUnavailable"
        assert "locked" not in body["message"]


class TestLoaderEndpoint:

    def test_stub_without_key(self, client, payload_hash):
        response = client.get(f"/files/loader/{payload_hash}.lua")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "no-store" in response.headers["cache-control"]
        assert response.headers["x-content-type-options"] == "nosniff"
        assert f"https://keys.example.com/files/loader/{payload_hash}.lua" in response.text

    def test_artifact_with_key(self, client, key_id, payload_hash):
        response = client.get(f"/files/loader/{payload_hash}.lua",
                              params={"key": key_id, "hwid": "F1", "identity": "alice"})

        assert response.status_code == 200
        assert response.text.startswith("-- KeyGate Loader")
        assert "print('api')" not in response.text

    def test_denial_is_lua(self, client, payload_hash):
        response = client.get(f"/files/loader/{payload_hash}.lua", params={"key": "KG-NOPE"})

        assert response.status_code == 404
        assert response.text.startswith('error("[KeyGate] Invalid key"')

    def test_bad_hash(self, client):
        response = client.get("/files/loader/not-a-hash.lua")
        assert response.status_code == 400

    def test_rate_limited_has_retry_after(self, client, payload_hash):
        for _ in range(20):
            client.get(f"/files/loader/{payload_hash}.lua")

        response = client.get(f"/files/loader/{payload_hash}.lua")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "15"
        assert response.text.startswith("error(")


class TestOperatorAuth:

    def test_missing_token(self, client):
        response = client.get("/admin/keys")
        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized"

    def test_wrong_token(self, client):
        response = client.get("/admin/keys", headers={"X-Admin-Token": "nope"})
        assert response.status_code == 401

    def test_lockout(self, client):
        for _ in range(3):
            client.get("/admin/keys", headers={"X-Admin-Token": "nope"})

        response = client.get("/admin/keys", headers=ADMIN)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "900"

    def test_access_key_is_not_operator_credential(self, client, key_id):
        response = client.get("/admin/keys", headers={"X-Admin-Token": key_id})
        assert response.status_code == 401


class TestKeyAdministration:

    def test_create_with_aliases(self, client, payload_hash):
        response = client.post("/admin/keys", headers=ADMIN, json={
            "note": "vip", "scriptHash": payload_hash, "maxUses": 3, "expiresAt": "2030-01-01T00:00:00Z"})

        assert response.status_code == 200
        key = response.json()["key"]
        assert key["key_id"].startswith("KG-")
        assert key["max_uses"] == 3
        assert key["bound_payload_hash"] == payload_hash
        assert key["expires_at"].startswith("2030-01-01")

    @pytest.mark.parametrize("body,message", [
        ({"max_uses": 0}, "max_uses must be a positive integer"),
        ({"scriptHash": "zzz"}, "Invalid payload hash"),
        ({"expires_at": "soon"}, "Invalid expiry time"),
        ({"expires_at": 10 ** 20}, "Invalid expiry time"),
        ({"expiresAt": "99999999999999999999"}, "Invalid expiry time"),
    ])
    def test_create_invalid(self, client, body, message):
        response = client.post("/admin/keys", headers=ADMIN, json=body)

        assert response.status_code == 400
        assert response.json()["error"] == "MalformedRequest"
        assert message in response.json()["message"]

    def test_create_wrong_type(self, client):
        response = client.post("/admin/keys", headers=ADMIN, json={"max_uses": "lots"})
        assert response.status_code == 400

    def test_list_and_filter(self, client, key_id, payload_hash):
        client.post("/admin/keys", headers=ADMIN, json={})

        assert client.get("/admin/keys", headers=ADMIN).json()["count"] == 2
        filtered = client.get("/admin/keys", params={"payload_hash": payload_hash}, headers=ADMIN).json()
        assert [k["key_id"] for k in filtered["keys"]] == [key_id]

        upper = client.get("/admin/keys", params={"payload_hash": payload_hash.upper()}, headers=ADMIN).json()
        assert [k["key_id"] for k in upper["keys"]] == [key_id]

    def test_patch(self, client, key_id, payload_hash):
        client.get("/api/validate", params={"key": key_id, "payload_hash": payload_hash, "hwid": "F1"})

        response = client.patch(f"/admin/keys/{key_id}", headers=ADMIN,
                                json={"note": "edited", "resetHwid": True, "scriptHash": None})

        key = response.json()["key"]
        assert key["note"] == "edited"
        assert key["device_fingerprint"] is None
        assert key["bound_payload_hash"] is None
        assert key["use_count"] == 1

    def test_patch_nothing(self, client, key_id):
        response = client.patch(f"/admin/keys/{key_id}", headers=ADMIN, json={})
        assert response.status_code == 400
        assert response.json()["message"] == "Nothing to update"

    def test_patch_out_of_range_expiry(self, client, key_id):
        response = client.patch(f"/admin/keys/{key_id}", headers=ADMIN, json={"expires_at": 10 ** 20})

        assert response.status_code == 400
        assert response.json()["error"] == "MalformedRequest"

    def test_revoke_unrevoke_delete(self, client, key_id, payload_hash):
        assert client.post(f"/admin/keys/{key_id}/revoke", headers=ADMIN).json()["key"]["blacklisted"] is True
        denied = client.get("/api/validate", params={"key": key_id, "payload_hash": payload_hash})
        assert denied.json()["error"] == "Revoked"

        assert client.post(f"/admin/keys/{key_id}/unrevoke", headers=ADMIN).json()["key"]["blacklisted"] is False
        assert client.delete(f"/admin/keys/{key_id}", headers=ADMIN).json() == {"ok": True}

        missing = client.get(f"/admin/keys/{key_id}", headers=ADMIN)
        assert missing.status_code == 404
        assert missing.json()["error"] == "InvalidKey"


class TestPayloadAdministration:

    def test_save_and_get(self, client):
        response = client.post("/admin/payloads", headers=ADMIN, json={"content": "print(2)", "label": "Two"})

        payload = response.json()["payload"]
        assert payload["created"] is True
        assert payload["loader_url"].endswith(f"/files/loader/{payload['payload_hash']}.lua")

        detail = client.get(f"/admin/payloads/{payload['payload_hash']}", headers=ADMIN).json()["payload"]
        assert detail["content"] == "print(2)"
        assert detail["label"] == "Two"

    def test_save_with_hash_alias_replaces(self, client, payload_hash):
        response = client.post("/admin/payloads", headers=ADMIN, json={"content": "print(3)", "hash": payload_hash})

        assert response.json()["payload"]["created"] is False
        detail = client.get(f"/admin/payloads/{payload_hash}", headers=ADMIN).json()["payload"]
        assert detail["content"] == "print(3)"
        assert detail["label"] == "Api"

    def test_save_empty_content(self, client):
        response = client.post("/admin/payloads", headers=ADMIN, json={"content": ""})
        assert response.status_code == 400
        assert response.json()["message"] == "Content cannot be empty"

    def test_patch_list_delete(self, client, payload_hash):
        patched = client.patch(f"/admin/payloads/{payload_hash}", headers=ADMIN, json={"label": "Renamed"})
        assert patched.json()["payload"]["label"] == "Renamed"

        listed = client.get("/admin/payloads", headers=ADMIN).json()
        assert listed["count"] == 1

        assert client.delete(f"/admin/payloads/{payload_hash}", headers=ADMIN).json() == {"ok": True}
        missing = client.get(f"/admin/payloads/{payload_hash}", headers=ADMIN)
        assert missing.status_code == 404
        assert missing.json()["error"] == "PayloadNotFound"


class TestUsageAndSecurity:

    def test_payload_usage(self, client, key_id, payload_hash):
        client.get("/api/validate", params={"key": key_id, "payload_hash": payload_hash, "username": "bob"})

        usage = client.get(f"/admin/payloads/{payload_hash}/usage", headers=ADMIN).json()
        assert usage["stats"]["total_uses"] == 1
        assert usage["entries"][0]["identity"] == "bob"

        cleared = client.delete(f"/admin/payloads/{payload_hash}/usage", headers=ADMIN).json()
        assert cleared["cleared"] == 1

    def test_key_usage_clear(self, client, key_id, payload_hash):
        client.get("/api/validate", params={"key": key_id, "payload_hash": payload_hash})
        assert client.delete(f"/admin/keys/{key_id}/usage", headers=ADMIN).json()["cleared"] == 1
        assert client.get(f"/admin/keys/{key_id}", headers=ADMIN).json()["key"]["use_count"] == 1

    def test_security_events(self, client, payload_hash):
        client.get("/api/validate", params={"key": "KG-NOPE", "payload_hash": payload_hash})
        client.get("/admin/stats", headers={"X-Admin-Token": "nope"})

        events = client.get("/admin/security-events", headers=ADMIN).json()
        assert [e["event_type"] for e in events["events"]] == ["bad_admin_credential", "invalid_key"]

        filtered = client.get("/admin/security-events", params={"event_type": "invalid_key"}, headers=ADMIN).json()
        assert filtered["count"] == 1

        assert client.delete("/admin/security-events", headers=ADMIN).json()["cleared"] == 2
        assert client.get("/admin/security-events", headers=ADMIN).json()["count"] == 0

    def test_security_events_bad_limit(self, client):
        response = client.get("/admin/security-events", params={"limit": 0}, headers=ADMIN)
        assert response.status_code == 400

    def test_stats(self, client, key_id):
        stats = client.get("/admin/stats", headers=ADMIN).json()["stats"]
        assert stats["total_keys"] == 1
        assert stats["total_payloads"] == 1
        assert stats["database_type"] == "SQLite"


class TestStoredPayloadFaults:

    def test_rotating_admin_token_keeps_payloads_readable(self, db_config, clock, key_id, payload_hash):
        rotated = TestClient(create_app(build_keygate(db_config, clock, admin_token="rotated-token")))

        response = rotated.get("/api/validate", params={"key": key_id, "payload_hash": payload_hash})

        assert response.status_code == 200
        assert response.json()["content"] == "print('api')"

    def test_unreadable_payload_on_validate(self, db_config, clock, key_id, payload_hash):
        other = TestClient(create_app(build_keygate(db_config, clock, master_key="another-master-key")))

        response = other.get("/api/validate", params={"key": key_id, "payload_hash": payload_hash})

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        body = response.json()
        assert body["error"] == "StorageUnavailable"
        assert body["message"] == "Service temporarily unavailable, retry later"

    def test_unreadable_payload_on_loader(self, db_config, clock, key_id, payload_hash):
        other = TestClient(create_app(build_keygate(db_config, clock, master_key="another-master-key")))

        response = other.get(f"/files/loader/{payload_hash}.lua", params={"key": key_id, "hwid": "F1"})

        assert response.status_code == 503
        assert response.headers["content-type"].startswith("text/plain")
        assert response.headers["Retry-After"] == "1"
        assert response.text.startswith('error("[KeyGate] Service temporarily unavailable')
        assert "master key" not in response.text

    def test_unreadable_payload_leaves_key_unused(self, client, db_config, clock, key_id, payload_hash):
        other = TestClient(create_app(build_keygate(db_config, clock, master_key="another-master-key")))
        other.get("/api/validate", params={"key": key_id, "payload_hash": payload_hash})

        key = client.get(f"/admin/keys/{key_id}", headers=ADMIN).json()["key"]
        assert key["use_count"] == 0
