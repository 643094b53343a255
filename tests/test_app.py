from __future__ import annotations

from pathlib import Path
from urllib.parse import urlsplit

import pytest
from fastapi.testclient import TestClient

from callshield.backend.app import create_app
from callshield.backend.seed import SeedDbService
from callshield.backend.store import BackendStore
from callshield.backend.validation import iso
from callshield.config import CallShieldSettings

NOW = 1_750_000_000.0
NUMBER = "a" * 64
DEVICE = "b" * 64
TOKEN = "c" * 64
TOKEN_2 = "d" * 64
GUARDIAN = "e" * 64


class FakeClock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path) -> BackendStore:
    return BackendStore(tmp_path / "backend.sqlite3")


@pytest.fixture()
def settings() -> CallShieldSettings:
    return CallShieldSettings(admin_secret="topsecret", download_signing_secret="sign-me")


@pytest.fixture()
def client(settings: CallShieldSettings, store: BackendStore, clock: FakeClock) -> TestClient:
    return TestClient(create_app(settings, store=store, clock=clock))


def _pair(client: TestClient, token: str = TOKEN, **overrides: object):
    body = {
        "token_hash": token,
        "expires_at": iso(NOW + 300),
        "guardian_device_hash": GUARDIAN,
        "plan_type": "family_monthly",
        "subscription_expires_at": iso(NOW + 30 * 86400),
    }
    body.update(overrides)
    return client.post("/family-pair", json=body)


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_reputation_validation_errors(client: TestClient) -> None:
    resp = client.get("/reputation", params={"hash": "not-a-hash", "device_token": DEVICE})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid hash format"}

    resp = client.get("/reputation")
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Missing required fields")


def test_malformed_body_is_400(client: TestClient) -> None:
    resp = client.post("/report", json={"number_hash": 5, "device_token_hash": DEVICE})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid request body"}


def test_report_correct_and_lookup(client: TestClient) -> None:
    resp = client.post(
        "/report",
        json={"number_hash": NUMBER, "device_token_hash": DEVICE, "category": "loan_scam"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["unique_reporters"] == 1
    assert body["quarantined"] is False

    lookup = client.get("/reputation", params={"hash": NUMBER, "device_token": DEVICE}).json()
    assert lookup["category"] == "loan_scam"
    assert lookup["report_count"] == 1
    assert lookup["confidence_score"] == pytest.approx(0.1)

    resp = client.post("/correct", json={"number_hash": NUMBER, "device_token_hash": DEVICE})
    assert resp.json() == {"success": True, "confidence_score": pytest.approx(0.1)}


def test_admin_endpoints_require_secret(client: TestClient) -> None:
    assert client.post("/reputation-harden").status_code == 401
    assert client.post("/reputation-harden", headers={"x-admin-secret": "wrong"}).status_code == 401

    resp = client.post("/reputation-harden", headers={"x-admin-secret": "topsecret"})
    assert resp.status_code == 200
    assert resp.json() == {"flagged": 0, "dampened": 0}

    resp = client.post(
        "/reputation-resolve",
        json={"number_hash": NUMBER},
        headers={"x-admin-secret": "topsecret"},
    )
    assert resp.json() == {"success": True, "resolved": 0}

    resp = client.post(
        "/quarantine-review",
        json={"number_hash": NUMBER},
        headers={"x-admin-secret": "topsecret"},
    )
    assert resp.status_code == 404


def test_admin_endpoints_open_without_configured_secret(store: BackendStore, clock: FakeClock) -> None:
    client = TestClient(create_app(CallShieldSettings(), store=store, clock=clock))
    assert client.post("/reputation-harden").status_code == 200


def test_seed_manifest_and_download(
    client: TestClient, store: BackendStore, clock: FakeClock, tmp_path: Path
) -> None:
    resp = client.get("/seed-db-manifest")
    assert resp.status_code == 404
    assert resp.json() == {"error": "No seed DB version available"}

    csv_path = tmp_path / "seed.csv"
    csv_path.write_text(f"{NUMBER},loan_scam,0.9\n", encoding="utf-8")
    SeedDbService(store, signing_secret="sign-me", public_base_url="http://x", clock=clock).publish(
        csv_path
    )

    manifest = client.get("/seed-db-manifest").json()
    assert manifest["version"] == 1
    url = urlsplit(manifest["download_url"])

    download = client.get(f"{url.path}?{url.query}")
    assert download.status_code == 200
    assert download.text == f"{NUMBER},loan_scam,0.9\n"

    tampered = client.get(f"{url.path}?{url.query}".replace("signature=", "signature=0"))
    assert tampered.status_code == 401


def test_family_pair_push_pull_lifecycle(client: TestClient) -> None:
    resp = _pair(client)
    assert resp.status_code == 201
    assert resp.json() == {"success": True}

    resp = client.post(
        "/family-sync",
        json={"token_hash": TOKEN, "rule_type": "prefix", "rule_payload": {"block": ["+9114"]}},
    )
    assert resp.json() == {"success": True}

    pulled = client.get("/family-sync", params={"token_hash": TOKEN})
    assert pulled.status_code == 200
    [rule] = pulled.json()["rules"]
    assert rule["rule_type"] == "prefix"
    assert rule["rule_payload"] == {"block": ["+9114"]}

    # The first pull completes the pairing.
    assert _pair(client).status_code == 409


def test_family_pair_validation(client: TestClient) -> None:
    resp = _pair(client, expires_at=iso(NOW + 3600))
    assert resp.status_code == 400
    assert "10 minutes" in resp.json()["error"]

    assert _pair(client, expires_at=iso(NOW - 1)).status_code == 400
    assert _pair(client, subscription_expires_at=iso(NOW - 1)).status_code == 400
    assert _pair(client, token_hash="short").status_code == 400

    resp = client.post(
        "/family-sync", json={"token_hash": TOKEN, "rule_type": "contacts", "rule_payload": {}}
    )
    assert resp.status_code == 400


def test_family_revoke_and_renew(client: TestClient) -> None:
    _pair(client)
    client.get("/family-sync", params={"token_hash": TOKEN})

    resp = client.post("/family-revoke", json={"guardian_device_hash": GUARDIAN})
    assert resp.json() == {"success": True, "revoked_count": 1}

    resp = client.get("/family-sync", params={"token_hash": TOKEN})
    assert resp.status_code == 402
    assert resp.json()["reason"] == "subscription_inactive"

    resp = client.post(
        "/family-renew",
        json={
            "guardian_device_hash": GUARDIAN,
            "plan_type": "family_yearly",
            "subscription_expires_at": iso(NOW + 365 * 86400),
        },
    )
    assert resp.json() == {"success": True, "renewed_count": 1}
    assert client.get("/family-sync", params={"token_hash": TOKEN}).status_code == 200


def test_family_subscription_expiry_deactivates_guardian(
    client: TestClient, clock: FakeClock
) -> None:
    _pair(client, subscription_expires_at=iso(NOW + 3600))
    _pair(client, token=TOKEN_2, subscription_expires_at=iso(NOW + 3600))
    client.get("/family-sync", params={"token_hash": TOKEN})
    client.get("/family-sync", params={"token_hash": TOKEN_2})

    clock.now = NOW + 7200
    resp = client.get("/family-sync", params={"token_hash": TOKEN})
    assert resp.status_code == 402
    assert resp.json()["reason"] == "subscription_expired"

    resp = client.get("/family-sync", params={"token_hash": TOKEN_2})
    assert resp.status_code == 402
    assert resp.json()["reason"] == "subscription_inactive"


def test_family_unpair_is_idempotent(client: TestClient) -> None:
    _pair(client)
    for _ in range(2):
        resp = client.request("DELETE", "/family-unpair", json={"token_hash": TOKEN})
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
    assert client.get("/family-sync", params={"token_hash": TOKEN}).status_code == 404


def test_unknown_or_expired_pairing_token(client: TestClient, clock: FakeClock) -> None:
    assert client.get("/family-sync", params={"token_hash": TOKEN}).status_code == 404

    _pair(client)
    clock.now = NOW + 600
    resp = client.get("/family-sync", params={"token_hash": TOKEN})
    assert resp.status_code == 404
    assert resp.json() == {"error": "Pairing token expired"}
