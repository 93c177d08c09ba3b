from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient

import quorum_gateway.quorum as quorum_mod
from quorum_gateway.audit_log import InMemoryAuditLog
from quorum_gateway.auth import ApiKeyAuthenticator, Principal
from quorum_gateway.config import GovernanceConfig
from quorum_gateway.errors import DependencyError, gov_error, GOV_E_AUDIT_APPEND_FAILED
from quorum_gateway.executor import ExecutionResult
from quorum_gateway.proof_agent import ProofRequestHandle
from quorum_gateway.server import GatewayServices, create_app
from quorum_gateway.store import MemoryStateStore

from conftest import sign_vote

ADMIN = {"X-Api-Key": "admin-key"}
VALIDATOR = {"X-Api-Key": "validator-key"}
VERIFIER = {"X-Api-Key": "verifier-key"}
SYSTEM = {"X-Api-Key": "system-key"}
HOOK = {"X-Api-Key": "hook-secret"}

PAYLOAD = {"cred_rev_id": "5", "rev_reg_id": "reg:2"}


class _Executor:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.calls = 0

    def execute(self, action, payload):
        self.calls += 1
        return ExecutionResult(ok=self.ok, detail="done" if self.ok else "ISSUER_HTTP_ERROR_500")


class _Agent:
    def create_request(self, proof_request):
        return ProofRequestHandle(exchange_id="ex-1", request={"proof_request": proof_request})


class _FlakyLog(InMemoryAuditLog):
    fail = False

    def append(self, body, *, idempotency_key=None):
        if self.fail:
            raise gov_error(DependencyError, GOV_E_AUDIT_APPEND_FAILED, "transparency log append failed")
        return super().append(body, idempotency_key=idempotency_key)


def _services(validator_set, *, executor=None, audit_log=None, proof_agent: Optional[object] = _Agent(), **cfg):
    config = GovernanceConfig(
        store_backend="memory",
        audit_backend="memory",
        threshold=cfg.pop("threshold", 3),
        rate_limit=cfg.pop("rate_limit", "off"),
        webhook_secret="hook-secret",
        **cfg,
    )
    auth = ApiKeyAuthenticator(
        api_keys={
            "admin-key": Principal(id="admin_1", role="admin"),
            "validator-key": Principal(id="validator_1", role="validator"),
            "verifier-key": Principal(id="verifier_1", role="verifier"),
            "system-key": Principal(id="verifier_system", role="verifier_system"),
        }
    )
    return GatewayServices.build(
        config,
        validator_set,
        store=MemoryStateStore(),
        audit_log=audit_log or InMemoryAuditLog(),
        executor=executor or _Executor(),
        proof_agent=proof_agent,
        authenticator=auth,
    )


def _approve(client, kp, proposal_id, action="REVOKE_CREDENTIAL", payload=PAYLOAD):
    return client.post(
        f"/v1/proposals/{proposal_id}/approve",
        json={"validatorId": kp.key_id, "signature": sign_vote(kp, proposal_id, action, payload)},
    )


def _wait_for_audit(client, exchange_id, state):
    for _ in range(250):
        view = client.get(f"/v1/sessions/{exchange_id}", headers=ADMIN).json()
        if view["audit"]["state"] == state:
            return view
        time.sleep(0.02)
    raise AssertionError(f"audit for {exchange_id} never reached {state}: {view}")


def test_proposal_flow_executes_once(validator_keys, validator_set):
    executor = _Executor()
    app = create_app(_services(validator_set, executor=executor))
    with TestClient(app) as client:
        r = client.post("/v1/proposals", json={"action": "REVOKE_CREDENTIAL", "payload": PAYLOAD}, headers=ADMIN)
        assert r.status_code == 201
        pid = r.json()["proposalId"]
        assert r.json()["status"] == "PENDING"

        assert _approve(client, validator_keys[0], pid).json() == {
            "status": "PENDING",
            "approvals": [validator_keys[0].key_id],
        }
        assert _approve(client, validator_keys[1], pid).status_code == 200
        final = _approve(client, validator_keys[2], pid)
        assert final.status_code == 200
        assert final.json()["status"] == "EXECUTED"
        assert final.json()["execution"] == "SUCCEEDED"
        assert executor.calls == 1

        late = _approve(client, validator_keys[3], pid)
        assert late.status_code == 409
        assert late.json()["code"] == "GOV_E_ALREADY_FINALIZED"

        view = client.get(f"/v1/proposals/{pid}", headers=VALIDATOR).json()
        assert view["status"] == "EXECUTED"
        assert len(view["approvals"]) == 3
        assert view["execution"]["state"] == "SUCCEEDED"
    assert executor.calls == 1


def test_proposal_endpoints_require_roles(validator_set):
    app = create_app(_services(validator_set))
    with TestClient(app) as client:
        body = {"action": "GENERIC", "payload": {}}
        r = client.post("/v1/proposals", json=body)
        assert r.status_code == 401
        assert r.json()["code"] == "GOV_E_AUTH_REQUIRED"

        r = client.post("/v1/proposals", json=body, headers={"X-Api-Key": "wrong"})
        assert r.status_code == 401
        assert r.json()["code"] == "GOV_E_AUTH_INVALID"

        r = client.post("/v1/proposals", json=body, headers=VALIDATOR)
        assert r.status_code == 403
        assert r.json()["code"] == "GOV_E_FORBIDDEN"

        r = client.get("/v1/proposals/whatever", headers=VERIFIER)
        assert r.status_code == 403


def test_vote_errors_map_to_status_codes(validator_keys, validator_set):
    app = create_app(_services(validator_set))
    with TestClient(app) as client:
        pid = client.post(
            "/v1/proposals", json={"action": "REVOKE_CREDENTIAL", "payload": PAYLOAD}, headers=ADMIN
        ).json()["proposalId"]

        bad_sig = client.post(
            f"/v1/proposals/{pid}/approve",
            json={"validatorId": validator_keys[0].key_id, "signature": sign_vote(validator_keys[0], "other", "REVOKE_CREDENTIAL", PAYLOAD)},
        )
        assert bad_sig.status_code == 400
        assert bad_sig.json() == {
            "category": "crypto",
            "code": "GOV_E_INVALID_SIGNATURE",
            "message": "signature verification failed",
            "retryable": False,
        }

        unknown = client.post(f"/v1/proposals/{pid}/approve", json={"validatorId": "mallory", "signature": "AA=="})
        assert unknown.status_code == 400
        assert unknown.json()["code"] == "GOV_E_UNKNOWN_VALIDATOR"

        missing = _approve(client, validator_keys[0], "no-such-proposal")
        assert missing.status_code == 404
        assert missing.json()["code"] == "GOV_E_PROPOSAL_NOT_FOUND"

        assert _approve(client, validator_keys[0], pid).status_code == 200
        dup = _approve(client, validator_keys[0], pid)
        assert dup.status_code == 409
        assert dup.json()["code"] == "GOV_E_DUPLICATE_VOTE"

        malformed = client.post(f"/v1/proposals/{pid}/approve", json={"signature": "AA=="})
        assert malformed.status_code == 400
        assert malformed.json()["code"] == "GOV_E_BAD_REQUEST"

        bad_action = client.post("/v1/proposals", json={"action": "NOPE", "payload": {}}, headers=ADMIN)
        assert bad_action.status_code == 400
        assert bad_action.json()["code"] == "GOV_E_UNKNOWN_ACTION"


def test_retry_execution_endpoint(validator_keys, validator_set):
    executor = _Executor(ok=False)
    app = create_app(_services(validator_set, executor=executor, threshold=1))
    with TestClient(app) as client:
        pid = client.post(
            "/v1/proposals", json={"action": "REVOKE_CREDENTIAL", "payload": PAYLOAD}, headers=ADMIN
        ).json()["proposalId"]
        r = _approve(client, validator_keys[0], pid)
        assert r.json()["execution"] == "FAILED"

        assert client.post(f"/v1/proposals/{pid}/retry-execution", headers=VALIDATOR).status_code == 403

        executor.ok = True
        r = client.post(f"/v1/proposals/{pid}/retry-execution", headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["status"] == "EXECUTED"
        assert r.json()["execution"]["state"] == "SUCCEEDED"
        assert r.json()["execution"]["attempts"] == 2

        again = client.post(f"/v1/proposals/{pid}/retry-execution", headers=ADMIN)
        assert again.status_code == 409
        assert again.json()["code"] == "GOV_E_NOT_RETRYABLE"


def test_verification_flow_logs_once(validator_set):
    audit = InMemoryAuditLog()
    app = create_app(_services(validator_set, audit_log=audit))
    with TestClient(app) as client:
        r = client.post("/v1/verify", json={"proof_request_data": {"name": "age"}}, headers=VERIFIER)
        assert r.status_code == 200
        assert r.json()["presentation_exchange_id"] == "ex-1"
        assert r.json()["request_url"] == {"proof_request": {"name": "age"}}

        event = {"presentation_exchange_id": "ex-1", "state": "verified", "verified": "true"}
        unauthorized = client.post("/v1/webhooks/topic/present_proof", json=event)
        assert unauthorized.status_code == 401

        assert client.post("/v1/webhooks/topic/present_proof", json=event, headers=HOOK).json() == {"outcome": "LOGGED"}
        assert client.post("/v1/webhooks/topic/present_proof", json=event, headers=HOOK).json() == {"outcome": "DUPLICATE"}
        ignored = {**event, "state": "request_sent"}
        assert client.post("/v1/webhooks/topic/present_proof", json=ignored, headers=HOOK).json() == {"outcome": "IGNORED"}

        view = _wait_for_audit(client, "ex-1", "APPENDED")
        assert view["status"] == "VERIFIED_AND_LOGGED"
        assert view["audit"]["logIndex"] == 1

        entry = client.get("/api/v1/log/entries", params={"logIndex": 1}).json()
        assert entry["body"]["kind"] == "hashedrekord"
        assert client.get("/api/v1/log").json() == {"treeSize": 1}
    assert audit.size() == 1


def test_verify_requires_agent_and_role(validator_set):
    app = create_app(_services(validator_set, proof_agent=None))
    with TestClient(app) as client:
        body = {"proof_request_data": {"name": "age"}}
        assert client.post("/v1/verify", json=body, headers=ADMIN).status_code == 403
        r = client.post("/v1/verify", json=body, headers=VERIFIER)
        assert r.status_code == 503
        assert r.json()["code"] == "GOV_E_PROOF_AGENT_FAILED"


def test_retry_audit_endpoint(validator_set):
    audit = _FlakyLog()
    audit.fail = True
    app = create_app(_services(validator_set, audit_log=audit))
    with TestClient(app) as client:
        client.post("/v1/verify", json={"proof_request_data": {}}, headers=VERIFIER)
        event = {"presentation_exchange_id": "ex-1", "state": "verified", "verified": True}
        client.post("/v1/webhooks/topic/present_proof", json=event, headers=HOOK)
        _wait_for_audit(client, "ex-1", "FAILED")

        audit.fail = False
        r = client.post("/v1/sessions/ex-1/retry-audit", headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["audit"]["state"] == "APPENDED"
        assert r.json()["audit"]["logIndex"] == 1


def test_transparency_facade(validator_set):
    app = create_app(_services(validator_set))
    with TestClient(app) as client:
        entry = {"kind": "hashedrekord", "apiVersion": "0.0.1", "spec": {"signature": {"content": "eA=="}}}
        assert client.post("/api/v1/log/entries", json=entry, headers=VALIDATOR).status_code == 403

        r = client.post("/api/v1/log/entries", json=entry, headers=SYSTEM)
        assert r.status_code == 201
        assert r.json()["logIndex"] == 1
        # The same entry again is answered with the receipt it already has.
        repeat = client.post("/api/v1/log/entries", json=entry, headers=ADMIN)
        assert repeat.status_code == 409
        assert repeat.json() == r.json()

        other = dict(entry, spec={"signature": {"content": "eQ=="}})
        r2 = client.post("/api/v1/log/entries", json=other, headers=ADMIN)
        assert r2.status_code == 201
        assert r2.json()["logIndex"] == 2
        assert r2.json()["uuid"] != r.json()["uuid"]

        # An explicit Idempotency-Key dedups across different bodies.
        keyed = client.post(
            "/api/v1/log/entries", json=entry, headers={**SYSTEM, "Idempotency-Key": "exchange:ex-7"}
        )
        assert keyed.status_code == 201
        assert keyed.json()["logIndex"] == 3
        keyed_again = client.post(
            "/api/v1/log/entries", json=other, headers={**SYSTEM, "Idempotency-Key": "exchange:ex-7"}
        )
        assert keyed_again.status_code == 409
        assert keyed_again.json()["logIndex"] == 3
        assert client.get("/api/v1/log").json() == {"treeSize": 3}

        bad = client.post("/api/v1/log/entries", json={"kind": "x"}, headers=SYSTEM)
        assert bad.status_code == 400

        assert client.get("/api/v1/log/entries", params={"logIndex": 2}).json()["uuid"] == r2.json()["uuid"]
        missing = client.get("/api/v1/log/entries", params={"logIndex": 4})
        assert missing.status_code == 404
        assert missing.json()["code"] == "GOV_E_AUDIT_ENTRY_NOT_FOUND"
        assert client.get("/api/v1/log/entries", params={"logIndex": 0}).status_code == 400


def test_request_size_limit(validator_set):
    app = create_app(_services(validator_set, max_request_bytes=200))
    with TestClient(app) as client:
        r = client.post("/v1/proposals", json={"action": "GENERIC", "payload": {"blob": "x" * 500}}, headers=ADMIN)
        assert r.status_code == 413
        assert r.json()["code"] == "GOV_E_REQUEST_TOO_LARGE"


def test_rate_limit(validator_set):
    app = create_app(_services(validator_set, rate_limit="2/m"))
    with TestClient(app) as client:
        codes = [client.get("/v1/proposals/x", headers=ADMIN).status_code for _ in range(3)]
        assert codes == [404, 404, 429]
        # Health checks are never limited.
        assert client.get("/health").status_code == 200


def test_health_and_shutdown(validator_set):
    services = _services(validator_set)
    app = create_app(services)
    with TestClient(app) as client:
        health = client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["validators"] == 5
        assert health["threshold"] == 3
        assert health["store_lockdown"] is False
        assert health["audit_lockdown"] is False
        assert health["pending_audit_tasks"] == 0
    assert services.engine.accepting is False


def test_metrics_endpoint(validator_set):
    app = create_app(_services(validator_set, metrics_token="m-token"))
    with TestClient(app) as client:
        assert client.get("/metrics").status_code == 403
        r = client.get("/metrics", headers={"Authorization": "Bearer m-token"})
        assert r.status_code == 200
        assert "gov_http_requests_total" in r.text
        assert client.get("/metrics", headers={"X-Metrics-Token": "m-token"}).status_code == 200


def test_services_from_env(monkeypatch, tmp_path, validator_keys):
    import json

    monkeypatch.setenv("GOV_VALIDATOR_KEYS_JSON", json.dumps({kp.key_id: kp.public_key_hex for kp in validator_keys}))
    monkeypatch.setenv("GOV_API_KEYS_JSON", json.dumps({"admin-key": {"id": "admin_1", "role": "admin"}}))
    monkeypatch.setenv("GOV_DB_PATH", str(tmp_path / "state.db"))
    monkeypatch.setenv("GOV_AUDIT_DB_PATH", str(tmp_path / "audit.db"))
    monkeypatch.setenv("GOV_THRESHOLD", "2")
    monkeypatch.delenv("GOV_STORE_BACKEND", raising=False)
    monkeypatch.delenv("GOV_AUDIT_BACKEND", raising=False)
    monkeypatch.delenv("GOV_GATEWAY_SIGNING_KEY", raising=False)
    monkeypatch.delenv("GOV_GATEWAY_SIGNING_KEY_FILE", raising=False)

    with TestClient(create_app()) as client:
        assert client.get("/health").json()["threshold"] == 2
        r = client.post("/v1/proposals", json={"action": "GENERIC", "payload": {}}, headers=ADMIN)
        assert r.status_code == 201


def test_services_from_env_requires_validator_keys(monkeypatch):
    for name in ("GOV_VALIDATOR_KEYS_JSON", "GOV_VALIDATOR_KEYS_FILE", "GOV_VALIDATOR_KEYS_DIR"):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(RuntimeError):
        create_app()


def test_audit_lockdown_leaves_proposals_available(validator_set):
    services = _services(validator_set)
    assert services.circuit is not services.audit_circuit
    for _ in range(services.audit_circuit.config.failure_threshold):
        services.audit_circuit.record_failure()
    app = create_app(services)
    with TestClient(app) as client:
        health = client.get("/health").json()
        assert health["audit_lockdown"] is True
        assert health["store_lockdown"] is False
        r = client.post("/v1/proposals", json={"action": "REVOKE_CREDENTIAL", "payload": PAYLOAD}, headers=ADMIN)
        assert r.status_code == 201


def test_forced_retry_takes_over_abandoned_execution(validator_set, monkeypatch):
    executor = _Executor()
    services = _services(validator_set, executor=executor, threshold=1)
    app = create_app(services)
    with TestClient(app) as client:
        pid = client.post(
            "/v1/proposals", json={"action": "REVOKE_CREDENTIAL", "payload": PAYLOAD}, headers=ADMIN
        ).json()["proposalId"]
        # The replica that recorded the finalizing vote died before calling the executor.
        proposals = services.engine.proposals
        current, version = proposals.load(pid)
        assert proposals.swap(current.with_vote("validator_1", 1, quorum_mod._now_utc()), version)

        plain = client.post(f"/v1/proposals/{pid}/retry-execution", headers=ADMIN)
        assert plain.status_code == 409
        assert plain.json()["code"] == "GOV_E_NOT_RETRYABLE"
        fresh = client.post(f"/v1/proposals/{pid}/retry-execution", params={"force": "true"}, headers=ADMIN)
        assert fresh.status_code == 409

        later = datetime.now(timezone.utc) + timedelta(hours=1)
        monkeypatch.setattr(quorum_mod, "_now_utc", lambda: later)
        r = client.post(f"/v1/proposals/{pid}/retry-execution", params={"force": "true"}, headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["execution"]["state"] == "SUCCEEDED"
        assert executor.calls == 1
