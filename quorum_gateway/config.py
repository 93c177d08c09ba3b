"""Gateway configuration.

All settings come from environment variables so replicas of one deployment
can be started from the same container image:

- GOV_THRESHOLD: approvals required to execute (default 3)
- GOV_PROPOSAL_TTL_SECONDS: voting window (default 86400)
- GOV_PROPOSAL_RETENTION_SECONDS: how long finalized/expired proposals stay readable (default 86400)
- GOV_SESSION_TTL_SECONDS: verification session lifetime (default 3600)
- GOV_EXECUTOR_TIMEOUT_SECONDS / GOV_AUDIT_TIMEOUT_SECONDS: outbound call bounds (default 10)
- GOV_SHUTDOWN_GRACE_SECONDS: how long shutdown waits for audit appends (default 10)
- GOV_CAS_MAX_ATTEMPTS: compare-and-swap retries before reporting contention (default 16)
- GOV_STORE_BACKEND: sqlite | memory | redis (default sqlite)
- GOV_DB_PATH, GOV_REDIS_URL
- GOV_AUDIT_BACKEND: sqlite | memory | http (default sqlite)
- GOV_AUDIT_DB_PATH, GOV_TRANSPARENCY_URL, GOV_TRANSPARENCY_API_KEY
- GOV_ISSUER_ADMIN_URL: issuer admin API; unset means dry-run execution
- GOV_AGENT_ADMIN_URL: proof agent admin API; unset disables /v1/verify
- GOV_WEBHOOK_SECRET: expected X-Api-Key on agent webhooks
- GOV_RATE_LIMIT: e.g. "1000/15m", or "off" (default 1000/15m)
- GOV_MAX_REQUEST_BYTES: request body limit (default 10240)
- GOV_METRICS_TOKEN: if set, /metrics requires it
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .audit_log import AuditLog, InMemoryAuditLog, SqliteAuditLog
from .executor import ActionExecutor, HttpIssuerExecutor, NullExecutor
from .lockdown import StoreCircuitBreaker
from .proof_agent import HttpProofAgent, ProofAgent
from .store import MemoryStateStore, RedisStateStore, SqliteStateStore, StateStore
from .transparency import TransparencyLogClient

logger = logging.getLogger("quorum_gateway.config")

STORE_BACKENDS = ("sqlite", "memory", "redis")
AUDIT_BACKENDS = ("sqlite", "memory", "http")


def _get_int(name: str, default: int, minimum: int = 1) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        logger.warning("invalid %s=%r; using %s", name, raw, default)
        return default


def _get_float(name: str, default: float, minimum: float = 0.01) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        logger.warning("invalid %s=%r; using %s", name, raw, default)
        return default


def _get_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


@dataclass(frozen=True)
class GovernanceConfig:
    threshold: int = 3
    proposal_ttl_seconds: int = 86400
    proposal_retention_seconds: int = 86400
    session_ttl_seconds: int = 3600
    executor_timeout_seconds: float = 10.0
    audit_timeout_seconds: float = 10.0
    shutdown_grace_seconds: float = 10.0
    cas_max_attempts: int = 16
    store_backend: str = "sqlite"
    db_path: str = "quorum_gateway.db"
    redis_url: str = ""
    audit_backend: str = "sqlite"
    audit_db_path: str = "quorum_audit.db"
    transparency_url: str = ""
    transparency_api_key: str = ""
    issuer_admin_url: str = ""
    agent_admin_url: str = ""
    webhook_secret: str = ""
    rate_limit: str = "1000/15m"
    max_request_bytes: int = 10240
    metrics_token: str = ""

    @classmethod
    def from_env(cls) -> "GovernanceConfig":
        cfg = cls(
            threshold=_get_int("GOV_THRESHOLD", cls.threshold),
            proposal_ttl_seconds=_get_int("GOV_PROPOSAL_TTL_SECONDS", cls.proposal_ttl_seconds),
            proposal_retention_seconds=_get_int(
                "GOV_PROPOSAL_RETENTION_SECONDS", cls.proposal_retention_seconds, minimum=0
            ),
            session_ttl_seconds=_get_int("GOV_SESSION_TTL_SECONDS", cls.session_ttl_seconds),
            executor_timeout_seconds=_get_float("GOV_EXECUTOR_TIMEOUT_SECONDS", cls.executor_timeout_seconds),
            audit_timeout_seconds=_get_float("GOV_AUDIT_TIMEOUT_SECONDS", cls.audit_timeout_seconds),
            shutdown_grace_seconds=_get_float("GOV_SHUTDOWN_GRACE_SECONDS", cls.shutdown_grace_seconds, minimum=0.0),
            cas_max_attempts=_get_int("GOV_CAS_MAX_ATTEMPTS", cls.cas_max_attempts),
            store_backend=_get_str("GOV_STORE_BACKEND", cls.store_backend).lower(),
            db_path=_get_str("GOV_DB_PATH", cls.db_path),
            redis_url=_get_str("GOV_REDIS_URL"),
            audit_backend=_get_str("GOV_AUDIT_BACKEND", cls.audit_backend).lower(),
            audit_db_path=_get_str("GOV_AUDIT_DB_PATH", cls.audit_db_path),
            transparency_url=_get_str("GOV_TRANSPARENCY_URL"),
            transparency_api_key=_get_str("GOV_TRANSPARENCY_API_KEY"),
            issuer_admin_url=_get_str("GOV_ISSUER_ADMIN_URL"),
            agent_admin_url=_get_str("GOV_AGENT_ADMIN_URL"),
            webhook_secret=_get_str("GOV_WEBHOOK_SECRET"),
            rate_limit=_get_str("GOV_RATE_LIMIT", cls.rate_limit),
            max_request_bytes=_get_int("GOV_MAX_REQUEST_BYTES", cls.max_request_bytes),
            metrics_token=_get_str("GOV_METRICS_TOKEN"),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.store_backend not in STORE_BACKENDS:
            raise ValueError(f"GOV_STORE_BACKEND must be one of {STORE_BACKENDS}, got {self.store_backend!r}")
        if self.audit_backend not in AUDIT_BACKENDS:
            raise ValueError(f"GOV_AUDIT_BACKEND must be one of {AUDIT_BACKENDS}, got {self.audit_backend!r}")
        if self.store_backend == "redis" and not self.redis_url:
            raise ValueError("GOV_REDIS_URL is required for the redis store backend")
        if self.audit_backend == "http" and not self.transparency_url:
            raise ValueError("GOV_TRANSPARENCY_URL is required for the http audit backend")


def build_store(cfg: GovernanceConfig, circuit: Optional[StoreCircuitBreaker] = None) -> StateStore:
    if cfg.store_backend == "memory":
        logger.warning("using in-memory state store; replicas will not share state")
        return MemoryStateStore()
    if cfg.store_backend == "redis":
        return RedisStateStore(cfg.redis_url)
    return SqliteStateStore(cfg.db_path, circuit=circuit)


def build_audit_log(cfg: GovernanceConfig, circuit: Optional[StoreCircuitBreaker] = None) -> AuditLog:
    if cfg.audit_backend == "memory":
        return InMemoryAuditLog()
    if cfg.audit_backend == "http":
        return TransparencyLogClient(
            cfg.transparency_url,
            timeout_s=cfg.audit_timeout_seconds,
            api_key=cfg.transparency_api_key or None,
        )
    return SqliteAuditLog(cfg.audit_db_path, circuit=circuit)


def build_executor(cfg: GovernanceConfig) -> ActionExecutor:
    if cfg.issuer_admin_url:
        return HttpIssuerExecutor(cfg.issuer_admin_url, timeout_s=cfg.executor_timeout_seconds)
    logger.warning("GOV_ISSUER_ADMIN_URL not set; finalized proposals are executed as dry-runs")
    return NullExecutor()


def build_proof_agent(cfg: GovernanceConfig) -> Optional[ProofAgent]:
    if cfg.agent_admin_url:
        return HttpProofAgent(cfg.agent_admin_url, timeout_s=cfg.audit_timeout_seconds)
    return None
