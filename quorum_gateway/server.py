"""
Governance Gateway Server

FastAPI surface for the threshold-governance engine:

- proposals: create, read, approve (signed votes), retry a failed execution
- verification: request a proof, receive the agent's webhook, read sessions
- transparency log facade over the configured audit log
- /health and /metrics

Replicas are stateless; all coordination goes through the shared store.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import metrics
from .audit_log import AuditLog
from .auth import (
    ApiKeyAuthenticator,
    Authenticator,
    Principal,
    require_role,
    ROLE_ADMIN,
    ROLE_VALIDATOR,
    ROLE_VERIFIER,
    ROLE_VERIFIER_SYSTEM,
)
from .config import (
    GovernanceConfig,
    build_audit_log,
    build_executor,
    build_proof_agent,
    build_store,
)
from .crypto import ValidatorSet, load_validator_set_from_env
from .errors import (
    AuthError,
    DependencyError,
    GovError,
    InternalError,
    ValidationError,
    gov_error,
    GOV_E_AUTH_INVALID,
    GOV_E_BAD_REQUEST,
    GOV_E_INTERNAL,
    GOV_E_PROOF_AGENT_FAILED,
    GOV_E_RATE_LIMITED,
    GOV_E_REQUEST_TOO_LARGE,
)
from .lockdown import StoreCircuitBreaker
from .quorum import GovernanceEngine
from .ratelimit import RateLimiter, TokenBucketRateLimiter
from .sessions import VerificationSessionTracker
from .signing import load_gateway_signer_from_env
from .store import StateStore
from .tasks import TrackedTasks

logger = logging.getLogger("quorum_gateway")


class CreateProposalRequest(BaseModel):
    action: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ApproveRequest(BaseModel):
    validatorId: str
    signature: str
    algorithm: Optional[str] = None


class VerifyRequest(BaseModel):
    proof_request_data: Dict[str, Any]


@dataclass
class GatewayServices:
    """Everything one gateway replica needs, wired from configuration."""

    config: GovernanceConfig
    store: StateStore
    engine: GovernanceEngine
    sessions: VerificationSessionTracker
    audit_log: AuditLog
    tasks: TrackedTasks
    authenticator: Authenticator
    rate_limiter: Optional[RateLimiter] = None
    circuit: Optional[StoreCircuitBreaker] = None
    audit_circuit: Optional[StoreCircuitBreaker] = None

    @classmethod
    def build(
        cls,
        config: GovernanceConfig,
        validators: ValidatorSet,
        *,
        store: Optional[StateStore] = None,
        audit_log: Optional[AuditLog] = None,
        executor=None,
        proof_agent=None,
        authenticator: Optional[Authenticator] = None,
        signer=None,
    ) -> "GatewayServices":
        # One breaker per database, so a locked audit log leaves voting up.
        circuit = StoreCircuitBreaker(name="state")
        audit_circuit = StoreCircuitBreaker(name="audit")
        store = store if store is not None else build_store(config, circuit)
        audit_log = audit_log if audit_log is not None else build_audit_log(config, audit_circuit)
        tasks = TrackedTasks()
        engine = GovernanceEngine(
            store=store,
            validators=validators,
            executor=executor if executor is not None else build_executor(config),
            threshold=config.threshold,
            proposal_ttl_seconds=config.proposal_ttl_seconds,
            retention_seconds=config.proposal_retention_seconds,
            executor_timeout_seconds=config.executor_timeout_seconds,
            cas_max_attempts=config.cas_max_attempts,
        )
        sessions = VerificationSessionTracker(
            store=store,
            audit_log=audit_log,
            tasks=tasks,
            proof_agent=proof_agent if proof_agent is not None else build_proof_agent(config),
            signer=signer,
            session_ttl_seconds=config.session_ttl_seconds,
            audit_timeout_seconds=config.audit_timeout_seconds,
            cas_max_attempts=config.cas_max_attempts,
        )
        return cls(
            config=config,
            store=store,
            engine=engine,
            sessions=sessions,
            audit_log=audit_log,
            tasks=tasks,
            authenticator=authenticator if authenticator is not None else ApiKeyAuthenticator.load_from_env(),
            rate_limiter=TokenBucketRateLimiter.from_spec(config.rate_limit),
            circuit=circuit,
            audit_circuit=audit_circuit,
        )

    @classmethod
    def from_env(cls) -> "GatewayServices":
        config = GovernanceConfig.from_env()
        validators = load_validator_set_from_env()
        logger.info(
            "loaded %d validator key(s); threshold %d; store=%s audit=%s",
            len(validators), config.threshold, config.store_backend, config.audit_backend,
        )
        return cls.build(config, validators, signer=load_gateway_signer_from_env())


def _rl_key(request: Request) -> str:
    # Prefer the api key; fall back to client IP.
    api_key = request.headers.get("X-Api-Key")
    if api_key:
        return f"k:{api_key}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "_anon"


def create_app(services: Optional[GatewayServices] = None) -> FastAPI:
    """Create FastAPI application with gateway endpoints."""
    from . import __version__ as gov_version

    if services is None:
        services = GatewayServices.from_env()
    cfg = services.config
    engine = services.engine
    sessions = services.sessions

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Stop taking votes first, then let in-flight audit appends finish.
        engine.begin_shutdown()
        remaining = await services.tasks.drain(cfg.shutdown_grace_seconds)
        if remaining:
            logging.getLogger("quorum_gateway.operator").error(
                "%d audit append(s) still running at shutdown; sessions left with audit state PENDING "
                "can be taken over with retry-audit?force=true",
                remaining,
            )
        services.store.close()

    app = FastAPI(
        title="Quorum Gateway",
        description="Threshold governance with signed votes and an append-only audit log",
        version=gov_version,
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(GovError)
    async def _gov_error_handler(request: Request, exc: GovError):
        if exc.http_status >= 500:
            logger.warning("%s %s failed: %s details=%s", request.method, request.url.path, exc, exc.details)
        else:
            logger.info("%s %s rejected: %s details=%s", request.method, request.url.path, exc, exc.details)
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError):
        err = gov_error(ValidationError, GOV_E_BAD_REQUEST, "request body is invalid")
        return JSONResponse(status_code=400, content=err.as_dict())

    @app.exception_handler(Exception)
    async def _unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        err = gov_error(InternalError, GOV_E_INTERNAL, "internal error")
        return JSONResponse(status_code=500, content=err.as_dict())

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    def _authorize_metrics(req: Request) -> bool:
        # If a dedicated metrics token is set, require it via:
        #   Authorization: Bearer <token>  OR  X-Metrics-Token: <token>
        token = cfg.metrics_token
        if not token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and hmac.compare_digest(authz.split(" ", 1)[1].strip(), token):
            return True
        return hmac.compare_digest((req.headers.get("X-Metrics-Token") or "").strip(), token)

    metrics.instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Request size + rate limiting
    # ---------------------------
    @app.middleware("http")
    async def _rate_limit(req: Request, call_next):
        limiter = services.rate_limiter
        if limiter is not None and req.url.path not in ("/health", "/metrics"):
            if not limiter.allow(_rl_key(req)):
                metrics.record_rate_limited("/".join(req.url.path.split("/")[:3]))
                err = gov_error(AuthError, GOV_E_RATE_LIMITED, "rate limit exceeded", retryable=True, http_status=429)
                return JSONResponse(status_code=429, content=err.as_dict())
        return await call_next(req)

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > cfg.max_request_bytes
            except ValueError:
                # If malformed, fail closed.
                err = gov_error(ValidationError, GOV_E_BAD_REQUEST, "bad Content-Length")
                return JSONResponse(status_code=400, content=err.as_dict())
            if too_large:
                err = gov_error(
                    ValidationError, GOV_E_REQUEST_TOO_LARGE,
                    f"request body exceeds {cfg.max_request_bytes} bytes", http_status=413,
                )
                return JSONResponse(status_code=413, content=err.as_dict())
        return await call_next(req)

    def _principal(x_api_key: Optional[str], *roles: str) -> Principal:
        principal = services.authenticator.authenticate(x_api_key)
        if roles:
            require_role(principal, *roles)
        return principal

    # ---------------------------
    # Proposals
    # ---------------------------
    @app.post("/v1/proposals", status_code=201)
    async def create_proposal(
        request: CreateProposalRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        principal = _principal(x_api_key, ROLE_ADMIN)
        proposal = await asyncio.to_thread(engine.create_proposal, request.action, request.payload, principal.id)
        return {"proposalId": proposal.id, "status": proposal.status.value}

    @app.get("/v1/proposals/{proposal_id}")
    async def get_proposal(proposal_id: str, x_api_key: Optional[str] = Header(None, alias="X-Api-Key")):
        _principal(x_api_key, ROLE_ADMIN, ROLE_VALIDATOR)
        proposal = await asyncio.to_thread(engine.get_proposal, proposal_id)
        return proposal.view()

    @app.post("/v1/proposals/{proposal_id}/approve")
    async def approve_proposal(proposal_id: str, request: ApproveRequest):
        """Record a signed vote. The signature is the credential; no API key needed."""
        result = await engine.cast_vote(
            proposal_id, request.validatorId, request.signature, algorithm=request.algorithm
        )
        return result.to_dict()

    @app.post("/v1/proposals/{proposal_id}/retry-execution")
    async def retry_execution(
        proposal_id: str,
        force: bool = Query(False),
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        principal = _principal(x_api_key, ROLE_ADMIN)
        logger.info("execution retry of %s requested by %s (force=%s)", proposal_id, principal.id, force)
        proposal = await engine.retry_execution(proposal_id, force=force)
        return {"status": proposal.status.value, "execution": proposal.execution.to_dict()}

    # ---------------------------
    # Verification
    # ---------------------------
    @app.post("/v1/verify")
    async def verify(request: VerifyRequest, x_api_key: Optional[str] = Header(None, alias="X-Api-Key")):
        principal = _principal(x_api_key, ROLE_VERIFIER, ROLE_VERIFIER_SYSTEM)
        if sessions.proof_agent is None:
            raise gov_error(
                DependencyError, GOV_E_PROOF_AGENT_FAILED, "proof agent not configured",
                retryable=False, http_status=503,
            )
        handle = await sessions.request_proof(request.proof_request_data, principal.id)
        return {"presentation_exchange_id": handle.exchange_id, "request_url": handle.request}

    @app.post("/v1/webhooks/topic/present_proof")
    async def present_proof_webhook(request: Request, x_api_key: Optional[str] = Header(None, alias="X-Api-Key")):
        if cfg.webhook_secret and not hmac.compare_digest((x_api_key or "").encode(), cfg.webhook_secret.encode()):
            logger.warning("unauthorized webhook attempt from %s", request.client.host if request.client else "?")
            raise gov_error(AuthError, GOV_E_AUTH_INVALID, "unauthorized webhook")
        try:
            event = await request.json()
        except ValueError:
            raise gov_error(ValidationError, GOV_E_BAD_REQUEST, "webhook body must be JSON") from None
        if not isinstance(event, dict):
            raise gov_error(ValidationError, GOV_E_BAD_REQUEST, "webhook body must be a JSON object")
        outcome = await sessions.handle_verified_event(
            str(event.get("presentation_exchange_id") or ""),
            event.get("state"),
            event.get("verified"),
            event,
        )
        return {"outcome": outcome.value}

    @app.get("/v1/sessions/{exchange_id}")
    async def get_session(exchange_id: str, x_api_key: Optional[str] = Header(None, alias="X-Api-Key")):
        _principal(x_api_key, ROLE_ADMIN, ROLE_VERIFIER, ROLE_VERIFIER_SYSTEM)
        session = await asyncio.to_thread(sessions.get_session, exchange_id)
        return session.view()

    @app.post("/v1/sessions/{exchange_id}/retry-audit")
    async def retry_audit(
        exchange_id: str,
        force: bool = Query(False),
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        principal = _principal(x_api_key, ROLE_ADMIN)
        logger.info("audit retry of %s requested by %s (force=%s)", exchange_id, principal.id, force)
        record = await sessions.retry_audit(exchange_id, force=force)
        return {"audit": {"state": record.state.value, "uuid": record.uuid, "logIndex": record.index}}

    # ---------------------------
    # Transparency log facade
    # ---------------------------
    @app.post("/api/v1/log/entries", status_code=201)
    async def log_append(
        request: Request,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    ):
        """Append an entry. A repeat (same Idempotency-Key, or same body) gets 409 with the existing receipt."""
        _principal(x_api_key, ROLE_VERIFIER_SYSTEM, ROLE_ADMIN)
        try:
            body = await request.json()
        except ValueError:
            raise gov_error(ValidationError, GOV_E_BAD_REQUEST, "entry must be JSON") from None
        if not isinstance(body, dict) or "spec" not in body:
            raise gov_error(ValidationError, GOV_E_BAD_REQUEST, "entry must be a JSON object with a spec")
        receipt = await asyncio.to_thread(
            partial(services.audit_log.append, body, idempotency_key=idempotency_key)
        )
        if receipt.duplicate:
            return JSONResponse(status_code=409, content=receipt.to_dict())
        return receipt.to_dict()

    @app.get("/api/v1/log/entries")
    async def log_get(logIndex: int = Query(..., ge=1)):
        entry = await asyncio.to_thread(services.audit_log.get, logIndex)
        return entry.to_dict()

    @app.get("/api/v1/log")
    async def log_info():
        return {"treeSize": await asyncio.to_thread(services.audit_log.size)}

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        circuit = services.circuit
        audit_circuit = services.audit_circuit
        return {
            "status": "healthy" if engine.accepting else "draining",
            "version": gov_version,
            "validators": len(engine.validators),
            "threshold": engine.threshold,
            "store_lockdown": bool(circuit and circuit.is_open()),
            "audit_lockdown": bool(audit_circuit and audit_circuit.is_open()),
            "pending_audit_tasks": services.tasks.pending(),
        }

    return app


def main():
    """
    Main entry point for quorum-gateway CLI.

    Usage:
        quorum-gateway                    # Start on default port 8000
        quorum-gateway --port 9000        # Start on custom port
        quorum-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Quorum Gateway - threshold governance service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    GOV_VALIDATOR_KEYS_JSON / _FILE / _DIR   Validator public keys (required)
    GOV_API_KEYS_JSON / GOV_API_KEYS_FILE    API key -> principal mapping
    GOV_STORE_BACKEND                        sqlite | memory | redis
    GOV_AUDIT_BACKEND                        sqlite | memory | http
    GOV_PROXY_HEADERS                        If set (1/true), trust X-Forwarded-* headers
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    args = parser.parse_args()

    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()
    env_proxy = os.environ.get("GOV_PROXY_HEADERS", "").strip().lower()
    proxy_headers = args.proxy_headers or env_proxy in ("1", "true", "yes")
    # Shutdown grace is handled by the app lifespan; give uvicorn the same bound.
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        proxy_headers=proxy_headers,
        timeout_graceful_shutdown=int(app.state.services.config.shutdown_grace_seconds) + 1,
    )
    return 0


# CLI entry point
if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
