"""Verification sessions and exactly-once audit logging.

A session is opened when a proof request goes out (status REQUEST_SENT) and
closed by the agent's "verified" webhook. Webhooks are delivered at least
once, possibly to several replicas at the same time; the REQUEST_SENT ->
VERIFIED_AND_LOGGED compare-and-swap picks exactly one winner, and only the
winner schedules the audit append. The audit body is stored in that same
write, so a failed append can be retried later with identical content.

Each PENDING audit carries a claim token; only the task holding the current
claim records the outcome. Appends go out under the idempotency key
``exchange:<id>``, so an append that commits after its timeout and a later
retry still leave one log entry. Store I/O on the async paths runs in worker
threads.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Any, Dict, Optional, Tuple

from . import metrics
from .audit_log import AuditLog, AuditReceipt
from .crypto import canonical_json_dumps, hash_canonical
from .errors import (
    ConflictError,
    ValidationError,
    NotFoundError,
    gov_error,
    GOV_E_BAD_REQUEST,
    GOV_E_CONTENTION,
    GOV_E_NOT_RETRYABLE,
    GOV_E_SESSION_EXISTS,
    GOV_E_SESSION_NOT_FOUND,
)
from .proof_agent import ProofAgent, ProofRequestHandle
from .signing import Signer
from .store import StateStore
from .tasks import TrackedTasks

logger = logging.getLogger("quorum_gateway.sessions")
operator_log = logging.getLogger("quorum_gateway.operator")

# Slack on top of the append timeout before a PENDING claim counts as abandoned.
CLAIM_GRACE_SECONDS = 5.0


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now_utc().isoformat()


def _new_claim_id() -> str:
    return uuid.uuid4().hex


class SessionStatus(str, Enum):
    REQUEST_SENT = "REQUEST_SENT"
    VERIFIED_AND_LOGGED = "VERIFIED_AND_LOGGED"


class AuditState(str, Enum):
    NONE = "NONE"
    PENDING = "PENDING"
    APPENDED = "APPENDED"
    FAILED = "FAILED"


class EventOutcome(str, Enum):
    IGNORED = "IGNORED"
    DROPPED = "DROPPED"
    DUPLICATE = "DUPLICATE"
    LOGGED = "LOGGED"


@dataclass(frozen=True)
class AuditRecord:
    state: AuditState = AuditState.NONE
    uuid: Optional[str] = None
    index: Optional[int] = None
    body: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    claim_id: Optional[str] = None
    claimed_at: Optional[str] = None

    def claimed(self, now: datetime) -> "AuditRecord":
        return replace(
            self, state=AuditState.PENDING, last_error=None, claim_id=_new_claim_id(), claimed_at=now.isoformat()
        )

    def claim_age_seconds(self, now: datetime) -> Optional[float]:
        if self.claimed_at is None:
            return None
        return (now - datetime.fromisoformat(self.claimed_at)).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "uuid": self.uuid,
            "index": self.index,
            "body": self.body,
            "last_error": self.last_error,
            "claim_id": self.claim_id,
            "claimed_at": self.claimed_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AuditRecord":
        return cls(
            state=AuditState(d.get("state", AuditState.NONE.value)),
            uuid=d.get("uuid"),
            index=d.get("index"),
            body=d.get("body"),
            last_error=d.get("last_error"),
            claim_id=d.get("claim_id"),
            claimed_at=d.get("claimed_at"),
        )


@dataclass(frozen=True)
class VerificationSession:
    exchange_id: str
    requestor: str
    created_at: str
    status: SessionStatus = SessionStatus.REQUEST_SENT
    audit: AuditRecord = field(default_factory=AuditRecord)

    def to_record(self) -> Dict[str, Any]:
        return {
            "exchange_id": self.exchange_id,
            "requestor": self.requestor,
            "created_at": self.created_at,
            "status": self.status.value,
            "audit": self.audit.to_dict(),
        }

    @classmethod
    def from_record(cls, d: Dict[str, Any]) -> "VerificationSession":
        return cls(
            exchange_id=str(d["exchange_id"]),
            requestor=str(d.get("requestor", "")),
            created_at=str(d["created_at"]),
            status=SessionStatus(d["status"]),
            audit=AuditRecord.from_dict(d.get("audit") or {}),
        )

    def view(self) -> Dict[str, Any]:
        return {
            "exchangeId": self.exchange_id,
            "status": self.status.value,
            "requestor": self.requestor,
            "createdAt": self.created_at,
            "audit": {
                "state": self.audit.state.value,
                "uuid": self.audit.uuid,
                "logIndex": self.audit.index,
            },
        }


def is_verified_event(state: Any, verified: Any) -> bool:
    return state == "verified" and (verified is True or verified == "true")


def build_audit_body(
    exchange_id: str,
    proof_data: Any,
    *,
    signer: Optional[Signer] = None,
    timestamp: Optional[str] = None,
) -> Dict[str, Any]:
    """hashedrekord document recording one successful verification.

    Only the SHA-256 of the proof data is logged, never the proof itself.
    """
    leaf = {
        "timestamp": timestamp or _now_iso(),
        "exchangeId": exchange_id,
        "result": "VALID",
        "hash": hash_canonical(proof_data),
    }
    content = canonical_json_dumps(leaf).encode("utf-8")
    signature: Dict[str, Any] = {"content": base64.b64encode(content).decode("ascii")}
    if signer is not None:
        signature["publicKey"] = {
            "content": base64.b64encode(signer.public_key_pem().encode("utf-8")).decode("ascii"),
            "keyId": signer.key_id,
        }
        signature["sig"] = base64.b64encode(signer.sign(content)).decode("ascii")
    return {"kind": "hashedrekord", "apiVersion": "0.0.1", "spec": {"signature": signature}}


class VerificationSessionTracker:
    def __init__(
        self,
        *,
        store: StateStore,
        audit_log: AuditLog,
        tasks: Optional[TrackedTasks] = None,
        proof_agent: Optional[ProofAgent] = None,
        signer: Optional[Signer] = None,
        session_ttl_seconds: float = 3600,
        audit_timeout_seconds: float = 10.0,
        cas_max_attempts: int = 16,
    ):
        self.store = store
        self.audit_log = audit_log
        self.tasks = tasks or TrackedTasks()
        self.proof_agent = proof_agent
        self.signer = signer
        self.session_ttl_seconds = float(session_ttl_seconds)
        self.audit_timeout_seconds = float(audit_timeout_seconds)
        self.cas_max_attempts = max(1, int(cas_max_attempts))

    @staticmethod
    def key(exchange_id: str) -> str:
        return f"session:{exchange_id}"

    def _load(self, exchange_id: str) -> Optional[Tuple[VerificationSession, int]]:
        rec = self.store.get(self.key(exchange_id))
        if rec is None:
            return None
        return VerificationSession.from_record(rec.value), rec.version

    def _swap(self, session: VerificationSession, version: int) -> bool:
        return self.store.compare_and_swap(
            self.key(session.exchange_id), version, session.to_record(), ttl_seconds=self.session_ttl_seconds
        )

    async def _aload(self, exchange_id: str) -> Optional[Tuple[VerificationSession, int]]:
        return await asyncio.to_thread(self._load, exchange_id)

    async def _aswap(self, session: VerificationSession, version: int) -> bool:
        return await asyncio.to_thread(self._swap, session, version)

    def open_session(self, exchange_id: str, requestor: str) -> VerificationSession:
        if not exchange_id:
            raise gov_error(ValidationError, GOV_E_BAD_REQUEST, "exchange id must be non-empty")
        session = VerificationSession(exchange_id=str(exchange_id), requestor=str(requestor), created_at=_now_iso())
        if not self.store.create(self.key(session.exchange_id), session.to_record(), self.session_ttl_seconds):
            raise gov_error(
                ConflictError, GOV_E_SESSION_EXISTS, "session already exists", exchange_id=session.exchange_id
            )
        logger.info("verification session %s opened by %s", session.exchange_id, session.requestor)
        return session

    def get_session(self, exchange_id: str) -> VerificationSession:
        loaded = self._load(exchange_id)
        if loaded is None:
            raise gov_error(NotFoundError, GOV_E_SESSION_NOT_FOUND, "session not found", exchange_id=exchange_id)
        return loaded[0]

    async def request_proof(self, proof_request: Dict[str, Any], requestor: str) -> ProofRequestHandle:
        """Ask the proof agent for a presentation request and open its session."""
        if self.proof_agent is None:
            raise RuntimeError("no proof agent configured")
        if not isinstance(proof_request, dict):
            raise gov_error(ValidationError, GOV_E_BAD_REQUEST, "proof_request_data must be a JSON object")
        try:
            handle = await asyncio.to_thread(self.proof_agent.create_request, proof_request)
        except Exception:
            metrics.record_dependency_failure("proof_agent")
            raise
        await asyncio.to_thread(self.open_session, handle.exchange_id, requestor)
        return handle

    async def handle_verified_event(
        self,
        exchange_id: str,
        state: Any,
        verified: Any,
        proof_data: Any,
    ) -> EventOutcome:
        outcome = await self._handle_verified_event(exchange_id, state, verified, proof_data)
        metrics.record_session_event(outcome.value.lower())
        return outcome

    async def _handle_verified_event(
        self, exchange_id: str, state: Any, verified: Any, proof_data: Any
    ) -> EventOutcome:
        if not is_verified_event(state, verified):
            return EventOutcome.IGNORED
        if not exchange_id:
            logger.warning("verified event without exchange id dropped")
            return EventOutcome.DROPPED

        body: Optional[Dict[str, Any]] = None
        for _ in range(self.cas_max_attempts):
            loaded = await self._aload(exchange_id)
            if loaded is None:
                logger.warning("verified event for unknown or expired session %s dropped", exchange_id)
                return EventOutcome.DROPPED
            session, version = loaded
            if session.status is SessionStatus.VERIFIED_AND_LOGGED:
                logger.info("duplicate verified event for session %s", exchange_id)
                return EventOutcome.DUPLICATE

            if body is None:
                body = build_audit_body(exchange_id, proof_data, signer=self.signer)
            audit = AuditRecord(body=body).claimed(_now_utc())
            closed = replace(session, status=SessionStatus.VERIFIED_AND_LOGGED, audit=audit)
            if await self._aswap(closed, version):
                logger.info("session %s verified; scheduling audit append", exchange_id)
                self.tasks.spawn(
                    self._append(exchange_id, body, audit.claim_id), name=f"audit-append:{exchange_id}"
                )
                return EventOutcome.LOGGED

        raise self._contention(exchange_id)

    @staticmethod
    def _contention(exchange_id: str) -> ConflictError:
        return gov_error(
            ConflictError, GOV_E_CONTENTION, "session is under heavy contention; retry",
            retryable=True, exchange_id=exchange_id,
        )

    @staticmethod
    def idempotency_key(exchange_id: str) -> str:
        return f"exchange:{exchange_id}"

    async def _append(self, exchange_id: str, body: Dict[str, Any], claim_id: Optional[str]) -> AuditRecord:
        """Append ``body`` and, if ``claim_id`` still holds the audit, record the receipt or the failure."""
        receipt: Optional[AuditReceipt] = None
        error: Optional[str] = None
        try:
            receipt = await asyncio.wait_for(
                asyncio.to_thread(
                    partial(self.audit_log.append, body, idempotency_key=self.idempotency_key(exchange_id))
                ),
                timeout=self.audit_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = f"audit append timed out after {self.audit_timeout_seconds}s"
        except Exception as e:
            error = f"{type(e).__name__}: {e}"

        if receipt is not None:
            record = AuditRecord(state=AuditState.APPENDED, uuid=receipt.uuid, index=receipt.index, body=body)
            metrics.record_audit_append("duplicate" if receipt.duplicate else "appended")
        else:
            record = AuditRecord(state=AuditState.FAILED, body=body, last_error=error)
            metrics.record_audit_append("failed")
            metrics.record_dependency_failure("audit_log")

        for _ in range(self.cas_max_attempts):
            loaded = await self._aload(exchange_id)
            if loaded is None:
                break
            session, version = loaded
            if session.audit.state is not AuditState.PENDING or session.audit.claim_id != claim_id:
                logger.warning(
                    "session %s audit claim was taken over during append (now %s); discarding %s result",
                    exchange_id, session.audit.state.value, record.state.value,
                )
                return session.audit
            if await self._aswap(replace(session, audit=record), version):
                if receipt is not None:
                    logger.info(
                        "session %s logged at index %d (%s)%s",
                        exchange_id, receipt.index, receipt.uuid, " [already present]" if receipt.duplicate else "",
                    )
                else:
                    operator_log.error(
                        "audit append for session %s failed: %s; use retry-audit once the log is reachable",
                        exchange_id, error,
                    )
                return record

        operator_log.error(
            "audit result for session %s could not be recorded: state=%s uuid=%s index=%s error=%s",
            exchange_id, record.state.value, record.uuid, record.index, record.last_error,
        )
        return record

    def claim_is_stale(self, audit: AuditRecord, now: datetime) -> bool:
        """True once a PENDING claim has outlived any append its holder could still be waiting on."""
        age = audit.claim_age_seconds(now)
        return age is None or age >= self.audit_timeout_seconds + CLAIM_GRACE_SECONDS

    async def retry_audit(self, exchange_id: str, *, force: bool = False) -> AuditRecord:
        """Re-append the stored body of a FAILED audit.

        A PENDING audit whose claim is stale (the replica died, or shutdown
        drained past its grace) is taken over only with ``force``. The new
        claim is a compare-and-swap, and the append is keyed on the exchange
        id, so the log ends up with one entry however many retries race.
        """
        for _ in range(self.cas_max_attempts):
            loaded = await self._aload(exchange_id)
            if loaded is None:
                raise gov_error(NotFoundError, GOV_E_SESSION_NOT_FOUND, "session not found", exchange_id=exchange_id)
            session, version = loaded
            audit = session.audit
            now = _now_utc()
            stale = force and audit.state is AuditState.PENDING and self.claim_is_stale(audit, now)
            if audit.body is None or not (audit.state is AuditState.FAILED or stale):
                raise gov_error(
                    ConflictError, GOV_E_NOT_RETRYABLE,
                    "only failed audit appends (or stale pending ones, with force) can be retried",
                    exchange_id=exchange_id, audit=audit.state.value, claimed_at=audit.claimed_at,
                )
            claimed = replace(session, audit=audit.claimed(now))
            if await self._aswap(claimed, version):
                if stale:
                    operator_log.warning(
                        "taking over stale audit claim on session %s (claimed at %s)", exchange_id, audit.claimed_at
                    )
                logger.info("retrying audit append for session %s", exchange_id)
                return await self._append(exchange_id, audit.body, claimed.audit.claim_id)
        raise self._contention(exchange_id)
