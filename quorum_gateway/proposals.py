"""Proposal records and their lifecycle.

A proposal moves PENDING -> EXECUTED (threshold reached) or PENDING -> EXPIRED
(deadline passed). Nothing ever leaves EXECUTED or EXPIRED. The methods here
are pure: they return a new Proposal describing the next state and leave the
persistence (a compare-and-swap on the stored version) to the caller.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import InternalError, ValidationError, gov_error, GOV_E_INTERNAL, GOV_E_UNKNOWN_ACTION
from .store import StateStore


class ActionKind(str, Enum):
    REVOKE_CREDENTIAL = "REVOKE_CREDENTIAL"
    GENERIC = "GENERIC"

    @classmethod
    def parse(cls, value: Any) -> "ActionKind":
        try:
            return cls(str(value))
        except ValueError:
            raise gov_error(
                ValidationError,
                GOV_E_UNKNOWN_ACTION,
                f"unknown action: {value}",
                allowed=[k.value for k in cls],
            ) from None


class ProposalStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    EXPIRED = "EXPIRED"


class ExecutionState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_FLIGHT = "IN_FLIGHT"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


def _iso(ts: datetime) -> str:
    return ts.isoformat()


@dataclass(frozen=True)
class ExecutionRecord:
    """Execution progress of a finalized proposal.

    Entering IN_FLIGHT always takes a fresh claim (``claim_id``, ``claimed_at``).
    Only the holder of the current claim may record the outcome, so a caller
    whose claim was taken over by an operator cannot overwrite the newer result.
    """
    state: ExecutionState = ExecutionState.NOT_STARTED
    attempts: int = 0
    last_error: Optional[str] = None
    claim_id: Optional[str] = None
    claimed_at: Optional[str] = None

    def claimed(self, now: datetime) -> "ExecutionRecord":
        return replace(self, state=ExecutionState.IN_FLIGHT, claim_id=uuid.uuid4().hex, claimed_at=_iso(now))

    def claim_age_seconds(self, now: datetime) -> Optional[float]:
        if self.claimed_at is None:
            return None
        return (now - datetime.fromisoformat(self.claimed_at)).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "claim_id": self.claim_id,
            "claimed_at": self.claimed_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExecutionRecord":
        return cls(
            state=ExecutionState(d.get("state", ExecutionState.NOT_STARTED.value)),
            attempts=int(d.get("attempts", 0)),
            last_error=d.get("last_error"),
            claim_id=d.get("claim_id"),
            claimed_at=d.get("claimed_at"),
        )


@dataclass(frozen=True)
class Proposal:
    id: str
    action: ActionKind
    payload: Dict[str, Any]
    requestor: str
    created_at: str
    expires_at: str
    status: ProposalStatus = ProposalStatus.PENDING
    approvals: Tuple[str, ...] = ()
    executed_at: Optional[str] = None
    execution: ExecutionRecord = field(default_factory=ExecutionRecord)

    @classmethod
    def new(
        cls,
        action: ActionKind,
        payload: Dict[str, Any],
        requestor: str,
        *,
        now: datetime,
        ttl_seconds: float,
    ) -> "Proposal":
        return cls(
            id=str(uuid.uuid4()),
            action=action,
            payload=dict(payload),
            requestor=requestor,
            created_at=_iso(now),
            expires_at=_iso(now + timedelta(seconds=float(ttl_seconds))),
        )

    def is_past_deadline(self, now: datetime) -> bool:
        return now >= datetime.fromisoformat(self.expires_at)

    def has_voted(self, validator_id: str) -> bool:
        return validator_id in self.approvals

    def with_vote(self, validator_id: str, threshold: int, now: datetime) -> "Proposal":
        """Next state after recording one approval.

        Reaching ``threshold`` finalizes in the same step: status EXECUTED and
        execution IN_FLIGHT are part of the write that adds the k-th vote.
        """
        if self.status is not ProposalStatus.PENDING or self.has_voted(validator_id):
            raise gov_error(InternalError, GOV_E_INTERNAL, "vote applied to non-votable proposal")
        approvals = self.approvals + (validator_id,)
        if len(approvals) >= threshold:
            return replace(
                self,
                approvals=approvals,
                status=ProposalStatus.EXECUTED,
                executed_at=_iso(now),
                execution=ExecutionRecord().claimed(now),
            )
        return replace(self, approvals=approvals)

    def expired(self) -> "Proposal":
        return replace(self, status=ProposalStatus.EXPIRED)

    def with_execution(self, execution: ExecutionRecord) -> "Proposal":
        return replace(self, execution=execution)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.value,
            "payload": self.payload,
            "requestor": self.requestor,
            "approvals": list(self.approvals),
            "status": self.status.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "executed_at": self.executed_at,
            "execution": self.execution.to_dict(),
        }

    @classmethod
    def from_record(cls, d: Dict[str, Any]) -> "Proposal":
        return cls(
            id=str(d["id"]),
            action=ActionKind(d["action"]),
            payload=dict(d.get("payload") or {}),
            requestor=str(d.get("requestor", "")),
            approvals=tuple(str(v) for v in d.get("approvals", [])),
            status=ProposalStatus(d["status"]),
            created_at=str(d["created_at"]),
            expires_at=str(d["expires_at"]),
            executed_at=d.get("executed_at"),
            execution=ExecutionRecord.from_dict(d.get("execution") or {}),
        )

    def view(self) -> Dict[str, Any]:
        """Public representation returned by the HTTP API."""
        return {
            "proposalId": self.id,
            "action": self.action.value,
            "payload": self.payload,
            "requestor": self.requestor,
            "approvals": list(self.approvals),
            "status": self.status.value,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "executedAt": self.executed_at,
            "execution": self.execution.to_dict(),
        }


class ProposalStore:
    """Proposals persisted as ``proposal:<id>`` records in the shared store.

    Records live for the voting window plus a retention window, so an EXPIRED
    or EXECUTED proposal stays readable for a while before it disappears.
    """

    def __init__(self, store: StateStore, *, ttl_seconds: float = 86400, retention_seconds: float = 86400):
        self.store = store
        self.ttl_seconds = float(ttl_seconds)
        self.retention_seconds = float(retention_seconds)

    @staticmethod
    def key(proposal_id: str) -> str:
        return f"proposal:{proposal_id}"

    def insert(self, proposal: Proposal) -> None:
        created = self.store.create(
            self.key(proposal.id),
            proposal.to_record(),
            self.ttl_seconds + self.retention_seconds,
        )
        if not created:
            # uuid4 collision
            raise gov_error(InternalError, GOV_E_INTERNAL, "proposal id already in use", proposal_id=proposal.id)

    def load(self, proposal_id: str) -> Optional[Tuple[Proposal, int]]:
        rec = self.store.get(self.key(proposal_id))
        if rec is None:
            return None
        return Proposal.from_record(rec.value), rec.version

    def swap(self, proposal: Proposal, expected_version: int) -> bool:
        return self.store.compare_and_swap(self.key(proposal.id), expected_version, proposal.to_record())
