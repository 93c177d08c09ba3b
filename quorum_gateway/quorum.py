"""Threshold governance engine.

Votes are merged into a proposal with a compare-and-swap on the stored record
version; a lost race means re-reading and re-checking every precondition.
The one vote whose write takes the approval set to ``threshold`` also flips
the proposal to EXECUTED in that same write, and only that caller invokes the
action executor. Any number of replicas can share a store under this scheme
without double execution.

Store reads and writes on the async paths run in worker threads, like the
executor call, so a slow or locked store never blocks the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from . import metrics
from .crypto import ValidatorSet, canonical_json_dumps
from .errors import (
    ConflictError,
    DependencyError,
    GovError,
    NotFoundError,
    ValidationError,
    gov_error,
    GOV_E_ALREADY_FINALIZED,
    GOV_E_BAD_REQUEST,
    GOV_E_CONTENTION,
    GOV_E_DUPLICATE_VOTE,
    GOV_E_EXECUTOR_FAILED,
    GOV_E_EXECUTOR_TIMEOUT,
    GOV_E_NOT_RETRYABLE,
    GOV_E_PROPOSAL_EXPIRED,
    GOV_E_PROPOSAL_NOT_FOUND,
    GOV_E_SHUTTING_DOWN,
)
from .executor import ActionExecutor, ExecutionResult
from .proposals import (
    ActionKind,
    ExecutionRecord,
    ExecutionState,
    Proposal,
    ProposalStatus,
    ProposalStore,
)
from .signatures import SignatureVerifier
from .store import StateStore

logger = logging.getLogger("quorum_gateway.quorum")
operator_log = logging.getLogger("quorum_gateway.operator")

# Slack on top of the executor timeout before an IN_FLIGHT claim counts as abandoned.
CLAIM_GRACE_SECONDS = 5.0


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VoteResult:
    proposal_id: str
    status: ProposalStatus
    approvals: Tuple[str, ...]
    execution: Optional[ExecutionState] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"status": self.status.value, "approvals": list(self.approvals)}
        if self.execution is not None:
            d["execution"] = self.execution.value
        return d


class GovernanceEngine:
    """k-of-n approval workflow over a shared state store."""

    def __init__(
        self,
        *,
        store: StateStore,
        validators: ValidatorSet,
        executor: ActionExecutor,
        threshold: int = 3,
        proposal_ttl_seconds: float = 86400,
        retention_seconds: float = 86400,
        executor_timeout_seconds: float = 10.0,
        cas_max_attempts: int = 16,
    ):
        if not 1 <= int(threshold) <= len(validators):
            raise ValueError(
                f"threshold must be between 1 and the number of validators ({len(validators)}), got {threshold}"
            )
        self.validators = validators
        self.verifier = SignatureVerifier(validators)
        self.executor = executor
        self.threshold = int(threshold)
        self.proposals = ProposalStore(
            store, ttl_seconds=proposal_ttl_seconds, retention_seconds=retention_seconds
        )
        self.executor_timeout_seconds = float(executor_timeout_seconds)
        self.cas_max_attempts = max(1, int(cas_max_attempts))
        self._accepting = True

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def begin_shutdown(self) -> None:
        self._accepting = False

    @property
    def accepting(self) -> bool:
        return self._accepting

    # ------------------------------------------------------------------
    # proposals
    # ------------------------------------------------------------------

    def create_proposal(self, action: Any, payload: Any, requestor: str) -> Proposal:
        kind = ActionKind.parse(action)
        if not isinstance(payload, dict):
            raise gov_error(ValidationError, GOV_E_BAD_REQUEST, "payload must be a JSON object")
        # Reject payloads that cannot be signed deterministically.
        canonical_json_dumps(payload)

        proposal = Proposal.new(
            kind, payload, str(requestor), now=_now_utc(), ttl_seconds=self.proposals.ttl_seconds
        )
        self.proposals.insert(proposal)
        logger.info("proposal %s created by %s (%s)", proposal.id, proposal.requestor, kind.value)
        return proposal

    def get_proposal(self, proposal_id: str) -> Proposal:
        proposal, _ = self._load_current(proposal_id)
        return proposal

    def _load(self, proposal_id: str) -> Tuple[Proposal, int]:
        loaded = self.proposals.load(proposal_id)
        if loaded is None:
            raise gov_error(NotFoundError, GOV_E_PROPOSAL_NOT_FOUND, "proposal not found", proposal_id=proposal_id)
        return loaded

    async def _aload(self, proposal_id: str) -> Tuple[Proposal, int]:
        return await asyncio.to_thread(self._load, proposal_id)

    async def _aswap(self, proposal: Proposal, version: int) -> bool:
        return await asyncio.to_thread(self.proposals.swap, proposal, version)

    def _load_current(self, proposal_id: str) -> Tuple[Proposal, int]:
        """Load a proposal, first moving it to EXPIRED if its deadline has passed."""
        for _ in range(self.cas_max_attempts):
            proposal, version = self._load(proposal_id)
            if proposal.status is not ProposalStatus.PENDING or not proposal.is_past_deadline(_now_utc()):
                return proposal, version
            expired = proposal.expired()
            if self.proposals.swap(expired, version):
                logger.info("proposal %s expired with %d/%d approvals", proposal_id, len(proposal.approvals), self.threshold)
                return expired, version + 1
        raise self._contention(proposal_id)

    def _contention(self, proposal_id: str) -> ConflictError:
        return gov_error(
            ConflictError,
            GOV_E_CONTENTION,
            "proposal is under heavy contention; retry",
            retryable=True,
            proposal_id=proposal_id,
        )

    # ------------------------------------------------------------------
    # voting
    # ------------------------------------------------------------------

    async def cast_vote(
        self,
        proposal_id: str,
        validator_id: str,
        signature: str,
        *,
        algorithm: Optional[str] = None,
    ) -> VoteResult:
        """Record one validator approval.

        Preconditions are checked in order (unknown validator, missing
        proposal, finalized or expired, duplicate vote, bad signature) and
        re-checked after every lost compare-and-swap.
        """
        if not self._accepting:
            raise gov_error(
                DependencyError,
                GOV_E_SHUTTING_DOWN,
                "gateway is shutting down; retry against another instance",
                http_status=503,
            )
        try:
            result = await self._cast_vote(proposal_id, validator_id, signature, algorithm)
        except GovError as e:
            metrics.record_vote(e.code.lower())
            raise
        metrics.record_vote("finalized" if result.status is ProposalStatus.EXECUTED else "accepted")
        return result

    async def _cast_vote(
        self, proposal_id: str, validator_id: str, signature: str, algorithm: Optional[str]
    ) -> VoteResult:
        self.verifier.require_known(validator_id)
        signature_ok = False

        for _ in range(self.cas_max_attempts):
            proposal, version = await self._aload(proposal_id)
            now = _now_utc()

            if proposal.status is ProposalStatus.EXECUTED:
                raise gov_error(
                    ConflictError, GOV_E_ALREADY_FINALIZED, "proposal already executed", proposal_id=proposal_id
                )
            if proposal.status is ProposalStatus.EXPIRED:
                raise gov_error(ConflictError, GOV_E_PROPOSAL_EXPIRED, "proposal expired", proposal_id=proposal_id)
            if proposal.is_past_deadline(now):
                if not await self._aswap(proposal.expired(), version):
                    continue
                logger.info("proposal %s expired with %d/%d approvals", proposal_id, len(proposal.approvals), self.threshold)
                raise gov_error(ConflictError, GOV_E_PROPOSAL_EXPIRED, "proposal expired", proposal_id=proposal_id)
            if proposal.has_voted(validator_id):
                raise gov_error(
                    ConflictError,
                    GOV_E_DUPLICATE_VOTE,
                    "validator already voted",
                    proposal_id=proposal_id,
                    validator_id=validator_id,
                )
            if not signature_ok:
                # Proposal content never changes, so one successful check holds across retries.
                self.verifier.verify_vote(
                    validator_id, proposal.id, proposal.action.value, proposal.payload, signature, algorithm
                )
                signature_ok = True

            updated = proposal.with_vote(validator_id, self.threshold, now)
            if not await self._aswap(updated, version):
                continue

            logger.info(
                "vote from %s recorded on %s (%d/%d)",
                validator_id, proposal_id, len(updated.approvals), self.threshold,
            )
            if updated.status is ProposalStatus.EXECUTED:
                final = await self._run_executor(updated)
                return VoteResult(final.id, final.status, final.approvals, final.execution.state)
            return VoteResult(updated.id, updated.status, updated.approvals)

        raise self._contention(proposal_id)

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    async def _call_executor(self, proposal: Proposal) -> ExecutionResult:
        # A timed-out worker thread keeps running; its result is discarded.
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.executor.execute, proposal.action, proposal.payload),
                timeout=self.executor_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return ExecutionResult(
                ok=False, detail=f"{GOV_E_EXECUTOR_TIMEOUT}: no result after {self.executor_timeout_seconds}s"
            )
        except Exception as e:
            logger.exception("executor raised for proposal %s", proposal.id)
            return ExecutionResult(ok=False, detail=f"{GOV_E_EXECUTOR_FAILED}: {type(e).__name__}: {e}")

    async def _run_executor(self, proposal: Proposal) -> Proposal:
        """Call the executor under the claim held in ``proposal`` and record the outcome."""
        claim_id = proposal.execution.claim_id
        result = await self._call_executor(proposal)
        outcome = ExecutionState.SUCCEEDED if result.ok else ExecutionState.FAILED
        metrics.record_execution(proposal.action.value, outcome.value.lower())
        if not result.ok:
            metrics.record_dependency_failure("executor")

        for _ in range(self.cas_max_attempts):
            loaded = await asyncio.to_thread(self.proposals.load, proposal.id)
            if loaded is None:
                break
            current, version = loaded
            if current.execution.state is not ExecutionState.IN_FLIGHT or current.execution.claim_id != claim_id:
                operator_log.warning(
                    "execution claim on proposal %s was taken over while executing (now %s); "
                    "discarding result ok=%s detail=%s",
                    proposal.id, current.execution.state.value, result.ok, result.detail,
                )
                return current
            updated = current.with_execution(
                ExecutionRecord(
                    state=outcome,
                    attempts=current.execution.attempts + 1,
                    last_error=None if result.ok else result.detail,
                )
            )
            if await self._aswap(updated, version):
                if result.ok:
                    logger.info("proposal %s executed (%s)", proposal.id, proposal.action.value)
                else:
                    operator_log.error(
                        "execution of proposal %s (%s) failed on attempt %d: %s; "
                        "use retry-execution once the cause is fixed",
                        proposal.id, proposal.action.value, updated.execution.attempts, result.detail,
                    )
                return updated

        operator_log.error(
            "execution result for proposal %s could not be recorded: ok=%s detail=%s",
            proposal.id, result.ok, result.detail,
        )
        return proposal.with_execution(
            ExecutionRecord(state=outcome, attempts=proposal.execution.attempts + 1, last_error=result.detail)
        )

    def claim_is_stale(self, execution: ExecutionRecord, now: datetime) -> bool:
        """True once an IN_FLIGHT claim has outlived any executor call its holder could still be making."""
        age = execution.claim_age_seconds(now)
        return age is None or age >= self.executor_timeout_seconds + CLAIM_GRACE_SECONDS

    async def retry_execution(self, proposal_id: str, *, force: bool = False) -> Proposal:
        """Re-run the execution of a finalized proposal.

        FAILED executions are always retryable. An IN_FLIGHT execution whose
        claim is stale (its replica died mid-call) is taken over only with
        ``force``, since the action may have reached the issuer before the
        crash. Either way the new claim is a CAS, so only one retry runs.
        """
        for _ in range(self.cas_max_attempts):
            proposal, version = await self._aload(proposal_id)
            execution = proposal.execution
            now = _now_utc()
            stale = (
                force
                and execution.state is ExecutionState.IN_FLIGHT
                and self.claim_is_stale(execution, now)
            )
            if proposal.status is not ProposalStatus.EXECUTED or not (
                execution.state is ExecutionState.FAILED or stale
            ):
                raise gov_error(
                    ConflictError,
                    GOV_E_NOT_RETRYABLE,
                    "only failed executions (or stale in-flight ones, with force) can be retried",
                    proposal_id=proposal_id,
                    status=proposal.status.value,
                    execution=execution.state.value,
                    claimed_at=execution.claimed_at,
                )
            claimed = proposal.with_execution(execution.claimed(now))
            if await self._aswap(claimed, version):
                if stale:
                    operator_log.warning(
                        "taking over stale execution claim on proposal %s (claimed at %s)",
                        proposal_id, execution.claimed_at,
                    )
                logger.info("retrying execution of proposal %s", proposal_id)
                return await self._run_executor(claimed)
        raise self._contention(proposal_id)
