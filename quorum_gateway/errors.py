"""Stable error taxonomy for the governance gateway.

Every failure the engine reports is a ``GovError`` subclass carrying:
- a stable ``code`` string suitable for programmatic handling
- a ``category`` (validation / auth / not_found / conflict / crypto /
  dependency / internal) that transport layers map to a status class
- ``retryable`` and ``http_status`` hints
- structured ``details`` for logs only; they never reach API callers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Type, TypeVar


# Input
GOV_E_BAD_REQUEST = "GOV_E_BAD_REQUEST"
GOV_E_UNKNOWN_VALIDATOR = "GOV_E_UNKNOWN_VALIDATOR"
GOV_E_UNKNOWN_ACTION = "GOV_E_UNKNOWN_ACTION"
GOV_E_CANON_NON_JSON = "GOV_E_CANON_NON_JSON"
GOV_E_CANON_DEPTH = "GOV_E_CANON_DEPTH"
GOV_E_CANON_NONFINITE = "GOV_E_CANON_NONFINITE"
GOV_E_CANON_KEY_TYPE = "GOV_E_CANON_KEY_TYPE"
GOV_E_REQUEST_TOO_LARGE = "GOV_E_REQUEST_TOO_LARGE"

# Auth
GOV_E_AUTH_REQUIRED = "GOV_E_AUTH_REQUIRED"
GOV_E_AUTH_INVALID = "GOV_E_AUTH_INVALID"
GOV_E_FORBIDDEN = "GOV_E_FORBIDDEN"
GOV_E_RATE_LIMITED = "GOV_E_RATE_LIMITED"

# Lookup
GOV_E_PROPOSAL_NOT_FOUND = "GOV_E_PROPOSAL_NOT_FOUND"
GOV_E_SESSION_NOT_FOUND = "GOV_E_SESSION_NOT_FOUND"
GOV_E_SESSION_EXISTS = "GOV_E_SESSION_EXISTS"
GOV_E_AUDIT_ENTRY_NOT_FOUND = "GOV_E_AUDIT_ENTRY_NOT_FOUND"

# State machine
GOV_E_ALREADY_FINALIZED = "GOV_E_ALREADY_FINALIZED"
GOV_E_PROPOSAL_EXPIRED = "GOV_E_PROPOSAL_EXPIRED"
GOV_E_DUPLICATE_VOTE = "GOV_E_DUPLICATE_VOTE"
GOV_E_CONTENTION = "GOV_E_CONTENTION"
GOV_E_NOT_RETRYABLE = "GOV_E_NOT_RETRYABLE"

# Signatures
GOV_E_INVALID_SIGNATURE = "GOV_E_INVALID_SIGNATURE"
GOV_E_SIGNATURE_MALFORMED = "GOV_E_SIGNATURE_MALFORMED"
GOV_E_ALGORITHM_MISMATCH = "GOV_E_ALGORITHM_MISMATCH"

# Dependencies
GOV_E_EXECUTOR_FAILED = "GOV_E_EXECUTOR_FAILED"
GOV_E_EXECUTOR_TIMEOUT = "GOV_E_EXECUTOR_TIMEOUT"
GOV_E_AUDIT_APPEND_FAILED = "GOV_E_AUDIT_APPEND_FAILED"
GOV_E_PROOF_AGENT_FAILED = "GOV_E_PROOF_AGENT_FAILED"
GOV_E_STORE_UNAVAILABLE = "GOV_E_STORE_UNAVAILABLE"
GOV_E_SHUTTING_DOWN = "GOV_E_SHUTTING_DOWN"

# Generic
GOV_E_INTERNAL = "GOV_E_INTERNAL"


@dataclass
class GovError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 500
    details: Dict[str, Any] = field(default_factory=dict)

    category: ClassVar[str] = "internal"

    def as_dict(self, *, include_details: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "category": self.category,
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
        }
        if include_details and self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass
class ValidationError(GovError):
    http_status: int = 400
    category: ClassVar[str] = "validation"


@dataclass
class AuthError(GovError):
    http_status: int = 401
    category: ClassVar[str] = "auth"


@dataclass
class NotFoundError(GovError):
    http_status: int = 404
    category: ClassVar[str] = "not_found"


@dataclass
class ConflictError(GovError):
    http_status: int = 409
    category: ClassVar[str] = "conflict"


@dataclass
class CryptoError(GovError):
    # Signature problems are reported to callers as bad requests.
    http_status: int = 400
    category: ClassVar[str] = "crypto"


@dataclass
class DependencyError(GovError):
    retryable: bool = True
    http_status: int = 502
    category: ClassVar[str] = "dependency"


@dataclass
class InternalError(GovError):
    http_status: int = 500
    category: ClassVar[str] = "internal"


E = TypeVar("E", bound=GovError)


def gov_error(
    cls: Type[E],
    code: str,
    message: str,
    *,
    retryable: bool | None = None,
    http_status: int | None = None,
    **details: Any,
) -> E:
    kwargs: Dict[str, Any] = {"code": code, "message": message, "details": details}
    if retryable is not None:
        kwargs["retryable"] = retryable
    if http_status is not None:
        kwargs["http_status"] = http_status
    return cls(**kwargs)
