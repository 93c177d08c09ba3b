"""Vote signature verification.

A validator approves a proposal by signing the canonical vote message:

    safe_hash_encode(["QUORUM_VOTE_V1", proposal_id, action, canonical_json(payload)])

Binding the proposal id, the action and the full canonical payload means a
signature for one proposal can never be replayed against another, and any
edit to the payload invalidates every signature collected so far.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, Optional

from .crypto import (
    ED25519_SIGNATURE_LEN,
    Ed25519KeyPair,
    ValidatorSet,
    canonical_json_dumps,
    safe_hash_encode,
)
from .errors import (
    CryptoError,
    ValidationError,
    gov_error,
    GOV_E_ALGORITHM_MISMATCH,
    GOV_E_INVALID_SIGNATURE,
    GOV_E_SIGNATURE_MALFORMED,
    GOV_E_UNKNOWN_VALIDATOR,
)

VOTE_DOMAIN = "QUORUM_VOTE_V1"
SIGNATURE_ALGORITHM = "ed25519"


def proposal_message(proposal_id: str, action: str, payload: Dict[str, Any]) -> bytes:
    """Bytes a validator signs to approve ``proposal_id``."""
    return safe_hash_encode([VOTE_DOMAIN, str(proposal_id), str(action), canonical_json_dumps(payload)])


def encode_signature(sig: bytes) -> str:
    return base64.b64encode(sig).decode("ascii")


def decode_signature(sig_b64: str) -> bytes:
    """Decode a base64 signature (standard or URL-safe alphabet, padding optional)."""
    if not isinstance(sig_b64, str) or not sig_b64.strip():
        raise gov_error(CryptoError, GOV_E_SIGNATURE_MALFORMED, "signature must be a non-empty base64 string")
    s = sig_b64.strip().replace("-", "+").replace("_", "/")
    s += "=" * (-len(s) % 4)
    try:
        raw = base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError):
        raise gov_error(CryptoError, GOV_E_SIGNATURE_MALFORMED, "signature is not valid base64") from None
    if len(raw) != ED25519_SIGNATURE_LEN:
        raise gov_error(
            CryptoError,
            GOV_E_SIGNATURE_MALFORMED,
            f"signature must be {ED25519_SIGNATURE_LEN} bytes",
            got=len(raw),
        )
    return raw


class SignatureVerifier:
    """Checks vote signatures against the immutable validator snapshot."""

    def __init__(self, validators: ValidatorSet):
        self.validators = validators

    def require_known(self, validator_id: str) -> Ed25519KeyPair:
        key = self.validators.get(validator_id)
        if key is None:
            raise gov_error(
                ValidationError,
                GOV_E_UNKNOWN_VALIDATOR,
                "unknown validator",
                validator_id=str(validator_id),
            )
        return key

    def verify_vote(
        self,
        validator_id: str,
        proposal_id: str,
        action: str,
        payload: Dict[str, Any],
        signature_b64: str,
        algorithm: Optional[str] = None,
    ) -> None:
        """Raise CryptoError unless ``signature_b64`` is the validator's vote on this proposal."""
        key = self.require_known(validator_id)
        if algorithm is not None and str(algorithm).strip().lower() != SIGNATURE_ALGORITHM:
            raise gov_error(
                CryptoError,
                GOV_E_ALGORITHM_MISMATCH,
                f"unsupported signature algorithm; expected {SIGNATURE_ALGORITHM}",
                got=str(algorithm),
            )
        sig = decode_signature(signature_b64)
        if not key.verify(proposal_message(proposal_id, action, payload), sig):
            raise gov_error(
                CryptoError,
                GOV_E_INVALID_SIGNATURE,
                "signature verification failed",
                validator_id=validator_id,
                proposal_id=proposal_id,
            )
