from __future__ import annotations

from typing import Any, Dict, List

import pytest

from quorum_gateway.crypto import Ed25519KeyPair, ValidatorSet
from quorum_gateway.signatures import encode_signature, proposal_message


def make_validators(n: int = 5) -> List[Ed25519KeyPair]:
    return [Ed25519KeyPair.from_seed(bytes([i + 1]) * 32, f"validator_{i + 1}") for i in range(n)]


def sign_vote(kp: Ed25519KeyPair, proposal_id: str, action: str, payload: Dict[str, Any]) -> str:
    return encode_signature(kp.sign(proposal_message(proposal_id, action, payload)))


@pytest.fixture
def validator_keys() -> List[Ed25519KeyPair]:
    """Five deterministic validator key pairs (private halves stay in the test)."""
    return make_validators(5)


@pytest.fixture
def validator_set(validator_keys) -> ValidatorSet:
    return ValidatorSet.from_config({kp.key_id: kp.public_key_hex for kp in validator_keys})
