import base64

import pytest

from quorum_gateway.errors import (
    CryptoError,
    ValidationError,
    GOV_E_ALGORITHM_MISMATCH,
    GOV_E_INVALID_SIGNATURE,
    GOV_E_SIGNATURE_MALFORMED,
    GOV_E_UNKNOWN_VALIDATOR,
)
from quorum_gateway.signatures import (
    SignatureVerifier,
    decode_signature,
    encode_signature,
    proposal_message,
)

from conftest import sign_vote

PAYLOAD = {"cred_rev_id": "12", "rev_reg_id": "reg:1"}


def test_valid_vote_signature_is_accepted(validator_keys, validator_set):
    v = SignatureVerifier(validator_set)
    kp = validator_keys[0]
    sig = sign_vote(kp, "p1", "REVOKE_CREDENTIAL", PAYLOAD)
    v.verify_vote(kp.key_id, "p1", "REVOKE_CREDENTIAL", PAYLOAD, sig)
    v.verify_vote(kp.key_id, "p1", "REVOKE_CREDENTIAL", PAYLOAD, sig, algorithm="Ed25519")


def test_signature_is_bound_to_proposal_id(validator_keys, validator_set):
    v = SignatureVerifier(validator_set)
    kp = validator_keys[0]
    sig = sign_vote(kp, "p1", "REVOKE_CREDENTIAL", PAYLOAD)
    with pytest.raises(CryptoError) as exc:
        v.verify_vote(kp.key_id, "p2", "REVOKE_CREDENTIAL", PAYLOAD, sig)
    assert exc.value.code == GOV_E_INVALID_SIGNATURE


def test_signature_is_bound_to_action_and_payload(validator_keys, validator_set):
    v = SignatureVerifier(validator_set)
    kp = validator_keys[0]
    sig = sign_vote(kp, "p1", "REVOKE_CREDENTIAL", PAYLOAD)
    with pytest.raises(CryptoError):
        v.verify_vote(kp.key_id, "p1", "GENERIC", PAYLOAD, sig)
    with pytest.raises(CryptoError):
        v.verify_vote(kp.key_id, "p1", "REVOKE_CREDENTIAL", {**PAYLOAD, "cred_rev_id": "13"}, sig)


def test_payload_key_order_does_not_matter(validator_keys, validator_set):
    v = SignatureVerifier(validator_set)
    kp = validator_keys[0]
    sig = sign_vote(kp, "p1", "GENERIC", {"a": 1, "b": 2})
    v.verify_vote(kp.key_id, "p1", "GENERIC", {"b": 2, "a": 1}, sig)


def test_signature_by_another_validator_is_rejected(validator_keys, validator_set):
    v = SignatureVerifier(validator_set)
    sig = sign_vote(validator_keys[1], "p1", "GENERIC", PAYLOAD)
    with pytest.raises(CryptoError) as exc:
        v.verify_vote(validator_keys[0].key_id, "p1", "GENERIC", PAYLOAD, sig)
    assert exc.value.code == GOV_E_INVALID_SIGNATURE


def test_unknown_validator_rejected(validator_set):
    v = SignatureVerifier(validator_set)
    with pytest.raises(ValidationError) as exc:
        v.verify_vote("mallory", "p1", "GENERIC", PAYLOAD, "AA==")
    assert exc.value.code == GOV_E_UNKNOWN_VALIDATOR


def test_algorithm_mismatch_rejected(validator_keys, validator_set):
    v = SignatureVerifier(validator_set)
    kp = validator_keys[0]
    sig = sign_vote(kp, "p1", "GENERIC", PAYLOAD)
    with pytest.raises(CryptoError) as exc:
        v.verify_vote(kp.key_id, "p1", "GENERIC", PAYLOAD, sig, algorithm="ecdsa-p256")
    assert exc.value.code == GOV_E_ALGORITHM_MISMATCH


@pytest.mark.parametrize("bad", ["", "   ", "not base64!!", base64.b64encode(b"x" * 63).decode()])
def test_malformed_signatures(bad):
    with pytest.raises(CryptoError) as exc:
        decode_signature(bad)
    assert exc.value.code == GOV_E_SIGNATURE_MALFORMED


def test_decode_accepts_urlsafe_and_unpadded(validator_keys):
    raw = validator_keys[0].sign(proposal_message("p1", "GENERIC", PAYLOAD))
    urlsafe = base64.urlsafe_b64encode(raw).decode().rstrip("=")
    assert decode_signature(urlsafe) == raw
    assert decode_signature(encode_signature(raw)) == raw


def test_proposal_message_is_domain_separated():
    m = proposal_message("p1", "GENERIC", {})
    assert b"QUORUM_VOTE_V1" in m
    assert m != proposal_message("p1", "GENERIC", {"x": 1})
