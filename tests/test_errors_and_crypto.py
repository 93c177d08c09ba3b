import json

import pytest

from quorum_gateway.crypto import (
    Ed25519KeyPair,
    ValidatorSet,
    canonical_json_dumps,
    decode_json_object,
    hash_canonical,
    load_validator_set_from_env,
    safe_hash_encode,
)
from quorum_gateway.errors import (
    ConflictError,
    DependencyError,
    ValidationError,
    gov_error,
    GOV_E_BAD_REQUEST,
    GOV_E_CANON_NONFINITE,
    GOV_E_CANON_NON_JSON,
    GOV_E_CONTENTION,
)


def test_gov_error_as_dict_hides_details():
    err = gov_error(ConflictError, GOV_E_CONTENTION, "retry", retryable=True, proposal_id="p1")
    assert err.http_status == 409
    assert err.as_dict() == {
        "category": "conflict",
        "code": GOV_E_CONTENTION,
        "message": "retry",
        "retryable": True,
    }
    assert err.as_dict(include_details=True)["details"] == {"proposal_id": "p1"}
    assert str(err) == f"{GOV_E_CONTENTION}: retry"


def test_dependency_errors_default_to_retryable():
    err = gov_error(DependencyError, "X", "down")
    assert err.retryable is True
    assert err.http_status == 502


def test_canonical_json_is_order_independent():
    a = {"b": 1, "a": [1, 2, {"z": None, "y": True}]}
    b = {"a": [1, 2, {"y": True, "z": None}], "b": 1}
    assert canonical_json_dumps(a) == canonical_json_dumps(b) == '{"a":[1,2,{"y":true,"z":null}],"b":1}'
    assert hash_canonical(a) == hash_canonical(b)


def test_canonical_json_normalizes_unicode():
    # "e" + combining acute accent normalizes to the precomposed character.
    assert canonical_json_dumps({"k": "e\u0301"}) == canonical_json_dumps({"k": "\u00e9"})


def test_canonical_json_rejects_nan_and_custom_types():
    with pytest.raises(ValidationError) as exc:
        canonical_json_dumps({"x": float("nan")})
    assert exc.value.code == GOV_E_CANON_NONFINITE

    with pytest.raises(ValidationError) as exc:
        canonical_json_dumps({"x": object()})
    assert exc.value.code == GOV_E_CANON_NON_JSON


def test_safe_hash_encode_prevents_delimiter_collisions():
    assert safe_hash_encode(["a:b", "c"]) != safe_hash_encode(["a", "b:c"])


def test_keypair_sign_and_verify():
    kp = Ed25519KeyPair.generate("k1")
    sig = kp.sign(b"hello")
    assert kp.verify(b"hello", sig)
    assert not kp.verify(b"hello!", sig)

    pub_only = Ed25519KeyPair.from_public_key("k1", kp.public_key_hex)
    assert not pub_only.can_sign()
    assert pub_only.verify(b"hello", sig)
    with pytest.raises(ValueError):
        pub_only.sign(b"hello")


def test_keypair_from_seed_is_deterministic():
    a = Ed25519KeyPair.from_seed(b"\x07" * 32, "a")
    b = Ed25519KeyPair.from_seed(b"\x07" * 32, "b")
    assert a.public_key_bytes == b.public_key_bytes
    with pytest.raises(ValueError):
        Ed25519KeyPair.from_seed(b"short", "c")


def test_validator_set_accepts_hex_and_pem(validator_keys):
    config = {
        validator_keys[0].key_id: validator_keys[0].public_key_hex,
        validator_keys[1].key_id: validator_keys[1].public_key_pem(),
    }
    vs = ValidatorSet.from_config(config)
    assert len(vs) == 2
    assert vs.ids() == sorted(config)
    assert vs.get(validator_keys[1].key_id).public_key_bytes == validator_keys[1].public_key_bytes
    assert "nobody" not in vs


def test_validator_set_rejects_private_keys(validator_keys):
    with pytest.raises(ValueError):
        ValidatorSet({"v": validator_keys[0]})


def test_validator_set_rejects_bad_key_length():
    with pytest.raises(ValueError):
        ValidatorSet.from_config({"v": "abcd"})


def test_validator_set_from_directory(tmp_path, validator_keys):
    for kp in validator_keys[:3]:
        (tmp_path / f"{kp.key_id}.pub").write_text(kp.public_key_pem(), encoding="utf-8")
    (tmp_path / "README.txt").write_text("ignored", encoding="utf-8")
    vs = ValidatorSet.from_directory(tmp_path)
    assert vs.ids() == [kp.key_id for kp in validator_keys[:3]]


def test_load_validator_set_from_env(monkeypatch, validator_keys):
    monkeypatch.setenv("GOV_VALIDATOR_KEYS_JSON", json.dumps({kp.key_id: kp.public_key_hex for kp in validator_keys}))
    vs = load_validator_set_from_env()
    assert len(vs) == len(validator_keys)


def test_load_validator_set_from_env_requires_configuration(monkeypatch):
    for name in ("GOV_VALIDATOR_KEYS_JSON", "GOV_VALIDATOR_KEYS_FILE", "GOV_VALIDATOR_KEYS_DIR"):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(RuntimeError):
        load_validator_set_from_env()

    monkeypatch.setenv("GOV_VALIDATOR_KEYS_JSON", "{}")
    with pytest.raises(RuntimeError):
        load_validator_set_from_env()


def test_decode_json_object():
    assert decode_json_object('{"a": 1}', what="payload") == {"a": 1}
    with pytest.raises(ValidationError) as exc:
        decode_json_object("[1]", what="payload")
    assert exc.value.code == GOV_E_BAD_REQUEST
    with pytest.raises(ValidationError):
        decode_json_object("{nope", what="payload")
