"""
Governance Gateway Cryptography Module

Ed25519 signatures for validator votes and gateway-signed audit content.

- The gateway holds only validator PUBLIC keys (it can verify, never sign votes)
- Validators hold their private keys out-of-band
- The validator set is an immutable trust root loaded once at startup

Canonical JSON is used wherever bytes are hashed or signed so that the same
logical object always produces the same byte string.
"""

from __future__ import annotations

import hashlib
import json
import math
import os
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import (
    ValidationError,
    gov_error,
    GOV_E_BAD_REQUEST,
    GOV_E_CANON_DEPTH,
    GOV_E_CANON_KEY_TYPE,
    GOV_E_CANON_NON_JSON,
    GOV_E_CANON_NONFINITE,
)

ENV_VALIDATOR_KEYS_JSON = "GOV_VALIDATOR_KEYS_JSON"
ENV_VALIDATOR_KEYS_FILE = "GOV_VALIDATOR_KEYS_FILE"
ENV_VALIDATOR_KEYS_DIR = "GOV_VALIDATOR_KEYS_DIR"

ED25519_PUBLIC_KEY_LEN = 32
ED25519_SIGNATURE_LEN = 64


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_hash_encode(components: List[str]) -> bytes:
    """
    Length-prefixed encoding for hash and signature inputs.
    Prevents delimiter collision attacks ("a:b" + "c" vs "a" + "b:c").
    """
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


_CANON_MAX_DEPTH = 64
_CANON_UNICODE_NORM = "NFC"


def _canonicalize(obj: Any, *, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _CANON_MAX_DEPTH:
        raise gov_error(ValidationError, GOV_E_CANON_DEPTH, "max nesting depth exceeded", path=_path)

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize(_CANON_UNICODE_NORM, obj)
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise gov_error(ValidationError, GOV_E_CANON_NONFINITE, "non-finite float", path=_path)
        return obj

    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise gov_error(
                    ValidationError, GOV_E_CANON_KEY_TYPE, "object keys must be strings",
                    path=_path, got=type(k).__name__,
                )
            nk = unicodedata.normalize(_CANON_UNICODE_NORM, k)
            if nk in out:
                raise gov_error(
                    ValidationError, GOV_E_CANON_KEY_TYPE,
                    "duplicate object key after unicode normalization", path=_path,
                )
            out[nk] = _canonicalize(v, _path=f"{_path}['{nk}']", _depth=_depth + 1)
        return out

    if isinstance(obj, (list, tuple)):
        return [
            _canonicalize(v, _path=f"{_path}[{i}]", _depth=_depth + 1)
            for i, v in enumerate(obj)
        ]

    raise gov_error(
        ValidationError, GOV_E_CANON_NON_JSON, "value is not JSON-serializable",
        path=_path, got=type(obj).__name__,
    )


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON: sorted keys, no whitespace, NFC strings, strict JSON.

    Raises ValidationError for values that other verifiers could not
    re-encode byte-for-byte (NaN/Infinity, non-string keys, custom types).
    """
    return json.dumps(
        _canonicalize(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def hash_canonical(obj: Any) -> str:
    return sha256_hex(canonical_json_dumps(obj).encode("utf-8"))


@dataclass
class Ed25519KeyPair:
    """
    Ed25519 key pair for signing and verification.

    SECURITY: validator private keys are never loaded by the gateway. A key
    pair with ``private_key_bytes`` is only used for the gateway's own audit
    signing key and in operator tooling/tests.
    """
    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        """Generate a new Ed25519 key pair."""
        private_key = Ed25519PrivateKey.generate()
        return cls._from_private_key(key_id, private_key)

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        """Create key pair from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls._from_private_key(key_id, Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def _from_private_key(cls, key_id: str, private_key: Ed25519PrivateKey) -> "Ed25519KeyPair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        """Create key pair with public key only (for verification)."""
        raw = bytes.fromhex(public_key_hex.strip())
        if len(raw) != ED25519_PUBLIC_KEY_LEN:
            raise ValueError(f"Ed25519 public key must be {ED25519_PUBLIC_KEY_LEN} bytes, got {len(raw)}")
        return cls(key_id=key_id, public_key_bytes=raw)

    @classmethod
    def from_public_pem(cls, key_id: str, pem: str | bytes) -> "Ed25519KeyPair":
        """Create a verification-only key pair from an SPKI PEM public key."""
        data = pem.encode("ascii") if isinstance(pem, str) else pem
        public_key = serialization.load_pem_public_key(data)
        if not isinstance(public_key, Ed25519PublicKey):
            raise ValueError(f"Key {key_id} is not an Ed25519 public key")
        raw = public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(key_id=key_id, public_key_bytes=raw)

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def public_key_pem(self) -> str:
        public_key = Ed25519PublicKey.from_public_bytes(self.public_key_bytes)
        return public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        """Sign a message with the private key."""
        if not self.can_sign():
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        private_key = Ed25519PrivateKey.from_private_bytes(self.private_key_bytes)
        return private_key.sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        """Verify a signature with the public key."""
        try:
            Ed25519PublicKey.from_public_bytes(self.public_key_bytes).verify(signature, message)
            return True
        except InvalidSignature:
            return False


class ValidatorSet:
    """Immutable snapshot of trusted validator public keys.

    The mapping is frozen at construction. Rotating validators means building a
    new snapshot and redeploying; there is deliberately no add/remove API.
    """

    def __init__(self, keys: Mapping[str, Ed25519KeyPair]):
        for validator_id, kp in keys.items():
            if kp.can_sign():
                raise ValueError(f"validator {validator_id} must be configured with a public key only")
        self._keys: Mapping[str, Ed25519KeyPair] = MappingProxyType(dict(keys))

    def __contains__(self, validator_id: object) -> bool:
        return validator_id in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._keys))

    def get(self, validator_id: str) -> Optional[Ed25519KeyPair]:
        return self._keys.get(validator_id)

    def ids(self) -> List[str]:
        return sorted(self._keys)

    @classmethod
    def from_config(cls, config: Mapping[str, str]) -> "ValidatorSet":
        """Build from ``{validator_id: public_key}`` where the key is hex or PEM."""
        keys: Dict[str, Ed25519KeyPair] = {}
        for validator_id, material in config.items():
            vid = str(validator_id).strip()
            if not vid:
                raise ValueError("validator id must be non-empty")
            text = str(material).strip()
            if text.startswith("-----BEGIN"):
                keys[vid] = Ed25519KeyPair.from_public_pem(vid, text)
            else:
                keys[vid] = Ed25519KeyPair.from_public_key(vid, text)
        return cls(keys)

    @classmethod
    def from_directory(cls, path: str | Path) -> "ValidatorSet":
        """Load every ``<validator_id>.pub`` PEM file in a directory."""
        directory = Path(path)
        if not directory.is_dir():
            raise ValueError(f"validator key directory not found: {directory}")
        config: Dict[str, str] = {}
        for pub in sorted(directory.glob("*.pub")):
            config[pub.stem] = pub.read_text(encoding="utf-8")
        return cls.from_config(config)


def load_validator_set_from_env() -> ValidatorSet:
    """Load the validator trust root.

    Sources, first match wins:
      - GOV_VALIDATOR_KEYS_JSON: JSON object {validator_id: public_key_hex_or_pem}
      - GOV_VALIDATOR_KEYS_FILE: path to a file holding that JSON object
      - GOV_VALIDATOR_KEYS_DIR: directory of <validator_id>.pub PEM files

    An empty or missing configuration is a startup error; the gateway never
    falls back to built-in keys.
    """
    raw_json = (os.getenv(ENV_VALIDATOR_KEYS_JSON) or "").strip()
    file_path = (os.getenv(ENV_VALIDATOR_KEYS_FILE) or "").strip()
    key_dir = (os.getenv(ENV_VALIDATOR_KEYS_DIR) or "").strip()

    if raw_json or file_path:
        if raw_json:
            data = json.loads(raw_json)
        else:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("validator key configuration must be a JSON object")
        validators = ValidatorSet.from_config({str(k): str(v) for k, v in data.items()})
    elif key_dir:
        validators = ValidatorSet.from_directory(key_dir)
    else:
        raise RuntimeError(
            "No validator keys configured. Set GOV_VALIDATOR_KEYS_JSON, "
            "GOV_VALIDATOR_KEYS_FILE or GOV_VALIDATOR_KEYS_DIR."
        )

    if len(validators) == 0:
        raise RuntimeError("validator key configuration is empty")
    return validators


def decode_json_object(raw: str, *, what: str) -> Dict[str, Any]:
    """Parse a JSON object supplied by an operator (CLI/config)."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise gov_error(ValidationError, GOV_E_BAD_REQUEST, f"{what} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise gov_error(ValidationError, GOV_E_BAD_REQUEST, f"{what} must be a JSON object")
    return data
