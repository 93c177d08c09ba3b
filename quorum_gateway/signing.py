"""
quorum_gateway.signing: the gateway's own signing key.

Validators sign votes with their own keys; the gateway never does. The gateway
key only signs the content of audit entries it submits to the transparency
log, so an entry can be traced back to the gateway that produced it.

Configuration (optional; without it audit entries are submitted unsigned):
- GOV_GATEWAY_SIGNING_KEY: 32-byte Ed25519 seed, hex
- GOV_GATEWAY_SIGNING_KEY_FILE: path to a file holding the hex seed
- GOV_GATEWAY_KEY_ID: key id recorded with signatures (default "gateway")
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from .crypto import Ed25519KeyPair

ENV_SIGNING_KEY = "GOV_GATEWAY_SIGNING_KEY"
ENV_SIGNING_KEY_FILE = "GOV_GATEWAY_SIGNING_KEY_FILE"
ENV_KEY_ID = "GOV_GATEWAY_KEY_ID"


@runtime_checkable
class Signer(Protocol):
    """Protocol implemented by signing backends."""
    key_id: str
    public_key_bytes: bytes

    def public_key_pem(self) -> str: ...

    def sign(self, message: bytes) -> bytes: ...


@dataclass
class FileEd25519Signer:
    """Signer that wraps an Ed25519KeyPair (in-process signing)."""
    keypair: Ed25519KeyPair

    @property
    def key_id(self) -> str:
        return self.keypair.key_id

    @property
    def public_key_bytes(self) -> bytes:
        return self.keypair.public_key_bytes

    def public_key_pem(self) -> str:
        return self.keypair.public_key_pem()

    def sign(self, message: bytes) -> bytes:
        return self.keypair.sign(message)


def coerce_signer(obj: Any) -> Signer:
    """Coerce a supported object into a Signer."""
    if obj is None:
        raise TypeError("signer is None")
    if isinstance(obj, Ed25519KeyPair):
        if not obj.can_sign():
            raise ValueError(f"key {obj.key_id} has no private key")
        return FileEd25519Signer(obj)
    if isinstance(obj, Signer):
        return obj
    raise TypeError(f"Unsupported signer type: {type(obj)}")


def load_gateway_signer_from_env() -> Optional[Signer]:
    """Build the gateway signer from env, or None when not configured."""
    key_id = (os.getenv(ENV_KEY_ID) or "gateway").strip() or "gateway"
    seed_hex = (os.getenv(ENV_SIGNING_KEY) or "").strip()
    key_file = (os.getenv(ENV_SIGNING_KEY_FILE) or "").strip()

    if not seed_hex and key_file:
        with open(key_file, "r", encoding="utf-8") as f:
            seed_hex = f.read().strip()
    if not seed_hex:
        return None

    try:
        seed = bytes.fromhex(seed_hex)
    except ValueError as e:
        raise RuntimeError(f"{ENV_SIGNING_KEY} must be hex encoded") from e
    return FileEd25519Signer(Ed25519KeyPair.from_seed(seed, key_id))
