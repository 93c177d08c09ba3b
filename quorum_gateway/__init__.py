"""Quorum Gateway package.

A threshold-governance gateway:

- k-of-n Ed25519-signed approval of irreversible actions
- exactly-once execution of a finalized proposal, across replicas
- verification sessions whose success is logged exactly once
- an append-only audit log with gap-free indices

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from quorum_gateway import GovernanceEngine, create_app
    from quorum_gateway import SqliteStateStore, SqliteAuditLog
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    try:
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


# Prefer repo-local pyproject version (tests), otherwise a hardcoded default.
__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "GovernanceEngine",
    "VerificationSessionTracker",
    "create_app",
    "GatewayServices",
    "SqliteStateStore",
    "MemoryStateStore",
    "RedisStateStore",
    "SqliteAuditLog",
    "InMemoryAuditLog",
    "TransparencyLogClient",
    "ValidatorSet",
    "Ed25519KeyPair",
    "proposal_message",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "GovernanceEngine": ("quorum_gateway.quorum", "GovernanceEngine"),
    "VerificationSessionTracker": ("quorum_gateway.sessions", "VerificationSessionTracker"),
    "create_app": ("quorum_gateway.server", "create_app"),
    "GatewayServices": ("quorum_gateway.server", "GatewayServices"),
    "SqliteStateStore": ("quorum_gateway.store", "SqliteStateStore"),
    "MemoryStateStore": ("quorum_gateway.store", "MemoryStateStore"),
    "RedisStateStore": ("quorum_gateway.store", "RedisStateStore"),
    "SqliteAuditLog": ("quorum_gateway.audit_log", "SqliteAuditLog"),
    "InMemoryAuditLog": ("quorum_gateway.audit_log", "InMemoryAuditLog"),
    "TransparencyLogClient": ("quorum_gateway.transparency", "TransparencyLogClient"),
    "ValidatorSet": ("quorum_gateway.crypto", "ValidatorSet"),
    "Ed25519KeyPair": ("quorum_gateway.crypto", "Ed25519KeyPair"),
    "proposal_message": ("quorum_gateway.signatures", "proposal_message"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'quorum_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
