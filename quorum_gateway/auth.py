"""Caller authentication for the governance gateway.

API keys map to principals; the principal's id is never taken from the
request body. Vote submissions are authenticated by their Ed25519 signature
instead and do not need a key.

Env vars:
  - GOV_API_KEYS_JSON: JSON object mapping api_key -> {"id": ..., "role": ...}
    (or api_key -> id, which means role "validator")
  - GOV_API_KEYS_FILE: path to a JSON file with the same mapping

If configuration is present but malformed every request is rejected.
"""

from __future__ import annotations

import hmac
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from .errors import (
    AuthError,
    gov_error,
    GOV_E_AUTH_INVALID,
    GOV_E_AUTH_REQUIRED,
    GOV_E_FORBIDDEN,
)

ENV_API_KEYS_JSON = "GOV_API_KEYS_JSON"
ENV_API_KEYS_FILE = "GOV_API_KEYS_FILE"

ROLE_ADMIN = "admin"
ROLE_VALIDATOR = "validator"
ROLE_VERIFIER = "verifier"
ROLE_VERIFIER_SYSTEM = "verifier_system"
KNOWN_ROLES = frozenset({ROLE_ADMIN, ROLE_VALIDATOR, ROLE_VERIFIER, ROLE_VERIFIER_SYSTEM})


@dataclass(frozen=True)
class Principal:
    """Resolved caller identity."""

    id: str
    role: str


class Authenticator(Protocol):
    def authenticate(self, api_key: Optional[str]) -> Principal: ...


def _parse_entry(value: Any) -> Principal:
    if isinstance(value, str):
        return Principal(id=value, role=ROLE_VALIDATOR)
    if isinstance(value, dict):
        pid = str(value.get("id") or "").strip()
        role = str(value.get("role") or ROLE_VALIDATOR).strip()
        if not pid:
            raise ValueError("principal id must be non-empty")
        if role not in KNOWN_ROLES:
            raise ValueError(f"unknown role: {role}")
        return Principal(id=pid, role=role)
    raise ValueError("api key entry must be a string or an object")


@dataclass(frozen=True)
class ApiKeyAuthenticator:
    """API key -> Principal lookup."""

    api_keys: Dict[str, Principal]
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuthenticator":
        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        try:
            if raw_json:
                data = json.loads(raw_json)
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            else:
                return cls(api_keys={})
            if not isinstance(data, dict):
                raise ValueError("API key configuration must be a JSON object")
            mapping = {str(k): _parse_entry(v) for k, v in data.items()}
        except (OSError, ValueError):
            # Fail closed at usage time if a mapping was intended but is malformed.
            return cls(api_keys={}, config_error="API_KEY_CONFIG_INVALID")
        return cls(api_keys=mapping)

    def authenticate(self, api_key: Optional[str]) -> Principal:
        if self.config_error:
            raise gov_error(AuthError, GOV_E_AUTH_INVALID, "authentication is misconfigured", http_status=503)
        if not api_key:
            raise gov_error(AuthError, GOV_E_AUTH_REQUIRED, "X-Api-Key header required")
        for known, principal in self.api_keys.items():
            if hmac.compare_digest(known.encode("utf-8"), api_key.encode("utf-8")):
                return principal
        raise gov_error(AuthError, GOV_E_AUTH_INVALID, "invalid API key")


def require_role(principal: Principal, *roles: str) -> Principal:
    if principal.role not in roles:
        raise gov_error(
            AuthError, GOV_E_FORBIDDEN, "principal is not allowed to perform this operation",
            http_status=403, principal=principal.id, role=principal.role,
        )
    return principal
