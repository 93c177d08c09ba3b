"""Action executors.

The engine calls an executor exactly once per finalized proposal (and once per
operator retry). Executors are synchronous; the engine runs them in a worker
thread with a timeout.

- HttpIssuerExecutor: revokes a credential through the issuer's admin API
- NullExecutor: dry-run deployments; logs and reports success
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from .proposals import ActionKind

logger = logging.getLogger("quorum_gateway.executor")


@dataclass(frozen=True)
class ExecutionResult:
    ok: bool
    detail: Optional[str] = None


@runtime_checkable
class ActionExecutor(Protocol):
    def execute(self, action: ActionKind, payload: Dict[str, Any]) -> ExecutionResult: ...


class NullExecutor:
    """Executor that performs nothing."""

    def execute(self, action: ActionKind, payload: Dict[str, Any]) -> ExecutionResult:
        logger.info("dry-run execution of %s", action.value)
        return ExecutionResult(ok=True, detail="dry-run")


class HttpIssuerExecutor:
    """Revoke credentials via ``POST <issuer_admin_url>/revocation/revoke``.

    The proposal payload is forwarded as-is with ``publish: true`` so the
    issuer publishes the updated revocation registry immediately.
    """

    def __init__(self, issuer_admin_url: str, *, timeout_s: float = 10.0, api_key: Optional[str] = None):
        self.base_url = issuer_admin_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.api_key = api_key

    def execute(self, action: ActionKind, payload: Dict[str, Any]) -> ExecutionResult:
        if action is not ActionKind.REVOKE_CREDENTIAL:
            return ExecutionResult(ok=False, detail=f"UNSUPPORTED_ACTION: {action.value}")

        url = f"{self.base_url}/revocation/revoke"
        body = json.dumps({**payload, "publish": True}).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key

        req = urllib.request.Request(url, data=body, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                status = int(getattr(resp, "status", 200))
                if 200 <= status < 300:
                    return ExecutionResult(ok=True, detail=f"HTTP {status}")
                return ExecutionResult(ok=False, detail=f"ISSUER_HTTP_{status}")
        except urllib.error.HTTPError as e:
            try:
                text = e.read().decode("utf-8", errors="replace")
            except OSError:
                text = ""
            return ExecutionResult(ok=False, detail=f"ISSUER_HTTP_ERROR_{e.code}: {text[:200]}")
        except (urllib.error.URLError, OSError) as e:
            return ExecutionResult(ok=False, detail=f"ISSUER_CONNECT_ERROR: {e}")
