"""Adapter for the credential agent that runs proof exchanges."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from .errors import DependencyError, gov_error, GOV_E_PROOF_AGENT_FAILED

logger = logging.getLogger("quorum_gateway.proof_agent")


@dataclass(frozen=True)
class ProofRequestHandle:
    exchange_id: str
    request: Any = None


@runtime_checkable
class ProofAgent(Protocol):
    def create_request(self, proof_request: Dict[str, Any]) -> ProofRequestHandle: ...


class HttpProofAgent:
    """Creates presentation requests via ``POST <admin_url>/present-proof/create-request``."""

    def __init__(self, admin_url: str, *, timeout_s: float = 10.0, api_key: Optional[str] = None):
        self.base_url = admin_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.api_key = api_key

    def create_request(self, proof_request: Dict[str, Any]) -> ProofRequestHandle:
        body = json.dumps({"proof_request": proof_request, "trace": False}).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        req = urllib.request.Request(
            f"{self.base_url}/present-proof/create-request", data=body, headers=headers, method="POST"
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                data = json.loads(resp.read() or b"{}")
        except urllib.error.HTTPError as e:
            logger.warning("proof agent returned HTTP %s", e.code)
            raise gov_error(
                DependencyError, GOV_E_PROOF_AGENT_FAILED, "proof agent rejected the request",
                retryable=e.code >= 500, status=e.code,
            ) from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.warning("proof agent unreachable: %s", e)
            raise gov_error(DependencyError, GOV_E_PROOF_AGENT_FAILED, "proof agent unavailable") from e

        exchange_id = data.get("presentation_exchange_id") if isinstance(data, dict) else None
        if not exchange_id:
            raise gov_error(
                DependencyError, GOV_E_PROOF_AGENT_FAILED, "proof agent response has no presentation_exchange_id",
                retryable=False,
            )
        return ProofRequestHandle(exchange_id=str(exchange_id), request=data.get("presentation_request"))
