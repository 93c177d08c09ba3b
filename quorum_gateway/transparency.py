"""HTTP audit log backend for a Rekor-compatible transparency log.

Endpoints used:
- POST /api/v1/log/entries           -> {"uuid": ..., "logIndex": n}
- GET  /api/v1/log/entries?logIndex=n -> the entry
- GET  /api/v1/log                   -> {"treeSize": n}

Rekor proper answers POST with ``{"<uuid>": {"logIndex": n, ...}}``; both
shapes are accepted.

Semantics:
- every POST carries an Idempotency-Key header (the caller's key, or sha256 of the canonical body)
- HTTP 409 with a receipt in the body counts as success ("already logged")
- only retryable failures are retried (network, 408/429/5xx), with bounded backoff
- failures raise DependencyError; nothing is swallowed
"""

from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from .audit_log import AuditEntry, AuditLog, AuditReceipt, dedup_key_for
from .crypto import canonical_json_dumps
from .errors import (
    DependencyError,
    NotFoundError,
    gov_error,
    GOV_E_AUDIT_APPEND_FAILED,
    GOV_E_AUDIT_ENTRY_NOT_FOUND,
)

logger = logging.getLogger("quorum_gateway.transparency")

_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class TransparencyPushResult:
    ok: bool
    code: str
    retryable: bool
    http_status: Optional[int]
    attempts: int
    idempotency_key: str
    error: Optional[str] = None


def parse_receipt(data: Any) -> Optional[AuditReceipt]:
    """Extract (uuid, logIndex) from either response shape."""
    if not isinstance(data, dict):
        return None
    if "uuid" in data and "logIndex" in data:
        return AuditReceipt(uuid=str(data["uuid"]), index=int(data["logIndex"]))
    if len(data) == 1:
        (entry_uuid, inner), = data.items()
        if isinstance(inner, dict) and "logIndex" in inner:
            return AuditReceipt(uuid=str(entry_uuid), index=int(inner["logIndex"]))
    return None


class TransparencyLogClient(AuditLog):
    """Audit log that lives in a remote transparency log service."""

    def __init__(self, base_url: str, *, timeout_s: float = 5.0, max_attempts: int = 3,
                 api_key: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = float(timeout_s)
        self.max_attempts = max(1, int(max_attempts))
        self.last_result: Optional[TransparencyPushResult] = None

    def _request(self, method: str, path: str, data: Optional[bytes] = None,
                 headers: Optional[Dict[str, str]] = None) -> Tuple[int, Any]:
        headers = dict(headers or {})
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        req = urllib.request.Request(f"{self.base_url}{path}", data=data, headers=headers, method=method)
        with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
            status = int(getattr(resp, "status", 200))
            raw = resp.read()
        return status, json.loads(raw) if raw else None

    def append(self, body: Dict[str, Any], *, idempotency_key: Optional[str] = None) -> AuditReceipt:
        """POST one entry. Raises DependencyError when the log does not accept it."""
        canonical = canonical_json_dumps(body)
        idem_key = dedup_key_for(body, idempotency_key)
        payload = canonical.encode("utf-8")

        last_err: Exception | None = None
        last_status: int | None = None
        last_code = "unknown"
        retryable = True
        attempt = 0

        for attempt in range(1, self.max_attempts + 1):
            headers = {
                "Content-Type": "application/json",
                "Idempotency-Key": idem_key,
                "X-Gov-Attempt": str(attempt),
            }
            try:
                status, data = self._request("POST", "/api/v1/log/entries", payload, headers)
                last_status = status
                receipt = parse_receipt(data)
                if 200 <= status < 300 and receipt is not None:
                    self.last_result = TransparencyPushResult(
                        ok=True, code="ok", retryable=False, http_status=status,
                        attempts=attempt, idempotency_key=idem_key,
                    )
                    return receipt
                last_code = "bad_response"
                retryable = False
                last_err = RuntimeError(f"transparency log returned HTTP {status} without a receipt")
            except urllib.error.HTTPError as e:
                status = int(getattr(e, "code", 0) or 0)
                last_status = status or None
                if status == 409:
                    try:
                        receipt = parse_receipt(json.loads(e.read() or b"null"))
                    except (ValueError, OSError):
                        receipt = None
                    if receipt is not None:
                        # Idempotent duplicate (already logged).
                        self.last_result = TransparencyPushResult(
                            ok=True, code="duplicate", retryable=False, http_status=status,
                            attempts=attempt, idempotency_key=idem_key,
                        )
                        return replace(receipt, duplicate=True)
                retryable = status in _RETRYABLE_STATUS or (500 <= status < 600)
                last_code = "retryable_http" if retryable else "permanent_http"
                last_err = e
            except (urllib.error.URLError, OSError, ValueError) as e:
                # Network errors, timeouts, garbled responses.
                retryable = True
                last_code = "network_error"
                last_err = e

            if attempt < self.max_attempts and retryable:
                # simple backoff (bounded)
                time.sleep(min(2.0, 0.25 * (2 ** (attempt - 1))))
            else:
                break

        self.last_result = TransparencyPushResult(
            ok=False, code=last_code, retryable=bool(retryable), http_status=last_status,
            attempts=int(attempt), idempotency_key=idem_key, error=str(last_err) if last_err else None,
        )
        logger.warning(
            "transparency log append failed (code=%s, http_status=%s, attempts=%d): %s",
            last_code, last_status, attempt, last_err,
        )
        raise gov_error(
            DependencyError,
            GOV_E_AUDIT_APPEND_FAILED,
            "transparency log append failed",
            retryable=bool(retryable),
            code_detail=last_code,
            http_status_upstream=last_status,
            attempts=attempt,
        ) from last_err

    def get(self, index: int) -> AuditEntry:
        query = urllib.parse.urlencode({"logIndex": int(index)})
        try:
            _, data = self._request("GET", f"/api/v1/log/entries?{query}")
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise gov_error(
                    NotFoundError, GOV_E_AUDIT_ENTRY_NOT_FOUND, "audit entry not found", index=index
                ) from None
            raise gov_error(
                DependencyError, GOV_E_AUDIT_APPEND_FAILED, "transparency log read failed", status=e.code
            ) from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise gov_error(DependencyError, GOV_E_AUDIT_APPEND_FAILED, "transparency log read failed") from e

        receipt = parse_receipt(data)
        if receipt is None:
            raise gov_error(DependencyError, GOV_E_AUDIT_APPEND_FAILED, "transparency log returned a malformed entry")
        doc = data if "uuid" in data else next(iter(data.values()))
        return AuditEntry(
            uuid=receipt.uuid,
            index=receipt.index,
            timestamp=str(doc.get("integratedTime", "")),
            body=doc.get("body") or {},
            prev_hash=doc.get("prevHash"),
            entry_hash=doc.get("entryHash"),
        )

    def range(self, start: int, end: int) -> List[AuditEntry]:
        out: List[AuditEntry] = []
        for index in range(max(1, int(start)), int(end)):
            try:
                out.append(self.get(index))
            except NotFoundError:
                break
        return out

    def size(self) -> int:
        try:
            _, data = self._request("GET", "/api/v1/log")
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise gov_error(DependencyError, GOV_E_AUDIT_APPEND_FAILED, "transparency log read failed") from e
        return int((data or {}).get("treeSize", 0))
