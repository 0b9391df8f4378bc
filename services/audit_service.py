# services/audit_service.py
"""
Audit trail helpers for transparency reports.

Each entry carries a sha256 fingerprint of its action, parameters and result,
computed over canonical JSON (sorted keys, no whitespace). The fingerprint
detects retroactive edits of a stored report; it is not a security signature.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from app.models.xp_transparency import AuditTrailEntry


def _json_sanitize(obj: Any) -> Any:
    """
    Make dicts/lists JSON-safe: Decimal -> float, datetime/date/time -> isoformat,
    pydantic models -> dicts, enums -> values, sets -> list.
    """
    if obj is None:
        return None
    if isinstance(obj, Enum):
        return _json_sanitize(obj.value)
    if isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=timezone.utc)
        return obj.astimezone(timezone.utc).isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, time):
        return obj.isoformat()
    if isinstance(obj, BaseModel):
        return _json_sanitize(obj.model_dump(mode="json"))
    if isinstance(obj, dict):
        return {str(k): _json_sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_json_sanitize(v) for v in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted((_json_sanitize(v) for v in obj), key=str)
    # Fallback: string representation, never fail the audit entry
    return str(obj)


def canonical_json(obj: Any) -> str:
    return json.dumps(_json_sanitize(obj), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksum(action: str, parameters: Dict[str, Any], result: Dict[str, Any]) -> str:
    payload = {"action": action, "parameters": parameters, "result": result}
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def make_audit_entry(
    action: str,
    parameters: Dict[str, Any],
    result: Dict[str, Any],
    at: Optional[datetime] = None,
) -> AuditTrailEntry:
    params = _json_sanitize(parameters)
    res = _json_sanitize(result)
    return AuditTrailEntry(
        timestamp=at or datetime.now(timezone.utc),
        action=action,
        parameters=params,
        result=res,
        checksum=compute_checksum(action, params, res),
    )


def verify_audit_trail(entries: Iterable[AuditTrailEntry]) -> List[int]:
    """Indexes of entries whose checksum no longer matches their content."""
    tampered: List[int] = []
    for idx, entry in enumerate(entries):
        if compute_checksum(entry.action, entry.parameters, entry.result) != entry.checksum:
            tampered.append(idx)
    return tampered
