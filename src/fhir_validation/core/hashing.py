# ============================================================================
# src/fhir_validation/core/hashing.py
# ============================================================================
"""
Resource change detection hashes.

- content_hash: sha256 over canonical JSON, meta reduced to
  versionId/lastUpdated (server bookkeeping is ignored)
- rolling_hash: cheap 32-bit rolling hash over stable JSON, base 36
"""

import hashlib
import json
from typing import Any, Dict

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def stable_stringify(value: Any) -> str:
    """JSON with sorted keys and no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _normalized(resource: Dict[str, Any]) -> Dict[str, Any]:
    normalized = dict(resource)
    meta = normalized.get("meta")
    if isinstance(meta, dict):
        reduced = {k: meta[k] for k in ("versionId", "lastUpdated") if k in meta}
        if reduced:
            normalized["meta"] = reduced
        else:
            normalized.pop("meta")
    return normalized


def content_hash(resource: Dict[str, Any]) -> str:
    canonical = stable_stringify(_normalized(resource))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def rolling_hash(resource: Dict[str, Any]) -> str:
    """hash = hash * 31 + char, kept to signed 32 bits, rendered in base 36."""
    value = 0
    for char in stable_stringify(resource):
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return _to_base36(abs(value))


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))
