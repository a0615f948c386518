"""Canonical bytes for hashing and signing.

Two encodings live here:

- `jcs_canonicalize`: deterministic JSON bytes (sorted keys, no insignificant
  whitespace, UTF-8, floats rejected) used for event and audit digests.
- 32-byte word encoding (`uint_word`, `address_word`) used to build the
  fixed-layout structured-message hashes that withdrawal authorizations are
  signed over.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict

from custody.hardening import UINT256_MAX

WORD_SIZE = 32


def sha256_bytes(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def sha256_hex(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def _coerce_json_types(obj: Any) -> Any:
    """Coerce Python objects into strict JSON types.

    - Enums collapse to their value.
    - datetime/date objects become RFC3339 / ISO strings.
    - Floats are rejected; amounts are integers in base units.
    """
    if obj is None:
        return None
    if isinstance(obj, Enum):
        return _coerce_json_types(obj.value)
    if isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        raise ValueError("Floats are not allowed in canonical JSON. Use integers in base units.")
    if isinstance(obj, (datetime, date)):
        if isinstance(obj, datetime):
            if obj.tzinfo is None:
                obj = obj.replace(tzinfo=timezone.utc)
            return obj.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(x) for x in obj]
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            out[str(k)] = _coerce_json_types(v)
        return out
    return str(obj)


def jcs_canonicalize(obj: Any) -> bytes:
    """Canonicalize JSON using a JCS-like subset (RFC 8785 compatible for objects without floats)."""
    clean = _coerce_json_types(obj)
    return json.dumps(clean, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def uint_word(value: int) -> bytes:
    """Encode an unsigned integer as one big-endian 32-byte word."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"uint word requires int, got {type(value).__name__}")
    if value < 0 or value > UINT256_MAX:
        raise ValueError(f"value out of uint256 range: {value}")
    return value.to_bytes(WORD_SIZE, "big")


def address_word(address: str) -> bytes:
    """Encode a 0x-prefixed 20-byte address left-padded to one 32-byte word."""
    raw = bytes.fromhex(address[2:] if address.startswith("0x") else address)
    if len(raw) != 20:
        raise ValueError(f"address must be 20 bytes, got {len(raw)}")
    return raw.rjust(WORD_SIZE, b"\x00")


def string_word(value: str) -> bytes:
    """Dynamic strings are represented by the hash of their UTF-8 bytes."""
    return sha256_bytes(value.encode("utf-8"))


def type_hash(type_tag: str) -> bytes:
    """Hash of a structured-message type tag such as ``Withdraw(address requester,...)``."""
    return sha256_bytes(type_tag.encode("ascii"))
