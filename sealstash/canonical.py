"""Canonical bytes and hashing primitives for sealstash.

Every identity in the engine (NodeId, ContractId, SchemaId, bundle ids, MPC
leaves, consignment ids) is derived from the helpers in this module:

- Canonical JSON serialization (JCS/RFC8785 subset)
- SHA-256 over canonical bytes
- BIP-340 style tagged hashes for domain separation

Design principles:
- Pure functions only
- Floats are rejected; amounts travel as integers
- Byte-for-byte reproducibility across implementations

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Iterable, Union

SHA256_HEX_RE = re.compile(r"^[a-f0-9]{64}$")

ZERO_HASH = "0" * 64


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC8785 subset).

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use strings/ints for amounts)

    This ensures byte-for-byte reproducibility for cryptographic commitments.
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                if not isinstance(k, str):
                    raise ValueError(f"Non-string key not allowed in canonical JSON at {path}")
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, (list, tuple)):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_digest(obj: Any) -> str:
    """sha256(canonical_json_bytes(obj))."""
    return sha256_bytes(canonical_json_bytes(obj))


def tagged_hash_bytes(tag: str, msg: bytes) -> bytes:
    """BIP-340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || msg)."""
    tag_digest = hashlib.sha256(tag.encode("utf-8")).digest()
    return hashlib.sha256(tag_digest + tag_digest + msg).digest()


def tagged_hash(tag: str, msg: Union[bytes, str]) -> str:
    """Tagged hash returning lowercase hex.

    String messages are UTF-8 encoded before hashing.
    """
    if isinstance(msg, str):
        msg = msg.encode("utf-8")
    return tagged_hash_bytes(tag, msg).hex()


def tagged_digest(tag: str, obj: Any) -> str:
    """Tagged hash over the canonical JSON bytes of ``obj``."""
    return tagged_hash(tag, canonical_json_bytes(obj))


def is_hex_32(s: Any) -> bool:
    """Check if value is a 32-byte digest encoded as 64 lowercase hex chars."""
    return isinstance(s, str) and bool(SHA256_HEX_RE.match(s))


def concat_hex(parts: Iterable[str]) -> bytes:
    """Decode and concatenate hex digests."""
    return b"".join(bytes.fromhex(p) for p in parts)
