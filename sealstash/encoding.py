"""Strict document encoding.

Every wire document (schema, node, anchor, consignment, disclosure) travels as
canonical JSON bytes. Decoding is strict:

- bytes must be UTF-8 JSON without duplicate keys, floats or NaN/Infinity
- bytes must equal the canonical re-encoding of what they decode to
- the document must validate against its JSON Schema in ``schemas/``

so ``encode(decode(x)) == x`` holds for every accepted ``x``. Model-level
checks (hex widths, ordering, ranges) are applied afterwards by each type's
``from_dict``.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Tuple

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from sealstash.canonical import canonical_json_bytes
from sealstash.hardening import MalformedEncoding

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
SCHEMA_BASE_URI = "https://schemas.sealstash.dev/"

DOCUMENT_KINDS = ("schema", "node", "anchor", "consignment", "disclosure")

MAX_DOCUMENT_BYTES = 64 * 1024 * 1024


def _load_schema_file(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Registry of all package document schemas, for $ref resolution."""
    resources: List[Tuple[str, Resource]] = []
    for schema_path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = _load_schema_file(schema_path)
        schema_id = schema.get("$id") or f"{SCHEMA_BASE_URI}{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def document_validator(kind: str) -> Draft202012Validator:
    if kind not in DOCUMENT_KINDS:
        raise ValueError(f"unknown document kind: {kind}")
    schema = _load_schema_file(SCHEMAS_DIR / f"{kind}.schema.json")
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_document(obj: Any, kind: str) -> List[str]:
    """Validate a decoded document; returns error messages (empty if valid)."""
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(document_validator(kind).iter_errors(obj), key=lambda e: e.json_path)
    ]


def _reject_duplicates(pairs: List[Tuple[str, Any]]) -> dict:
    out: dict = {}
    for key, value in pairs:
        if key in out:
            raise MalformedEncoding(f"duplicate key {key!r}")
        out[key] = value
    return out


def _reject_float(value: str) -> Any:
    raise MalformedEncoding(f"non-integer number {value}")


def _reject_constant(value: str) -> Any:
    raise MalformedEncoding(f"invalid JSON constant {value}")


def encode_document(obj: Any) -> bytes:
    """Canonical bytes of a document dict."""
    return canonical_json_bytes(obj)


def decode_document(data: bytes, kind: str) -> Any:
    """Strictly decode canonical document bytes of the given kind."""
    if not isinstance(data, (bytes, bytearray)):
        raise MalformedEncoding(f"expected bytes, got {type(data).__name__}")
    if len(data) > MAX_DOCUMENT_BYTES:
        raise MalformedEncoding(f"document exceeds {MAX_DOCUMENT_BYTES} bytes")
    try:
        text = bytes(data).decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedEncoding(f"invalid UTF-8: {e}")
    try:
        obj = json.loads(
            text,
            object_pairs_hook=_reject_duplicates,
            parse_float=_reject_float,
            parse_constant=_reject_constant,
        )
    except json.JSONDecodeError as e:
        raise MalformedEncoding(f"invalid JSON: {e.msg} at position {e.pos}")
    if canonical_json_bytes(obj) != bytes(data):
        raise MalformedEncoding("document is not in canonical form")
    errors = validate_document(obj, kind)
    if errors:
        raise MalformedEncoding(f"{kind} document invalid: " + "; ".join(errors[:5]))
    return obj
