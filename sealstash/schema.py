"""
Schema Engine

A schema defines one contract class: the field types carried as metadata and
global state, the owned state types, the public rights (valencies), and a
node template for genesis, each transition kind and each extension kind.

A template bounds how often each field, input owned type, output owned type,
declared right and redeemed right may occur, and names one predicate from a
closed set:

    none                    accept
    fungible_issue          outputs of a fungible type hide exactly the
                            declared supply
    fungible_conservation   input and output commitments of a fungible type
                            hide the same total
    commitments_preserved   the multiset of input and output state
                            commitments of a type is unchanged

``SchemaEngine.validate`` is pure and total: it never touches the ledger or
the stash, and returns ``None`` (accept) or a typed ``Reject``.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sealstash import pedersen
from sealstash.canonical import tagged_digest
from sealstash.hardening import (
    MalformedEncoding,
    Reject,
    RejectKind,
    ThreadSafeDict,
    UnknownSchema,
    Validators,
)
from sealstash.node import AssignmentRef, Assignment, Extension, Genesis, Node, Transition
from sealstash.observability import Layer, get_logger

logger = get_logger("schema", Layer.SCHEMA)

SCHEMA_TAG = "sealstash:schema"

INTEGER_RANGES = {
    "u8": (0, (1 << 8) - 1),
    "u16": (0, (1 << 16) - 1),
    "u32": (0, (1 << 32) - 1),
    "u64": (0, (1 << 64) - 1),
    "i64": (-(1 << 63), (1 << 63) - 1),
}
FIELD_TYPES = frozenset(INTEGER_RANGES) | {"string", "bytes"}
OWNED_STATE_TYPES = frozenset({"declarative", "fungible", "data"})


# =============================================================================
# SCHEMA MODEL
# =============================================================================

@dataclass(frozen=True)
class FieldSpec:
    """Type of a metadata or global state field."""
    type: str
    max_len: Optional[int] = None

    def check(self, value: Any) -> Optional[str]:
        """Return a mismatch description, or None when ``value`` fits."""
        if self.type in INTEGER_RANGES:
            lo, hi = INTEGER_RANGES[self.type]
            if isinstance(value, bool) or not isinstance(value, int) or not lo <= value <= hi:
                return f"expected {self.type}, got {value!r}"
            return None
        if not isinstance(value, str):
            return f"expected {self.type}, got {type(value).__name__}"
        if self.type == "bytes":
            result = Validators.validate_hex(value, "bytes", self.max_len)
            return None if result.is_valid else result.errors[0].message
        if self.max_len is not None and len(value) > self.max_len:
            return f"string longer than {self.max_len}"
        return None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"type": self.type}
        if self.max_len is not None:
            d["max_len"] = self.max_len
        return d


@dataclass(frozen=True)
class Occurrence:
    """Inclusive bounds on a count; ``max=None`` is unbounded."""
    min: int = 0
    max: Optional[int] = 1

    def allows(self, count: int) -> bool:
        return count >= self.min and (self.max is None or count <= self.max)

    def __str__(self) -> str:
        return f"[{self.min}, {'*' if self.max is None else self.max}]"

    def to_list(self) -> List[Optional[int]]:
        return [self.min, self.max]


ONCE = Occurrence(1, 1)
NONE_OR_ONCE = Occurrence(0, 1)
ONCE_OR_MORE = Occurrence(1, None)
ANY = Occurrence(0, None)


@dataclass(frozen=True)
class PredicateRef:
    name: str = "none"
    args: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "args": dict(self.args)}


@dataclass(frozen=True)
class NodeTemplate:
    """Shape and rule of one node kind."""
    metadata: Dict[str, Occurrence] = field(default_factory=dict)
    global_state: Dict[str, Occurrence] = field(default_factory=dict)
    inputs: Dict[str, Occurrence] = field(default_factory=dict)
    outputs: Dict[str, Occurrence] = field(default_factory=dict)
    public_rights: Dict[str, Occurrence] = field(default_factory=dict)
    redeems: Dict[str, Occurrence] = field(default_factory=dict)
    predicate: PredicateRef = field(default_factory=PredicateRef)

    SECTIONS = ("metadata", "global_state", "inputs", "outputs", "public_rights", "redeems")

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            section: {k: o.to_list() for k, o in getattr(self, section).items()}
            for section in self.SECTIONS
        }
        d["predicate"] = self.predicate.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "NodeTemplate":
        if not isinstance(data, dict) or set(data) != set(cls.SECTIONS) | {"predicate"}:
            raise MalformedEncoding(f"{where}: template must have {sorted(set(cls.SECTIONS) | {'predicate'})}")
        sections: Dict[str, Dict[str, Occurrence]] = {}
        for section in cls.SECTIONS:
            raw = data[section]
            if not isinstance(raw, dict):
                raise MalformedEncoding(f"{where}.{section} must be an object")
            sections[section] = {}
            for name, bounds in raw.items():
                sections[section][name] = _occurrence_from(bounds, f"{where}.{section}.{name}")
        pred = data["predicate"]
        if (not isinstance(pred, dict) or set(pred) != {"name", "args"}
                or not isinstance(pred["name"], str) or not isinstance(pred["args"], dict)):
            raise MalformedEncoding(f"{where}.predicate must be {{name, args}}")
        return cls(predicate=PredicateRef(pred["name"], dict(pred["args"])), **sections)


def _occurrence_from(bounds: Any, where: str) -> Occurrence:
    if not isinstance(bounds, list) or len(bounds) != 2:
        raise MalformedEncoding(f"{where}: bounds must be [min, max]")
    lo, hi = bounds
    if isinstance(lo, bool) or not isinstance(lo, int) or lo < 0:
        raise MalformedEncoding(f"{where}: min must be a non-negative integer")
    if hi is not None and (isinstance(hi, bool) or not isinstance(hi, int) or hi < lo):
        raise MalformedEncoding(f"{where}: max must be null or an integer >= min")
    return Occurrence(lo, hi)


@dataclass(frozen=True)
class Schema:
    """An immutable contract class definition, addressed by its SchemaId."""
    name: str
    version: int = 1
    fields: Dict[str, FieldSpec] = field(default_factory=dict)
    owned_types: Dict[str, str] = field(default_factory=dict)
    valencies: Tuple[str, ...] = ()
    genesis: NodeTemplate = field(default_factory=NodeTemplate)
    transitions: Dict[str, NodeTemplate] = field(default_factory=dict)
    extensions: Dict[str, NodeTemplate] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "valencies", tuple(sorted(set(self.valencies))))
        self.check()

    @cached_property
    def schema_id(self) -> str:
        return tagged_digest(SCHEMA_TAG, self.to_dict())

    def template_for(self, node: Node) -> Optional[NodeTemplate]:
        if isinstance(node, Genesis):
            return self.genesis
        if isinstance(node, Transition):
            return self.transitions.get(node.kind)
        return self.extensions.get(node.kind)

    def check(self) -> None:
        """Raise MalformedEncoding unless the schema is well formed."""
        Validators.validate_name(self.name, "schema.name").raise_if_invalid()
        if isinstance(self.version, bool) or not isinstance(self.version, int) or self.version < 1:
            raise MalformedEncoding("schema.version must be a positive integer")
        for name, spec in self.fields.items():
            Validators.validate_name(name, "schema.fields").raise_if_invalid()
            if spec.type not in FIELD_TYPES:
                raise MalformedEncoding(f"field {name}: unknown field type {spec.type!r}")
            if spec.max_len is not None:
                if spec.type not in ("string", "bytes"):
                    raise MalformedEncoding(f"field {name}: max_len only applies to string and bytes")
                if isinstance(spec.max_len, bool) or not isinstance(spec.max_len, int) or spec.max_len < 0:
                    raise MalformedEncoding(f"field {name}: max_len must be a non-negative integer")
        for name, kind in self.owned_types.items():
            Validators.validate_name(name, "schema.owned_types").raise_if_invalid()
            if kind not in OWNED_STATE_TYPES:
                raise MalformedEncoding(f"owned type {name}: unknown state type {kind!r}")
        for v in self.valencies:
            Validators.validate_name(v, "schema.valencies").raise_if_invalid()

        templates = [("genesis", self.genesis)]
        templates += [(f"transitions.{k}", t) for k, t in self.transitions.items()]
        templates += [(f"extensions.{k}", t) for k, t in self.extensions.items()]
        for kind in list(self.transitions) + list(self.extensions):
            Validators.validate_name(kind, "schema.kind").raise_if_invalid()
        for where, t in templates:
            for section in ("metadata", "global_state"):
                for name in getattr(t, section):
                    if name not in self.fields:
                        raise MalformedEncoding(f"{where}.{section}: undeclared field {name}")
            for section in ("inputs", "outputs"):
                for name in getattr(t, section):
                    if name not in self.owned_types:
                        raise MalformedEncoding(f"{where}.{section}: undeclared owned type {name}")
            for section in ("public_rights", "redeems"):
                for name in getattr(t, section):
                    if name not in self.valencies:
                        raise MalformedEncoding(f"{where}.{section}: undeclared valency {name}")
            if where == "genesis" and (t.inputs or t.redeems):
                raise MalformedEncoding("genesis template cannot take inputs or redeem rights")
            if where.startswith("transitions.") and (t.redeems or t.public_rights):
                raise MalformedEncoding(f"{where}: transitions cannot declare or redeem rights")
            if where.startswith("extensions.") and (t.inputs or not t.redeems):
                raise MalformedEncoding(f"{where}: extensions redeem rights and take no inputs")
            predicate = PREDICATES.get(t.predicate.name)
            if predicate is None:
                raise MalformedEncoding(f"{where}: unknown predicate {t.predicate.name!r}")
            error = predicate.check_args(self, t.predicate.args)
            if error:
                raise MalformedEncoding(f"{where}: predicate {t.predicate.name}: {error}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "fields": {k: v.to_dict() for k, v in self.fields.items()},
            "owned_types": dict(self.owned_types),
            "valencies": list(self.valencies),
            "genesis": self.genesis.to_dict(),
            "transitions": {k: t.to_dict() for k, t in self.transitions.items()},
            "extensions": {k: t.to_dict() for k, t in self.extensions.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Schema":
        keys = {"name", "version", "fields", "owned_types", "valencies",
                "genesis", "transitions", "extensions"}
        if not isinstance(data, dict) or set(data) != keys:
            raise MalformedEncoding(f"schema must have exactly {sorted(keys)}")
        fields_raw = data["fields"]
        if not isinstance(fields_raw, dict):
            raise MalformedEncoding("schema.fields must be an object")
        fields: Dict[str, FieldSpec] = {}
        for name, spec in fields_raw.items():
            if not isinstance(spec, dict) or "type" not in spec or not set(spec) <= {"type", "max_len"}:
                raise MalformedEncoding(f"field {name} must be {{type, max_len?}}")
            fields[name] = FieldSpec(spec["type"], spec.get("max_len"))
        valencies = data["valencies"]
        if not isinstance(valencies, list) or valencies != sorted(set(valencies)):
            raise MalformedEncoding("schema.valencies must be a sorted list of unique names")
        for section in ("owned_types", "transitions", "extensions"):
            if not isinstance(data[section], dict):
                raise MalformedEncoding(f"schema.{section} must be an object")
        return cls(
            name=data["name"],
            version=data["version"],
            fields=fields,
            owned_types=dict(data["owned_types"]),
            valencies=tuple(valencies),
            genesis=NodeTemplate.from_dict(data["genesis"], "genesis"),
            transitions={k: NodeTemplate.from_dict(t, f"transitions.{k}")
                         for k, t in data["transitions"].items()},
            extensions={k: NodeTemplate.from_dict(t, f"extensions.{k}")
                        for k, t in data["extensions"].items()},
        )

    def to_bytes(self) -> bytes:
        from sealstash.encoding import encode_document
        return encode_document(self.to_dict())

    @classmethod
    def from_bytes(cls, data: bytes) -> "Schema":
        from sealstash.encoding import decode_document
        return cls.from_dict(decode_document(data, "schema"))


# =============================================================================
# VALIDATION CONTEXT
# =============================================================================

@dataclass(frozen=True)
class ContractMetadata:
    """
    Contract-level facts a node is validated against.

    ``rights`` maps each node id an extension redeems from to the valencies
    that node declared.
    """
    genesis: Optional[Genesis] = None
    rights: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)


# =============================================================================
# PREDICATES (closed set)
# =============================================================================

PriorAssignments = Mapping[AssignmentRef, Assignment]


@dataclass(frozen=True)
class Predicate:
    name: str
    check_args: Callable[[Schema, Dict[str, Any]], Optional[str]]
    evaluate: Callable[[Node, PriorAssignments, ContractMetadata, Dict[str, Any]], Optional[str]]


def _inputs_of(prior: PriorAssignments, node: Node, owned_type: str) -> List[Assignment]:
    return [prior[r] for r in node.inputs_refs() if r.owned_type == owned_type and r in prior]


def _args_owned_type(schema: Schema, args: Dict[str, Any], kinds: Tuple[str, ...]) -> Optional[str]:
    owned_type = args.get("owned_type")
    if schema.owned_types.get(owned_type) not in kinds:
        return f"owned_type must name a declared {'/'.join(kinds)} type"
    return None


def _check_none(schema: Schema, args: Dict[str, Any]) -> Optional[str]:
    return "takes no arguments" if args else None


def _eval_none(node, prior, metadata, args) -> Optional[str]:
    return None


def _check_issue(schema: Schema, args: Dict[str, Any]) -> Optional[str]:
    if set(args) != {"owned_type", "supply_field"}:
        return "expects owned_type and supply_field"
    spec = schema.fields.get(args["supply_field"])
    if spec is None or spec.type != "u64":
        return "supply_field must name a declared u64 field"
    return _args_owned_type(schema, args, ("fungible",))


def _unproven_output(node: Node, owned_type: str) -> Optional[str]:
    """First concealed output of ``owned_type`` whose range proof fails."""
    for index, a in enumerate(node.owned_state.get(owned_type, ())):
        if not a.state.is_revealed and not a.state.verify_range():
            return f"{owned_type} output {index} has an invalid range proof"
    return None


def _eval_issue(node, prior, metadata, args) -> Optional[str]:
    supply = node.global_state.get(args["supply_field"], ())
    if len(supply) != 1:
        return f"exactly one {args['supply_field']} value is required"
    unproven = _unproven_output(node, args["owned_type"])
    if unproven is not None:
        return unproven
    outputs = [a.state.commitment() for a in node.owned_state.get(args["owned_type"], ())]
    if not pedersen.verify_issue(outputs, supply[0]):
        return f"issued {args['owned_type']} outputs do not hide the declared supply {supply[0]}"
    return None


def _check_conservation(schema: Schema, args: Dict[str, Any]) -> Optional[str]:
    if set(args) != {"owned_type"}:
        return "expects owned_type"
    return _args_owned_type(schema, args, ("fungible",))


def _eval_conservation(node, prior, metadata, args) -> Optional[str]:
    owned_type = args["owned_type"]
    unproven = _unproven_output(node, owned_type)
    if unproven is not None:
        return unproven
    inputs = [a.state.commitment() for a in _inputs_of(prior, node, owned_type)]
    outputs = [a.state.commitment() for a in node.owned_state.get(owned_type, ())]
    if not pedersen.verify_sum(inputs, outputs):
        return f"{owned_type} inputs and outputs do not balance"
    return None


def _check_preserved(schema: Schema, args: Dict[str, Any]) -> Optional[str]:
    if set(args) != {"owned_type"}:
        return "expects owned_type"
    return _args_owned_type(schema, args, ("fungible", "data"))


def _eval_preserved(node, prior, metadata, args) -> Optional[str]:
    owned_type = args["owned_type"]
    inputs = Counter(a.state.commitment() for a in _inputs_of(prior, node, owned_type))
    outputs = Counter(a.state.commitment() for a in node.owned_state.get(owned_type, ()))
    if inputs != outputs:
        return f"{owned_type} state commitments are not preserved"
    return None


PREDICATES: Dict[str, Predicate] = {
    "none": Predicate("none", _check_none, _eval_none),
    "fungible_issue": Predicate("fungible_issue", _check_issue, _eval_issue),
    "fungible_conservation": Predicate("fungible_conservation", _check_conservation, _eval_conservation),
    "commitments_preserved": Predicate("commitments_preserved", _check_preserved, _eval_preserved),
}


# =============================================================================
# ENGINE
# =============================================================================

class SchemaEngine:
    """Validates nodes against one schema."""

    def __init__(self, schema: Schema):
        self.schema = schema

    def validate(
        self,
        node: Node,
        prior_assignments: PriorAssignments,
        metadata: Optional[ContractMetadata] = None,
    ) -> Optional[Reject]:
        """
        Check ``node`` against the schema.

        ``prior_assignments`` holds the assignment behind every input
        reference of a transition. Returns None on accept.
        """
        metadata = metadata or ContractMetadata()
        template = self.schema.template_for(node)
        if template is None:
            return Reject(RejectKind.UNKNOWN_TRANSITION_KIND,
                          f"{node.node_type.value} kind {node.kind!r} is not defined", "kind")

        for check in (self._check_fields, self._check_owned, self._check_rights):
            reject = check(node, template, prior_assignments, metadata)
            if reject is not None:
                return reject

        predicate = PREDICATES[template.predicate.name]
        failure = predicate.evaluate(node, prior_assignments, metadata, template.predicate.args)
        if failure is not None:
            return Reject(RejectKind.PREDICATE_VIOLATION, failure, template.predicate.name)
        return None

    def _check_fields(self, node, template, prior, metadata) -> Optional[Reject]:
        for section in ("metadata", "global_state"):
            values = getattr(node, section)
            bounds = getattr(template, section)
            for name, items in values.items():
                spec = self.schema.fields.get(name)
                if spec is None:
                    return Reject(RejectKind.UNKNOWN_FIELD_TYPE, f"undeclared field {name}", f"{section}.{name}")
                for v in items:
                    mismatch = spec.check(v)
                    if mismatch:
                        return Reject(RejectKind.TYPE_MISMATCH, mismatch, f"{section}.{name}")
            reject = _check_counts(bounds, {k: len(v) for k, v in values.items()}, section)
            if reject is not None:
                return reject
        return None

    def _check_owned(self, node, template, prior, metadata) -> Optional[Reject]:
        for owned_type, items in node.owned_state.items():
            kind = self.schema.owned_types.get(owned_type)
            if kind is None:
                return Reject(RejectKind.UNKNOWN_FIELD_TYPE, f"undeclared owned type {owned_type}",
                              f"owned_state.{owned_type}")
            for a in items:
                if a.state.type_name != kind:
                    return Reject(RejectKind.TYPE_MISMATCH,
                                  f"expected {kind} state, got {a.state.type_name}", f"owned_state.{owned_type}")
        reject = _check_counts(template.outputs, {k: len(v) for k, v in node.owned_state.items()}, "outputs")
        if reject is not None:
            return reject

        input_counts: Counter = Counter()
        for ref in node.inputs_refs():
            kind = self.schema.owned_types.get(ref.owned_type)
            if kind is None:
                return Reject(RejectKind.UNKNOWN_FIELD_TYPE, f"undeclared owned type {ref.owned_type}",
                              f"inputs.{ref.owned_type}")
            assignment = prior.get(ref)
            if assignment is None:
                return Reject(RejectKind.ARITY_MISMATCH, f"no prior assignment for input {ref}", "inputs")
            if assignment.state.type_name != kind:
                return Reject(RejectKind.TYPE_MISMATCH,
                              f"input {ref} holds {assignment.state.type_name} state, expected {kind}",
                              f"inputs.{ref.owned_type}")
            input_counts[ref.owned_type] += 1
        return _check_counts(template.inputs, dict(input_counts), "inputs")

    def _check_rights(self, node, template, prior, metadata) -> Optional[Reject]:
        declared = getattr(node, "public_rights", ())
        for v in declared:
            if v not in self.schema.valencies:
                return Reject(RejectKind.UNKNOWN_FIELD_TYPE, f"undeclared valency {v}", "public_rights")
        reject = _check_counts(template.public_rights, {v: 1 for v in declared}, "public_rights")
        if reject is not None:
            return reject
        if not isinstance(node, Extension):
            return None
        for valency, node_id in node.redeems.items():
            if valency not in self.schema.valencies:
                return Reject(RejectKind.UNKNOWN_FIELD_TYPE, f"undeclared valency {valency}", "redeems")
            if valency not in metadata.rights.get(node_id, ()):
                return Reject(RejectKind.ARITY_MISMATCH,
                              f"node {node_id} does not declare right {valency}", f"redeems.{valency}")
        return _check_counts(template.redeems, {v: 1 for v in node.redeems}, "redeems")


def _check_counts(bounds: Dict[str, Occurrence], counts: Dict[str, int], section: str) -> Optional[Reject]:
    for name in counts:
        if name not in bounds:
            return Reject(RejectKind.ARITY_MISMATCH, f"{name} not allowed here", f"{section}.{name}")
    for name, occ in bounds.items():
        n = counts.get(name, 0)
        if not occ.allows(n):
            return Reject(RejectKind.ARITY_MISMATCH, f"{n} occurrences, allowed {occ}", f"{section}.{name}")
    return None


def validate(
    schema: Schema,
    node: Node,
    prior_assignments: PriorAssignments,
    metadata: Optional[ContractMetadata] = None,
) -> Optional[Reject]:
    return SchemaEngine(schema).validate(node, prior_assignments, metadata)


# =============================================================================
# REGISTRY
# =============================================================================

class SchemaRegistry:
    """
    Content-addressed schema store.

    Stands in for the external schema registry: schemas are immutable blobs
    addressed by SchemaId.
    """

    def __init__(self):
        self._schemas: ThreadSafeDict[Schema] = ThreadSafeDict()

    def register(self, schema: Schema) -> str:
        schema_id = schema.schema_id
        if schema_id not in self._schemas:
            self._schemas[schema_id] = schema
            logger.info("Schema registered", schema_id=schema_id, name=schema.name)
        return schema_id

    def load(self, schema_id: str, blob: bytes) -> Schema:
        """Register a schema blob fetched for ``schema_id``."""
        try:
            schema = Schema.from_bytes(blob)
        except MalformedEncoding as e:
            raise UnknownSchema(schema_id, f"undecodable schema blob: {e.detail}")
        if schema.schema_id != schema_id:
            raise UnknownSchema(schema_id, f"blob hashes to {schema.schema_id}")
        self.register(schema)
        return schema

    def has(self, schema_id: str) -> bool:
        return schema_id in self._schemas

    def get(self, schema_id: str) -> Schema:
        schema = self._schemas.get(schema_id)
        if schema is None:
            raise UnknownSchema(schema_id)
        return schema

    def blob(self, schema_id: str) -> bytes:
        return self.get(schema_id).to_bytes()

    def ids(self) -> List[str]:
        return sorted(self._schemas)

