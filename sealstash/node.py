"""
State Graph Nodes

Contract history is a DAG of three node kinds:

    Genesis       creates a contract: schema, initial global and owned state,
                  public rights (valencies) that extensions may redeem later
    Transition    closes seals of prior owned assignments and defines new ones
    Extension     redeems public rights; closes no seals

Owned state is a list of assignments per owned type. Each assignment binds a
state to a single-use seal. Both halves can be concealed independently:

    seal     SealDefinition      -> ConcealedSeal (tagged hash)
    state    FungibleState       -> ConcealedFungible (Pedersen commitment)
             DataState           -> ConcealedData (salted tagged hash)
             DeclarativeState       (nothing to hide)

NodeId is computed over the commit form, where every seal and every state is
replaced by its concealed value. Concealment therefore never changes the
NodeId, and the genesis NodeId is the ContractId.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cached_property
from typing import Any, ClassVar, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from sealstash import pedersen, rangeproof
from sealstash.canonical import is_hex_32, tagged_digest, tagged_hash
from sealstash.hardening import CryptoUtils, MalformedEncoding, Validators
from sealstash.rangeproof import RangeProof
from sealstash.seal import ConcealedSeal, Seal, SealDefinition, seal_from_dict

NODE_TAG = "sealstash:node"
DATA_TAG = "sealstash:data"

MAX_STRING_LEN = 1 << 16


class NodeType(Enum):
    GENESIS = "genesis"
    TRANSITION = "transition"
    EXTENSION = "extension"


# =============================================================================
# OWNED STATE
# =============================================================================

@dataclass(frozen=True)
class DeclarativeState:
    """A right without a value."""
    type_name = "declarative"

    @property
    def is_revealed(self) -> bool:
        return True

    def commitment(self) -> Optional[str]:
        return None

    def conceal(self) -> "DeclarativeState":
        return self

    def commit_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name}

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name}


@dataclass(frozen=True)
class ConcealedFungible:
    """Pedersen commitment plus a proof that the hidden amount is a u64."""
    commitment_hex: str
    range_proof: RangeProof
    type_name = "fungible"

    @property
    def is_revealed(self) -> bool:
        return False

    def commitment(self) -> str:
        return self.commitment_hex

    def conceal(self) -> "ConcealedFungible":
        return self

    def verify_range(self) -> bool:
        return rangeproof.verify(self.commitment_hex, self.range_proof)

    def commit_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "commitment": self.commitment_hex}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type_name,
            "commitment": self.commitment_hex,
            "range_proof": self.range_proof.to_list(),
        }


@dataclass(frozen=True)
class FungibleState:
    """A u64 amount hidden behind a Pedersen commitment when concealed."""
    amount: int
    blinding: int
    type_name = "fungible"

    def __post_init__(self):
        Validators.validate_u64(self.amount, "fungible.amount").raise_if_invalid()
        if isinstance(self.blinding, bool) or not isinstance(self.blinding, int) \
                or not 0 <= self.blinding < pedersen.Q:
            raise MalformedEncoding("fungible.blinding out of range")

    @property
    def is_revealed(self) -> bool:
        return True

    def commitment(self) -> str:
        return pedersen.commit(self.amount, self.blinding)

    def conceal(self) -> ConcealedFungible:
        return ConcealedFungible(self.commitment(), rangeproof.prove(self.amount, self.blinding))

    def commit_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "commitment": self.commitment()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type_name,
            "amount": self.amount,
            "blinding": pedersen.blinding_to_hex(self.blinding),
        }


@dataclass(frozen=True)
class ConcealedData:
    commitment_hex: str
    type_name = "data"

    @property
    def is_revealed(self) -> bool:
        return False

    def commitment(self) -> str:
        return self.commitment_hex

    def conceal(self) -> "ConcealedData":
        return self

    def commit_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "commitment": self.commitment_hex}

    def to_dict(self) -> Dict[str, Any]:
        return self.commit_dict()


@dataclass(frozen=True)
class DataState:
    """Opaque string state behind a salted hash commitment."""
    value: str
    salt: str
    type_name = "data"

    def __post_init__(self):
        if not isinstance(self.value, str) or len(self.value) > MAX_STRING_LEN:
            raise MalformedEncoding("data.value must be a string")
        if not is_hex_32(self.salt):
            raise MalformedEncoding("data.salt must be 64 lowercase hex chars")

    @classmethod
    def new(cls, value: str) -> "DataState":
        return cls(value=value, salt=CryptoUtils.secure_random_hex(32))

    @property
    def is_revealed(self) -> bool:
        return True

    def commitment(self) -> str:
        return tagged_hash(DATA_TAG, bytes.fromhex(self.salt) + self.value.encode("utf-8"))

    def conceal(self) -> ConcealedData:
        return ConcealedData(self.commitment())

    def commit_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "commitment": self.commitment()}

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "value": self.value, "salt": self.salt}


State = Union[DeclarativeState, FungibleState, ConcealedFungible, DataState, ConcealedData]


def state_from_dict(data: Any) -> State:
    if not isinstance(data, dict) or "type" not in data:
        raise MalformedEncoding("state must be an object with a type")
    kind, keys = data["type"], set(data)
    if kind == "declarative" and keys == {"type"}:
        return DeclarativeState()
    if kind == "fungible":
        if keys == {"type", "commitment", "range_proof"}:
            if not pedersen.is_valid_commitment(data["commitment"]):
                raise MalformedEncoding("invalid fungible commitment")
            try:
                proof = RangeProof.from_list(data["range_proof"])
            except ValueError as e:
                raise MalformedEncoding(f"fungible.range_proof: {e}")
            return ConcealedFungible(data["commitment"], proof)
        if keys == {"type", "amount", "blinding"}:
            try:
                blinding = pedersen.blinding_from_hex(data["blinding"])
            except ValueError as e:
                raise MalformedEncoding(f"fungible.blinding: {e}")
            return FungibleState(amount=data["amount"], blinding=blinding)
    if kind == "data":
        if keys == {"type", "commitment"}:
            if not is_hex_32(data["commitment"]):
                raise MalformedEncoding("invalid data commitment")
            return ConcealedData(data["commitment"])
        if keys == {"type", "value", "salt"}:
            return DataState(value=data["value"], salt=data["salt"])
    raise MalformedEncoding(f"unrecognized state encoding for type {kind!r}")


# =============================================================================
# ASSIGNMENTS
# =============================================================================

@dataclass(frozen=True)
class Assignment:
    """An owned state bound to a single-use seal."""
    seal: Seal
    state: State

    def commit_dict(self) -> Dict[str, Any]:
        return {"seal": self.seal.conceal(), "state": self.state.commit_dict()}

    def to_dict(self) -> Dict[str, Any]:
        return {"seal": self.seal.to_dict(), "state": self.state.to_dict()}

    @classmethod
    def from_dict(cls, data: Any) -> "Assignment":
        if not isinstance(data, dict) or set(data) != {"seal", "state"}:
            raise MalformedEncoding("assignment must have exactly seal and state")
        return cls(seal=seal_from_dict(data["seal"]), state=state_from_dict(data["state"]))

    @property
    def is_revealed(self) -> bool:
        return self.seal.is_revealed and self.state.is_revealed

    def conceal_seal(self) -> "Assignment":
        if not self.seal.is_revealed:
            return self
        return replace(self, seal=ConcealedSeal(self.seal.conceal()))

    def conceal_state(self) -> "Assignment":
        return replace(self, state=self.state.conceal())

    def reveal_seal(self, seal: SealDefinition) -> "Assignment":
        if not CryptoUtils.secure_compare_str(seal.conceal(), self.seal.conceal()):
            raise ValueError("seal definition does not match the concealed seal")
        return replace(self, seal=seal)


@dataclass(frozen=True, order=True)
class AssignmentRef:
    """Reference to one output assignment of a prior node."""
    node_id: str
    owned_type: str
    index: int

    def __str__(self) -> str:
        return f"{self.node_id}/{self.owned_type}/{self.index}"

    def to_dict(self) -> Dict[str, Any]:
        return {"node_id": self.node_id, "owned_type": self.owned_type, "index": self.index}

    @classmethod
    def from_dict(cls, data: Any) -> "AssignmentRef":
        if not isinstance(data, dict) or set(data) != {"node_id", "owned_type", "index"}:
            raise MalformedEncoding("assignment ref must have node_id, owned_type, index")
        if not is_hex_32(data["node_id"]):
            raise MalformedEncoding("assignment ref node_id must be 64 lowercase hex chars")
        Validators.validate_name(data["owned_type"], "owned_type").raise_if_invalid()
        index = data["index"]
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < (1 << 16):
            raise MalformedEncoding("assignment ref index must be a u16")
        return cls(node_id=data["node_id"], owned_type=data["owned_type"], index=index)


OwnedState = Dict[str, Tuple[Assignment, ...]]
FieldValues = Dict[str, Tuple[Any, ...]]


def _values_from_dict(data: Any, what: str) -> FieldValues:
    if not isinstance(data, dict):
        raise MalformedEncoding(f"{what} must be an object")
    out: FieldValues = {}
    for name, values in data.items():
        Validators.validate_name(name, f"{what}.{name}").raise_if_invalid()
        if not isinstance(values, list):
            raise MalformedEncoding(f"{what}.{name} must be a list")
        for v in values:
            if isinstance(v, bool) or not isinstance(v, (int, str)):
                raise MalformedEncoding(f"{what}.{name} values must be integers or strings")
        out[name] = tuple(values)
    return out


def _owned_from_dict(data: Any) -> OwnedState:
    if not isinstance(data, dict):
        raise MalformedEncoding("owned_state must be an object")
    out: OwnedState = {}
    for name, items in data.items():
        Validators.validate_name(name, f"owned_state.{name}").raise_if_invalid()
        if not isinstance(items, list) or not items:
            raise MalformedEncoding(f"owned_state.{name} must be a non-empty list")
        out[name] = tuple(Assignment.from_dict(a) for a in items)
    return out


def _rights_from_list(data: Any) -> Tuple[str, ...]:
    if not isinstance(data, list):
        raise MalformedEncoding("public_rights must be a list")
    for v in data:
        Validators.validate_name(v, "public_rights").raise_if_invalid()
    if data != sorted(set(data)):
        raise MalformedEncoding("public_rights must be sorted and unique")
    return tuple(data)


def _expect_keys(data: Any, keys: Set[str], what: str) -> None:
    if not isinstance(data, dict) or set(data) != keys:
        got = sorted(data) if isinstance(data, dict) else type(data).__name__
        raise MalformedEncoding(f"{what} must have exactly {sorted(keys)}, got {got}")


# =============================================================================
# NODES
# =============================================================================

@dataclass(frozen=True)
class _NodeBase:
    """Fields and behavior shared by all node kinds."""

    def __post_init__(self):
        object.__setattr__(self, "metadata", {k: tuple(v) for k, v in self.metadata.items()})
        object.__setattr__(self, "global_state", {k: tuple(v) for k, v in self.global_state.items()})
        object.__setattr__(self, "owned_state", {k: tuple(v) for k, v in self.owned_state.items()})

    def _body(self, commit: bool) -> Dict[str, Any]:
        raise NotImplementedError

    def commit_dict(self) -> Dict[str, Any]:
        return self._body(commit=True)

    def to_dict(self) -> Dict[str, Any]:
        return self._body(commit=False)

    def _owned_dict(self, commit: bool) -> Dict[str, Any]:
        return {
            t: [a.commit_dict() if commit else a.to_dict() for a in items]
            for t, items in self.owned_state.items()
        }

    def _values_dict(self, values: FieldValues) -> Dict[str, Any]:
        return {k: list(v) for k, v in values.items()}

    @cached_property
    def node_id(self) -> str:
        return tagged_digest(NODE_TAG, self.commit_dict())

    @property
    def is_genesis(self) -> bool:
        return self.node_type is NodeType.GENESIS

    def parents(self) -> Set[str]:
        """Node ids this node depends on."""
        return set()

    def inputs_refs(self) -> Tuple[AssignmentRef, ...]:
        return ()

    def assignments(self) -> Iterator[Tuple[str, int, Assignment]]:
        for owned_type in sorted(self.owned_state):
            for index, a in enumerate(self.owned_state[owned_type]):
                yield owned_type, index, a

    def output(self, owned_type: str, index: int) -> Optional[Assignment]:
        items = self.owned_state.get(owned_type, ())
        if 0 <= index < len(items):
            return items[index]
        return None

    def output_refs(self) -> List[AssignmentRef]:
        return [AssignmentRef(self.node_id, t, i) for t, i, _a in self.assignments()]

    def _with_owned(self, owned: OwnedState):
        updated = replace(self, owned_state=owned)
        # the commit form is unchanged so the id can be carried over
        updated.__dict__["node_id"] = self.node_id
        return updated

    def _map_assignments(self, fn) -> OwnedState:
        return {
            t: tuple(fn(t, i, a) for i, a in enumerate(items))
            for t, items in self.owned_state.items()
        }

    def conceal(
        self,
        reveal_states: Iterable[Tuple[str, int]] = (),
        reveal_seals: Iterable[Tuple[str, int]] = (),
    ):
        """Return a copy with every state and seal concealed except those listed."""
        keep_states = set(reveal_states)
        keep_seals = set(reveal_seals)

        def fn(t: str, i: int, a: Assignment) -> Assignment:
            if (t, i) not in keep_states:
                a = a.conceal_state()
            if (t, i) not in keep_seals:
                a = a.conceal_seal()
            return a

        return self._with_owned(self._map_assignments(fn))

    def conceal_state(self, owned_type: str, index: int):
        return self._with_owned(self._map_assignments(
            lambda t, i, a: a.conceal_state() if (t, i) == (owned_type, index) else a))

    def conceal_seal(self, owned_type: str, index: int):
        return self._with_owned(self._map_assignments(
            lambda t, i, a: a.conceal_seal() if (t, i) == (owned_type, index) else a))

    def reveal_seal(self, owned_type: str, index: int, seal: SealDefinition):
        if self.output(owned_type, index) is None:
            raise KeyError(f"node {self.node_id} has no output {owned_type}/{index}")
        return self._with_owned(self._map_assignments(
            lambda t, i, a: a.reveal_seal(seal) if (t, i) == (owned_type, index) else a))

    def merge_reveal(self, other: "Node"):
        """
        Combine two copies of the same node, keeping every seal and state
        either copy reveals. Returns ``self`` when ``other`` adds nothing.
        """
        if type(other) is not type(self) or other.node_id != self.node_id:
            raise ValueError(f"cannot merge node {other.node_id} into {self.node_id}")
        changed = False

        def fn(t: str, i: int, a: Assignment) -> Assignment:
            nonlocal changed
            b = other.output(t, i)
            if b is None or b.commit_dict() != a.commit_dict():
                raise ValueError(f"copies of node {self.node_id} disagree on output {t}/{i}")
            seal, state = a.seal, a.state
            if not seal.is_revealed and b.seal.is_revealed:
                seal, changed = b.seal, True
            if not state.is_revealed and b.state.is_revealed:
                state, changed = b.state, True
            return Assignment(seal, state)

        owned = self._map_assignments(fn)
        return self._with_owned(owned) if changed else self

    def find_seal(self, concealed: str) -> Optional[Tuple[str, int]]:
        """Locate the output whose seal conceals to ``concealed``."""
        for t, i, a in self.assignments():
            if CryptoUtils.secure_compare_str(a.seal.conceal(), concealed):
                return t, i
        return None


@dataclass(frozen=True)
class Genesis(_NodeBase):
    schema_id: str = ""
    chain: str = "regtest"
    metadata: FieldValues = field(default_factory=dict)
    global_state: FieldValues = field(default_factory=dict)
    owned_state: OwnedState = field(default_factory=dict)
    public_rights: Tuple[str, ...] = ()
    node_type: ClassVar[NodeType] = NodeType.GENESIS

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "public_rights", tuple(sorted(set(self.public_rights))))

    @property
    def contract_id(self) -> str:
        return self.node_id

    @property
    def kind(self) -> str:
        return "genesis"

    def _body(self, commit: bool) -> Dict[str, Any]:
        return {
            "type": NodeType.GENESIS.value,
            "schema_id": self.schema_id,
            "chain": self.chain,
            "metadata": self._values_dict(self.metadata),
            "global_state": self._values_dict(self.global_state),
            "owned_state": self._owned_dict(commit),
            "public_rights": list(self.public_rights),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Genesis":
        _expect_keys(data, {"type", "schema_id", "chain", "metadata", "global_state",
                            "owned_state", "public_rights"}, "genesis")
        if not is_hex_32(data["schema_id"]):
            raise MalformedEncoding("genesis.schema_id must be 64 lowercase hex chars")
        Validators.validate_name(data["chain"], "genesis.chain").raise_if_invalid()
        return cls(
            schema_id=data["schema_id"],
            chain=data["chain"],
            metadata=_values_from_dict(data["metadata"], "metadata"),
            global_state=_values_from_dict(data["global_state"], "global_state"),
            owned_state=_owned_from_dict(data["owned_state"]),
            public_rights=_rights_from_list(data["public_rights"]),
        )


@dataclass(frozen=True)
class Transition(_NodeBase):
    kind: str = ""
    contract_id: str = ""
    inputs: Tuple[AssignmentRef, ...] = ()
    metadata: FieldValues = field(default_factory=dict)
    global_state: FieldValues = field(default_factory=dict)
    owned_state: OwnedState = field(default_factory=dict)
    node_type: ClassVar[NodeType] = NodeType.TRANSITION

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "inputs", tuple(self.inputs))
        if len(set(self.inputs)) != len(self.inputs):
            raise MalformedEncoding("transition inputs must be unique")

    def parents(self) -> Set[str]:
        return {ref.node_id for ref in self.inputs}

    def inputs_refs(self) -> Tuple[AssignmentRef, ...]:
        return self.inputs

    def _body(self, commit: bool) -> Dict[str, Any]:
        return {
            "type": NodeType.TRANSITION.value,
            "kind": self.kind,
            "contract_id": self.contract_id,
            "inputs": [ref.to_dict() for ref in self.inputs],
            "metadata": self._values_dict(self.metadata),
            "global_state": self._values_dict(self.global_state),
            "owned_state": self._owned_dict(commit),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Transition":
        _expect_keys(data, {"type", "kind", "contract_id", "inputs", "metadata",
                            "global_state", "owned_state"}, "transition")
        Validators.validate_name(data["kind"], "transition.kind").raise_if_invalid()
        if not is_hex_32(data["contract_id"]):
            raise MalformedEncoding("transition.contract_id must be 64 lowercase hex chars")
        if not isinstance(data["inputs"], list) or not data["inputs"]:
            raise MalformedEncoding("transition.inputs must be a non-empty list")
        return cls(
            kind=data["kind"],
            contract_id=data["contract_id"],
            inputs=tuple(AssignmentRef.from_dict(r) for r in data["inputs"]),
            metadata=_values_from_dict(data["metadata"], "metadata"),
            global_state=_values_from_dict(data["global_state"], "global_state"),
            owned_state=_owned_from_dict(data["owned_state"]),
        )


@dataclass(frozen=True)
class Extension(_NodeBase):
    kind: str = ""
    contract_id: str = ""
    redeems: Dict[str, str] = field(default_factory=dict)
    metadata: FieldValues = field(default_factory=dict)
    global_state: FieldValues = field(default_factory=dict)
    owned_state: OwnedState = field(default_factory=dict)
    public_rights: Tuple[str, ...] = ()
    node_type: ClassVar[NodeType] = NodeType.EXTENSION

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "redeems", dict(self.redeems))
        object.__setattr__(self, "public_rights", tuple(sorted(set(self.public_rights))))

    def parents(self) -> Set[str]:
        return set(self.redeems.values())

    def _body(self, commit: bool) -> Dict[str, Any]:
        return {
            "type": NodeType.EXTENSION.value,
            "kind": self.kind,
            "contract_id": self.contract_id,
            "redeems": dict(self.redeems),
            "metadata": self._values_dict(self.metadata),
            "global_state": self._values_dict(self.global_state),
            "owned_state": self._owned_dict(commit),
            "public_rights": list(self.public_rights),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Extension":
        _expect_keys(data, {"type", "kind", "contract_id", "redeems", "metadata",
                            "global_state", "owned_state", "public_rights"}, "extension")
        Validators.validate_name(data["kind"], "extension.kind").raise_if_invalid()
        if not is_hex_32(data["contract_id"]):
            raise MalformedEncoding("extension.contract_id must be 64 lowercase hex chars")
        redeems = data["redeems"]
        if not isinstance(redeems, dict) or not redeems:
            raise MalformedEncoding("extension.redeems must be a non-empty object")
        for valency, node_id in redeems.items():
            Validators.validate_name(valency, "extension.redeems").raise_if_invalid()
            if not is_hex_32(node_id):
                raise MalformedEncoding("extension.redeems values must be node ids")
        return cls(
            kind=data["kind"],
            contract_id=data["contract_id"],
            redeems=dict(redeems),
            metadata=_values_from_dict(data["metadata"], "metadata"),
            global_state=_values_from_dict(data["global_state"], "global_state"),
            owned_state=_owned_from_dict(data["owned_state"]),
            public_rights=_rights_from_list(data["public_rights"]),
        )


Node = Union[Genesis, Transition, Extension]

_NODE_CLASSES = {
    NodeType.GENESIS.value: Genesis,
    NodeType.TRANSITION.value: Transition,
    NodeType.EXTENSION.value: Extension,
}


def node_from_dict(data: Any) -> Node:
    """Decode any node kind by its ``type`` tag."""
    if not isinstance(data, dict):
        raise MalformedEncoding("node must be an object")
    cls = _NODE_CLASSES.get(data.get("type"))
    if cls is None:
        raise MalformedEncoding(f"unknown node type {data.get('type')!r}")
    return cls.from_dict(data)


def node_to_bytes(node: Node) -> bytes:
    from sealstash.encoding import encode_document
    return encode_document(node.to_dict())


def node_from_bytes(data: bytes) -> Node:
    """Strictly decode a canonical node encoding."""
    from sealstash.encoding import decode_document
    return node_from_dict(decode_document(data, "node"))
