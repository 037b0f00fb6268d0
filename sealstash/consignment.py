"""
Consignments

A consignment is a transferable, independently verifiable slice of contract
history:

    {version, schema_id, schema, genesis,
     bundles:   [{anchor, nodes}],        nodes revealed from one anchored bundle
     endpoints: [{node_id, owned_type, index}]}

Validation state machine:

    Received → Decomposing → ContextChecked → SchemaChecked → SealChecked → Admitted
        └───────────┴──────────────┴───────────────┴──────────────┴──────→ Rejected

    Decomposing      strict decode, size limit, bundle structure, topological order
    ContextChecked   schema identity, ledger transactions, anchors
    SchemaChecked    state graph replay: ancestors, seals, schema predicates
    SealChecked      witness transactions spend every closed seal; endpoints
    Admitted         every node appended to the stash in one atomic batch

Any failure rejects the whole consignment and leaves the stash unchanged.
From ContextChecked onwards the contract's exclusive stash section is held,
so checking and admitting are atomic with respect to other admissions for
the same contract.

The builder does the reverse: it selects the ancestor closure of a target
node, conceals every state and seal not needed to verify the disclosed path,
and leaves the other members of each anchored bundle as bare node ids.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from sealstash.canonical import tagged_hash
from sealstash.commitment import Anchor
from sealstash.config import get_config
from sealstash.encoding import decode_document, encode_document
from sealstash.graph import StateGraph, topological_order
from sealstash.hardening import (
    AnchorInvalid,
    ConsignmentError,
    InvariantChecker,
    MalformedEncoding,
    SealNotSpent,
    UnknownAncestor,
    UnknownSchema,
)
from sealstash.ledger import Transaction, TransactionProvider
from sealstash.node import AssignmentRef, Genesis, Node, node_from_dict
from sealstash.observability import Layer, get_logger, get_tracer
from sealstash.schema import Schema, SchemaRegistry
from sealstash.seal import SealDefinition
from sealstash.stash import Stash

logger = get_logger("consignment", Layer.CONSIGNMENT)

CONSIGNMENT_TAG = "sealstash:consignment"
CONSIGNMENT_VERSION = 1


# =============================================================================
# MODEL
# =============================================================================

@dataclass(frozen=True)
class ConsignmentBundle:
    """Revealed members of one anchored bundle."""
    anchor: Anchor
    nodes: Tuple[Node, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"anchor": self.anchor.to_dict(), "nodes": [n.to_dict() for n in self.nodes]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsignmentBundle":
        nodes = tuple(node_from_dict(n) for n in data["nodes"])
        ids = [n.node_id for n in nodes]
        if len(ids) != len(set(ids)):
            raise MalformedEncoding("bundle nodes must be unique")
        return cls(anchor=Anchor.from_dict(data["anchor"]), nodes=nodes)


@dataclass(frozen=True)
class Consignment:
    schema_id: str
    schema: Schema
    genesis: Genesis
    bundles: Tuple[ConsignmentBundle, ...] = ()
    endpoints: Tuple[AssignmentRef, ...] = ()
    version: int = CONSIGNMENT_VERSION

    @property
    def contract_id(self) -> str:
        return self.genesis.node_id

    @cached_property
    def consignment_id(self) -> str:
        return tagged_hash(CONSIGNMENT_TAG, self.to_bytes())

    def nodes(self) -> List[Node]:
        out: List[Node] = [self.genesis]
        for b in self.bundles:
            out.extend(b.nodes)
        return out

    def node_count(self) -> int:
        return 1 + sum(len(b.nodes) for b in self.bundles)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "schema_id": self.schema_id,
            "schema": self.schema.to_dict(),
            "genesis": self.genesis.to_dict(),
            "bundles": [b.to_dict() for b in self.bundles],
            "endpoints": [e.to_dict() for e in self.endpoints],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Consignment":
        if data.get("version") != CONSIGNMENT_VERSION:
            raise MalformedEncoding(f"unsupported consignment version {data.get('version')!r}")
        genesis = node_from_dict(data["genesis"])
        if not isinstance(genesis, Genesis):
            raise MalformedEncoding("consignment genesis must be a genesis node")
        endpoints = tuple(AssignmentRef.from_dict(e) for e in data["endpoints"])
        if list(endpoints) != sorted(set(endpoints)):
            raise MalformedEncoding("endpoints must be sorted and unique")
        return cls(
            schema_id=data["schema_id"],
            schema=Schema.from_dict(data["schema"]),
            genesis=genesis,
            bundles=tuple(ConsignmentBundle.from_dict(b) for b in data["bundles"]),
            endpoints=endpoints,
            version=data["version"],
        )

    def to_bytes(self) -> bytes:
        return encode_document(self.to_dict())

    @classmethod
    def from_bytes(cls, data: bytes) -> "Consignment":
        obj = decode_document(data, "consignment")
        limit = get_config().validation.max_consignment_nodes.get()
        count = 1 + sum(len(b["nodes"]) for b in obj["bundles"])
        if count > limit:
            raise MalformedEncoding(f"consignment reveals {count} nodes, limit is {limit}")
        return cls.from_dict(obj)


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationStatus(Enum):
    RECEIVED = "received"
    DECOMPOSING = "decomposing"
    CONTEXT_CHECKED = "context_checked"
    SCHEMA_CHECKED = "schema_checked"
    SEAL_CHECKED = "seal_checked"
    ADMITTED = "admitted"
    REJECTED = "rejected"


VALID_TRANSITIONS: Dict[ValidationStatus, Set[ValidationStatus]] = {
    ValidationStatus.RECEIVED: {ValidationStatus.DECOMPOSING, ValidationStatus.REJECTED},
    ValidationStatus.DECOMPOSING: {ValidationStatus.CONTEXT_CHECKED, ValidationStatus.REJECTED},
    ValidationStatus.CONTEXT_CHECKED: {ValidationStatus.SCHEMA_CHECKED, ValidationStatus.REJECTED},
    ValidationStatus.SCHEMA_CHECKED: {ValidationStatus.SEAL_CHECKED, ValidationStatus.REJECTED},
    ValidationStatus.SEAL_CHECKED: {ValidationStatus.ADMITTED, ValidationStatus.REJECTED},
    ValidationStatus.ADMITTED: set(),
    ValidationStatus.REJECTED: set(),
}


@dataclass
class ValidationReport:
    """Outcome of validating one consignment."""
    status: ValidationStatus = ValidationStatus.RECEIVED
    history: List[ValidationStatus] = field(default_factory=lambda: [ValidationStatus.RECEIVED])
    consignment_id: Optional[str] = None
    contract_id: Optional[str] = None
    admitted: int = 0
    error: Optional[ConsignmentError] = None

    @property
    def accepted(self) -> bool:
        return self.status is ValidationStatus.ADMITTED

    def advance(self, target: ValidationStatus) -> None:
        InvariantChecker.check_state_transition(self.status, target, VALID_TRANSITIONS)
        self.status = target
        self.history.append(target)

    def raise_if_rejected(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "history": [s.value for s in self.history],
            "consignment_id": self.consignment_id,
            "contract_id": self.contract_id,
            "admitted": self.admitted,
            "error": None if self.error is None else {"code": self.error.code, "message": str(self.error)},
        }


@dataclass
class _Decomposed:
    consignment: Consignment
    ordered: List[Node]
    anchors: Dict[str, Anchor]


class ConsignmentValidator:
    """
    Validates incoming consignments and admits them into a stash.

    The stash, the schema registry and the ledger-access collaborator are
    passed in explicitly.
    """

    def __init__(self, stash: Stash, schemas: SchemaRegistry, ledger: TransactionProvider):
        self.stash = stash
        self.schemas = schemas
        self.ledger = ledger

    def validate(
        self,
        consignment: Union[Consignment, bytes],
        reveal: Iterable[SealDefinition] = (),
    ) -> ValidationReport:
        """Run the full pipeline; never raises for untrusted-input failures."""
        report = ValidationReport()
        started = time.perf_counter()
        with get_tracer().span("consignment.validate", Layer.CONSIGNMENT) as span:
            try:
                self._run(consignment, list(reveal), report)
            except ConsignmentError as e:
                report.error = e
                report.advance(ValidationStatus.REJECTED)
                span.set_status("error", e.code)
                logger.warning(
                    "Consignment rejected",
                    error_code=e.code,
                    consignment_id=report.consignment_id,
                    contract_id=report.contract_id,
                    node_id=e.node_id,
                    reason=str(e),
                )
            span.set_attribute("status", report.status.value)
            span.set_attribute("admitted", report.admitted)
        logger.operation(
            "consignment.validate",
            duration_ms=(time.perf_counter() - started) * 1000,
            success=report.accepted,
            consignment_id=report.consignment_id,
        )
        return report

    def accept(
        self,
        consignment: Union[Consignment, bytes],
        reveal: Iterable[SealDefinition] = (),
    ) -> ValidationReport:
        """Like ``validate`` but raises the rejection reason."""
        report = self.validate(consignment, reveal)
        report.raise_if_rejected()
        return report

    # -- pipeline ----------------------------------------------------------------

    def _run(self, raw: Union[Consignment, bytes], reveal: List[SealDefinition], report: ValidationReport) -> None:
        report.advance(ValidationStatus.DECOMPOSING)
        d = self._decompose(raw)
        c = d.consignment
        report.consignment_id = c.consignment_id
        report.contract_id = c.contract_id

        with self.stash.exclusive(c.contract_id):
            schema = self._check_schema(c)
            transactions = self._check_anchors(c, d)
            report.advance(ValidationStatus.CONTEXT_CHECKED)

            graph = StateGraph(c.contract_id, schema, base=self.stash)
            for node in d.ordered:
                graph.add_node(node, d.anchors.get(node.node_id))
            report.advance(ValidationStatus.SCHEMA_CHECKED)

            self._check_spends(graph, transactions)
            self._check_endpoints(c, graph)
            report.advance(ValidationStatus.SEAL_CHECKED)

            if not self.schemas.has(schema.schema_id):
                self.schemas.register(schema)
            nodes = self._apply_reveal(graph.revealed_nodes() + graph.local_nodes(), c.endpoints, reveal)
            report.admitted = self.stash.admit_all(
                c.contract_id, [(n, d.anchors.get(n.node_id)) for n in nodes],
            )
            report.advance(ValidationStatus.ADMITTED)
        logger.info("Consignment admitted", consignment_id=c.consignment_id,
                    contract_id=c.contract_id, admitted=report.admitted)

    def _decompose(self, raw: Union[Consignment, bytes]) -> _Decomposed:
        c = Consignment.from_bytes(raw) if isinstance(raw, (bytes, bytearray)) else raw
        limit = get_config().validation.max_consignment_nodes.get()
        if c.node_count() > limit:
            raise MalformedEncoding(f"consignment reveals {c.node_count()} nodes, limit is {limit}")

        ordered = topological_order(c.nodes(), known=self._known_parents(c))

        anchors: Dict[str, Anchor] = {}
        for bundle in c.bundles:
            for node in bundle.nodes:
                if isinstance(node, Genesis):
                    raise MalformedEncoding("genesis cannot be part of an anchored bundle")
                if node.node_id in anchors:
                    raise MalformedEncoding(f"node {node.node_id} appears in more than one bundle")
                if node.node_id not in bundle.anchor.node_ids:
                    raise AnchorInvalid(node.node_id, "node is not a member of the anchored bundle")
                anchors[node.node_id] = bundle.anchor
        return _Decomposed(consignment=c, ordered=ordered, anchors=anchors)

    def _known_parents(self, c: Consignment) -> Set[str]:
        """Parents referenced by the consignment that the stash already holds."""
        in_batch = {n.node_id for n in c.nodes()}
        referenced: Set[str] = set()
        for n in c.nodes():
            referenced |= n.parents()
        return {p for p in referenced - in_batch if self.stash.has(p)}

    def _check_schema(self, c: Consignment) -> Schema:
        schema_id = c.schema.schema_id
        if schema_id != c.schema_id:
            raise UnknownSchema(c.schema_id, f"embedded schema hashes to {schema_id}")
        if c.genesis.schema_id != schema_id:
            raise UnknownSchema(c.genesis.schema_id, "genesis commits to a different schema")
        known = self.stash.schema_id_for(c.contract_id)
        if known is not None and known != schema_id:
            raise UnknownSchema(schema_id, f"contract {c.contract_id} is bound to schema {known}")
        if self.schemas.has(schema_id):
            return self.schemas.get(schema_id)
        return c.schema

    def _check_anchors(self, c: Consignment, d: _Decomposed) -> Dict[str, Transaction]:
        transactions: Dict[str, Transaction] = {}
        for node in d.ordered:
            anchor = d.anchors.get(node.node_id)
            if anchor is None:
                continue
            tx = transactions.get(anchor.txid)
            if tx is None:
                tx = self.ledger.get_transaction(anchor.txid)
                transactions[anchor.txid] = tx
            anchor.check(c.contract_id, node.node_id, tx)
        return transactions

    def _check_spends(self, graph: StateGraph, transactions: Dict[str, Transaction]) -> None:
        if not get_config().validation.require_seal_spend.get():
            return
        for node in graph.local_nodes():
            closes = graph.closed_seals(node)
            if not closes:
                continue
            anchor = graph.anchor(node.node_id)
            tx = transactions.get(anchor.txid) or self.ledger.get_transaction(anchor.txid)
            for outpoint in closes.values():
                if not tx.spends(outpoint):
                    raise SealNotSpent(node.node_id, outpoint)

    def _check_endpoints(self, c: Consignment, graph: StateGraph) -> None:
        revealed = {n.node_id: n for n in c.nodes()}
        open_refs = graph.frontier()
        for ref in c.endpoints:
            node = revealed.get(ref.node_id)
            if node is None:
                raise UnknownAncestor(ref.node_id, detail="endpoint references a node outside the consignment")
            if node.output(ref.owned_type, ref.index) is None:
                raise MalformedEncoding(f"endpoint {ref} references a missing output")
            if ref not in open_refs:
                raise MalformedEncoding(f"endpoint {ref} is already spent")

    def _apply_reveal(
        self,
        nodes: Sequence[Node],
        endpoints: Sequence[AssignmentRef],
        reveal: Sequence[SealDefinition],
    ) -> List[Node]:
        if not reveal:
            return list(nodes)
        by_hash = {s.conceal(): s for s in reveal}
        wanted = set(endpoints)
        out: List[Node] = []
        for node in nodes:
            for owned_type, index, assignment in list(node.assignments()):
                if AssignmentRef(node.node_id, owned_type, index) not in wanted:
                    continue
                seal = by_hash.get(assignment.seal.conceal())
                if seal is not None and not assignment.seal.is_revealed:
                    node = node.reveal_seal(owned_type, index, seal)
            out.append(node)
        return out


# =============================================================================
# BUILDING
# =============================================================================

class ConsignmentBuilder:
    """Builds minimal consignments from a stash."""

    def __init__(self, stash: Stash, schemas: SchemaRegistry):
        self.stash = stash
        self.schemas = schemas

    def build(
        self,
        contract_id: str,
        target_node_id: str,
        endpoints: Optional[Iterable[AssignmentRef]] = None,
        conceal: bool = True,
    ) -> Consignment:
        """
        Consignment proving ``target_node_id``.

        ``endpoints`` default to every output of the target. With
        ``conceal=False`` the whole contract history is emitted unblinded.
        """
        with get_tracer().span("consignment.build", Layer.CONSIGNMENT,
                               contract_id=contract_id, target=target_node_id, conceal=conceal):
            target = self.stash.get(target_node_id)
            if target is None or self.stash.contract_of(target_node_id) != contract_id:
                raise UnknownAncestor(target_node_id, detail=f"not part of contract {contract_id}")
            schema_id = self.stash.schema_id_for(contract_id)
            schema = self.schemas.get(schema_id)

            endpoint_refs = tuple(sorted(set(endpoints) if endpoints is not None else target.output_refs()))
            for ref in endpoint_refs:
                owner = self.stash.get(ref.node_id)
                if owner is None or owner.output(ref.owned_type, ref.index) is None:
                    raise UnknownAncestor(ref.node_id, detail=f"endpoint {ref} does not exist")

            history = self.stash.contract_nodes(contract_id)
            if conceal:
                included = self._ancestor_closure(target_node_id, endpoint_refs)
                history = [n for n in history if n.node_id in included]
                history = self._blind(history, endpoint_refs)

            genesis = history[0]
            if not isinstance(genesis, Genesis):
                raise UnknownAncestor(contract_id, detail="stash history does not start at genesis")
            consignment = Consignment(
                schema_id=schema_id,
                schema=schema,
                genesis=genesis,
                bundles=self._bundles(history[1:]),
                endpoints=endpoint_refs,
            )
        logger.info("Consignment built", contract_id=contract_id, target=target_node_id,
                    nodes=consignment.node_count(), concealed=conceal)
        return consignment

    def _ancestor_closure(self, target_node_id: str, endpoints: Sequence[AssignmentRef]) -> Set[str]:
        stack = [target_node_id] + [e.node_id for e in endpoints]
        seen: Set[str] = set()
        while stack:
            node_id = stack.pop()
            if node_id in seen:
                continue
            seen.add(node_id)
            node = self.stash.get(node_id)
            if node is None:
                raise UnknownAncestor(node_id)
            stack.extend(node.parents())
            if not node.is_genesis:
                stack.append(node.contract_id)
        return seen

    def _blind(self, history: List[Node], endpoints: Sequence[AssignmentRef]) -> List[Node]:
        spent_on_path: Set[AssignmentRef] = set()
        for n in history:
            spent_on_path.update(n.inputs_refs())
        endpoint_set = set(endpoints)
        blinded: List[Node] = []
        for n in history:
            keep_states = [(r.owned_type, r.index) for r in endpoint_set if r.node_id == n.node_id]
            keep_seals = keep_states + [
                (r.owned_type, r.index) for r in spent_on_path if r.node_id == n.node_id
            ]
            blinded.append(n.conceal(reveal_states=keep_states, reveal_seals=keep_seals))
        return blinded

    def _bundles(self, nodes: Sequence[Node]) -> Tuple[ConsignmentBundle, ...]:
        grouped: Dict[str, List[Node]] = {}
        anchors: Dict[str, Anchor] = {}
        order: List[str] = []
        for n in nodes:
            anchor = self.stash.anchor_for(n.node_id)
            if anchor is None:
                raise AnchorInvalid(n.node_id, "stash holds no anchor for this node")
            if anchor.txid not in grouped:
                grouped[anchor.txid] = []
                anchors[anchor.txid] = anchor
                order.append(anchor.txid)
            grouped[anchor.txid].append(n)
        return tuple(
            ConsignmentBundle(
                anchor=anchors[txid],
                nodes=tuple(sorted(grouped[txid], key=lambda n: n.node_id)),
            )
            for txid in order
        )
