"""
State Graph

The DAG of one contract, kept as an arena of nodes keyed by NodeId with
edges expressed as id references. A graph is layered over a read-through
base (normally the stash): nodes added here live in the local layer until the
caller commits them, while lookups fall through to the base.

``add_node`` applies, in order:

    1. contract membership
    2. anchor presence (every non-genesis node)
    3. ancestor resolution           -> UnknownAncestor
    4. cycle check                   -> GraphCycle
    5. seal resolution               -> SealUnresolvable
    6. single-use check              -> SealAlreadyClosed
    7. schema validation             -> SchemaViolation

and returns the new frontier: the assignment refs that are not yet spent.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple

from sealstash.commitment import Anchor
from sealstash.hardening import AnchorInvalid, GraphCycle, SchemaViolation, SealAlreadyClosed, UnknownAncestor
from sealstash.node import Assignment, AssignmentRef, Extension, Genesis, Node
from sealstash.observability import Layer, get_logger
from sealstash.schema import ContractMetadata, Schema, SchemaEngine
from sealstash.seal import Outpoint, SealContext, resolve_seal

logger = get_logger("graph", Layer.GRAPH)


class GraphBase(Protocol):
    """Read-only view the graph falls through to."""

    def get(self, node_id: str) -> Optional[Node]: ...

    def anchor_for(self, node_id: str) -> Optional[Anchor]: ...

    def closing_node(self, contract_id: str, outpoint: Outpoint) -> Optional[str]: ...

    def frontier(self, contract_id: str) -> Set[AssignmentRef]: ...


class StateGraph:
    """Working DAG for one contract over a read-through base."""

    def __init__(self, contract_id: str, schema: Schema, base: Optional[GraphBase] = None):
        self.contract_id = contract_id
        self.schema = schema
        self.base = base
        self.engine = SchemaEngine(schema)
        self._nodes: Dict[str, Node] = {}
        self._anchors: Dict[str, Anchor] = {}
        self._closures: Dict[Outpoint, str] = {}
        self._spent: Dict[AssignmentRef, str] = {}
        self._order: List[str] = []
        self._revealed: List[str] = []

    # -- lookups -------------------------------------------------------------

    def node(self, node_id: str) -> Optional[Node]:
        found = self._nodes.get(node_id)
        if found is None and self.base is not None:
            found = self.base.get(node_id)
        return found

    def has(self, node_id: str) -> bool:
        return self.node(node_id) is not None

    def anchor(self, node_id: str) -> Optional[Anchor]:
        found = self._anchors.get(node_id)
        if found is None and self.base is not None:
            found = self.base.anchor_for(node_id)
        return found

    def witness_txid(self, node_id: str) -> Optional[str]:
        a = self.anchor(node_id)
        return a.txid if a is not None else None

    def closing_node(self, outpoint: Outpoint) -> Optional[str]:
        closer = self._closures.get(outpoint)
        if closer is None and self.base is not None:
            closer = self.base.closing_node(self.contract_id, outpoint)
        return closer

    def genesis(self) -> Optional[Genesis]:
        g = self.node(self.contract_id)
        return g if isinstance(g, Genesis) else None

    def local_nodes(self) -> List[Node]:
        """Nodes added to this graph, in insertion (topological) order."""
        return [self._nodes[n] for n in self._order]

    def revealed_nodes(self) -> List[Node]:
        """Known base nodes for which this graph holds a more revealed copy."""
        return [self._nodes[n] for n in self._revealed]

    def frontier(self) -> Set[AssignmentRef]:
        open_refs: Set[AssignmentRef] = set()
        if self.base is not None:
            open_refs |= self.base.frontier(self.contract_id)
        for node_id in self._order:
            open_refs.update(self._nodes[node_id].output_refs())
        return open_refs - set(self._spent)

    # -- resolution helpers --------------------------------------------------

    def prior_assignments(self, node: Node) -> Dict[AssignmentRef, Assignment]:
        prior: Dict[AssignmentRef, Assignment] = {}
        for ref in node.inputs_refs():
            parent = self.node(ref.node_id)
            if parent is None:
                raise UnknownAncestor(ref.node_id, referenced_by=node.node_id)
            assignment = parent.output(ref.owned_type, ref.index)
            if assignment is None:
                raise UnknownAncestor(
                    ref.node_id,
                    referenced_by=node.node_id,
                    detail=f"no output {ref.owned_type}/{ref.index}",
                )
            prior[ref] = assignment
        return prior

    def contract_metadata(self, node: Node) -> ContractMetadata:
        rights: Dict[str, Tuple[str, ...]] = {}
        if isinstance(node, Extension):
            for node_id in node.redeems.values():
                parent = self.node(node_id)
                rights[node_id] = tuple(getattr(parent, "public_rights", ()))
        return ContractMetadata(genesis=self.genesis(), rights=rights)

    def resolve_input(self, ref: AssignmentRef, assignment: Assignment) -> Outpoint:
        context = SealContext(defining_node_id=ref.node_id, witness_txid=self.witness_txid(ref.node_id))
        return resolve_seal(assignment.seal, context)

    def closed_seals(self, node: Node) -> Dict[AssignmentRef, Outpoint]:
        """Resolve every seal ``node`` closes."""
        return {
            ref: self.resolve_input(ref, a)
            for ref, a in self.prior_assignments(node).items()
        }

    # -- mutation ------------------------------------------------------------

    def add_node(self, node: Node, anchor: Optional[Anchor] = None) -> Set[AssignmentRef]:
        """Add a node to the local layer and return the new frontier."""
        node_id = node.node_id
        known = self.node(node_id)
        if known is not None:
            merged = known.merge_reveal(node)
            if merged is not known:
                if node_id not in self._nodes and node_id not in self._revealed:
                    self._revealed.append(node_id)
                self._nodes[node_id] = merged
                logger.debug("Node copy merged", node_id=node_id, contract_id=self.contract_id)
            return self.frontier()

        if isinstance(node, Genesis):
            if node_id != self.contract_id:
                raise UnknownAncestor(self.contract_id, referenced_by=node_id,
                                      detail="genesis does not define this contract")
        else:
            if node.contract_id != self.contract_id:
                raise UnknownAncestor(node.contract_id, referenced_by=node_id,
                                      detail=f"node belongs to contract {node.contract_id}")
            if self.genesis() is None:
                raise UnknownAncestor(self.contract_id, referenced_by=node_id, detail="genesis unknown")
            if anchor is None:
                raise AnchorInvalid(node_id, "non-genesis node without anchor")
            if node_id not in anchor.node_ids:
                raise AnchorInvalid(node_id, "node is not a member of the anchored bundle")

        for parent_id in sorted(node.parents()):
            if not self.has(parent_id):
                raise UnknownAncestor(parent_id, referenced_by=node_id)
        self._check_acyclic(node)

        closes = self.closed_seals(node)
        seen: Dict[Outpoint, AssignmentRef] = {}
        for ref, outpoint in closes.items():
            if outpoint in seen:
                raise SealAlreadyClosed(outpoint, closed_by=node_id, attempted_by=node_id)
            seen[outpoint] = ref
            closer = self.closing_node(outpoint)
            if closer is not None and closer != node_id:
                raise SealAlreadyClosed(outpoint, closed_by=closer, attempted_by=node_id)

        reject = self.engine.validate(node, self.prior_assignments(node), self.contract_metadata(node))
        if reject is not None:
            raise SchemaViolation(reject, node_id)

        self._nodes[node_id] = node
        self._order.append(node_id)
        if anchor is not None:
            self._anchors[node_id] = anchor
        for ref, outpoint in closes.items():
            self._closures[outpoint] = node_id
            self._spent[ref] = node_id
        logger.debug("Node added", node_id=node_id, contract_id=self.contract_id,
                     node_type=node.node_type.value, closes=len(closes))
        return self.frontier()

    def _check_acyclic(self, node: Node) -> None:
        """Walk the local layer from ``node``'s parents; reaching ``node`` is a cycle."""
        target = node.node_id
        stack = list(node.parents())
        visited: Set[str] = set()
        while stack:
            current = stack.pop()
            if current == target:
                raise GraphCycle(target)
            if current in visited:
                continue
            visited.add(current)
            local = self._nodes.get(current)
            if local is not None:
                stack.extend(local.parents())


def topological_order(nodes: Iterable[Node], known: Iterable[str] = ()) -> List[Node]:
    """
    Order a batch ancestors-first.

    Parents must be in the batch or in ``known``. Siblings are ordered by
    NodeId so the result is deterministic.
    """
    batch: Dict[str, Node] = {}
    for n in nodes:
        batch.setdefault(n.node_id, n)
    known_ids = set(known)

    pending: Dict[str, int] = {}
    children: Dict[str, List[str]] = {node_id: [] for node_id in batch}
    for node_id, n in batch.items():
        count = 0
        for parent in n.parents():
            if parent in batch:
                children[parent].append(node_id)
                count += 1
            elif parent not in known_ids:
                raise UnknownAncestor(parent, referenced_by=node_id)
        pending[node_id] = count

    ready = [node_id for node_id, c in pending.items() if c == 0]
    heapq.heapify(ready)
    ordered: List[Node] = []
    while ready:
        node_id = heapq.heappop(ready)
        ordered.append(batch[node_id])
        for child in children[node_id]:
            pending[child] -= 1
            if pending[child] == 0:
                heapq.heappush(ready, child)

    if len(ordered) != len(batch):
        stuck = sorted(node_id for node_id, c in pending.items() if c > 0)
        raise GraphCycle(stuck[0])
    return ordered
