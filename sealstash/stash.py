"""
Stash

Append-only, content-addressed store of validated contract history. Records
are kept per contract:

    ContractRecord
        schema_id, genesis id
        nodes       node_id -> Node
        anchors     node_id -> Anchor
        bundles     txid -> node ids anchored there
        closures    outpoint -> node_id that closed it
        spent       assignment ref -> node_id that spent it
        order       admission order

``admit``/``admit_all`` are the only mutators. Each contract has its own
exclusive section (an RLock created under a short registry lock), so
admissions for distinct contracts never contend and admissions for the same
contract serialize. A batch is staged on a copy of the record and swapped in
only when every node passes, so a failed batch leaves the stash unchanged.

Persistence goes through a ``StashBackend``:

    MemoryStashBackend    in-process dict
    FileStashBackend      one canonical JSON file per contract, atomic replace

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import json
import os
import pathlib
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Set, Tuple, Union

from sealstash.canonical import canonical_digest, canonical_json_bytes, is_hex_32
from sealstash.commitment import Anchor
from sealstash.config import get_config
from sealstash.hardening import (
    AnchorInvalid,
    InvariantChecker,
    InvariantViolation,
    MalformedEncoding,
    SealAlreadyClosed,
    ThreadSafeDict,
    UnknownAncestor,
)
from sealstash.node import AssignmentRef, Genesis, Node, node_from_dict
from sealstash.observability import Layer, get_logger
from sealstash.seal import Outpoint, SealContext, resolve_seal

logger = get_logger("stash", Layer.STASH)

RECORD_VERSION = 1


# =============================================================================
# CONTRACT RECORD
# =============================================================================

@dataclass
class ContractRecord:
    """Everything the stash knows about one contract."""
    contract_id: str
    schema_id: str
    nodes: Dict[str, Node] = field(default_factory=dict)
    anchors: Dict[str, Anchor] = field(default_factory=dict)
    bundles: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    closures: Dict[Outpoint, str] = field(default_factory=dict)
    spent: Dict[AssignmentRef, str] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)

    def copy(self) -> "ContractRecord":
        return ContractRecord(
            contract_id=self.contract_id,
            schema_id=self.schema_id,
            nodes=dict(self.nodes),
            anchors=dict(self.anchors),
            bundles=dict(self.bundles),
            closures=dict(self.closures),
            spent=dict(self.spent),
            order=list(self.order),
        )

    def frontier(self) -> Set[AssignmentRef]:
        refs: Set[AssignmentRef] = set()
        for node_id in self.order:
            refs.update(self.nodes[node_id].output_refs())
        return refs - set(self.spent)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": RECORD_VERSION,
            "contract_id": self.contract_id,
            "schema_id": self.schema_id,
            "nodes": [self.nodes[n].to_dict() for n in self.order],
            "anchors": {n: a.to_dict() for n, a in self.anchors.items()},
            "closures": sorted(
                [{"outpoint": str(o), "node_id": n} for o, n in self.closures.items()],
                key=lambda c: c["outpoint"],
            ),
            "spent": sorted(
                [{"ref": r.to_dict(), "node_id": n} for r, n in self.spent.items()],
                key=lambda s: (s["ref"]["node_id"], s["ref"]["owned_type"], s["ref"]["index"]),
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContractRecord":
        if data.get("version") != RECORD_VERSION:
            raise MalformedEncoding(f"unsupported stash record version {data.get('version')!r}")
        if not is_hex_32(data.get("contract_id")) or not is_hex_32(data.get("schema_id")):
            raise MalformedEncoding("stash record ids must be 64 lowercase hex chars")
        record = cls(contract_id=data["contract_id"], schema_id=data["schema_id"])
        for raw in data["nodes"]:
            node = node_from_dict(raw)
            record.nodes[node.node_id] = node
            record.order.append(node.node_id)
        for node_id, raw in data["anchors"].items():
            anchor = Anchor.from_dict(raw)
            record.anchors[node_id] = anchor
            record.bundles[anchor.txid] = anchor.node_ids
        for c in data["closures"]:
            record.closures[Outpoint.parse(c["outpoint"])] = c["node_id"]
        for s in data["spent"]:
            record.spent[AssignmentRef.from_dict(s["ref"])] = s["node_id"]
        return record


# =============================================================================
# BACKENDS
# =============================================================================

class StashBackend(Protocol):
    """Key-value persistence contract for contract records."""

    def load(self, contract_id: str) -> Optional[ContractRecord]: ...

    def save(self, record: ContractRecord) -> None: ...

    def contract_ids(self) -> List[str]: ...


class MemoryStashBackend:
    """Records held in process memory."""

    def __init__(self):
        self._records: ThreadSafeDict[ContractRecord] = ThreadSafeDict()

    def load(self, contract_id: str) -> Optional[ContractRecord]:
        return self._records.get(contract_id)

    def save(self, record: ContractRecord) -> None:
        self._records[record.contract_id] = record

    def contract_ids(self) -> List[str]:
        return sorted(self._records)


class FileStashBackend:
    """
    One canonical JSON document per contract under ``root``.

    Writes go to a temporary file in the same directory followed by
    ``os.replace``, so a reader sees either the old or the new record.
    """

    def __init__(self, root: Union[str, pathlib.Path]):
        self.root = pathlib.Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, contract_id: str) -> pathlib.Path:
        if not is_hex_32(contract_id):
            raise ValueError(f"invalid contract id: {contract_id!r}")
        return self.root / f"{contract_id}.json"

    def load(self, contract_id: str) -> Optional[ContractRecord]:
        path = self._path(contract_id)
        if not path.exists():
            return None
        return ContractRecord.from_dict(json.loads(path.read_bytes().decode("utf-8")))

    def save(self, record: ContractRecord) -> None:
        dest = self._path(record.contract_id)
        data = canonical_json_bytes(record.to_dict())
        fd, tmp = tempfile.mkstemp(prefix=f".{record.contract_id}.", suffix=".tmp", dir=str(self.root))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, dest)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def contract_ids(self) -> List[str]:
        return sorted(p.stem for p in self.root.glob("*.json") if is_hex_32(p.stem))


def backend_from_config() -> StashBackend:
    config = get_config().stash
    if config.backend.get() == "file":
        return FileStashBackend(config.path.get())
    return MemoryStashBackend()


# =============================================================================
# STASH
# =============================================================================

class Stash:
    """
    The durable memory of every contract a party has validated.

    Pass one instance explicitly to validators and builders; it holds no
    global state.
    """

    def __init__(self, backend: Optional[StashBackend] = None):
        self.backend = backend if backend is not None else backend_from_config()
        self._records: ThreadSafeDict[ContractRecord] = ThreadSafeDict()
        self._index: ThreadSafeDict[str] = ThreadSafeDict()
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        for contract_id in self.backend.contract_ids():
            record = self.backend.load(contract_id)
            if record is not None:
                self._install(record)

    # -- concurrency -----------------------------------------------------------

    def _lock_for(self, contract_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(contract_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[contract_id] = lock
            return lock

    @contextmanager
    def exclusive(self, contract_id: str) -> Iterator["Stash"]:
        """Exclusive section for check-and-admit on one contract."""
        with self._lock_for(contract_id):
            yield self

    # -- read API --------------------------------------------------------------

    def has(self, node_id: str) -> bool:
        return node_id in self._index

    def get(self, node_id: str) -> Optional[Node]:
        contract_id = self._index.get(node_id)
        if contract_id is None:
            return None
        return self._records[contract_id].nodes.get(node_id)

    def contract_of(self, node_id: str) -> Optional[str]:
        return self._index.get(node_id)

    def anchor_for(self, node_id: str) -> Optional[Anchor]:
        contract_id = self._index.get(node_id)
        if contract_id is None:
            return None
        return self._records[contract_id].anchors.get(node_id)

    def closing_node(self, contract_id: str, outpoint: Outpoint) -> Optional[str]:
        record = self._records.get(contract_id)
        return record.closures.get(outpoint) if record is not None else None

    def spent_by(self, ref: AssignmentRef) -> Optional[str]:
        contract_id = self._index.get(ref.node_id)
        if contract_id is None:
            return None
        return self._records[contract_id].spent.get(ref)

    def frontier(self, contract_id: str) -> Set[AssignmentRef]:
        record = self._records.get(contract_id)
        return record.frontier() if record is not None else set()

    def contracts(self) -> List[str]:
        return sorted(self._records)

    def contract_nodes(self, contract_id: str) -> List[Node]:
        """Nodes of a contract in admission order (ancestors first)."""
        record = self._records.get(contract_id)
        if record is None:
            return []
        return [record.nodes[n] for n in record.order]

    def schema_id_for(self, contract_id: str) -> Optional[str]:
        record = self._records.get(contract_id)
        return record.schema_id if record is not None else None

    def bundle(self, contract_id: str, txid: str) -> Tuple[str, ...]:
        record = self._records.get(contract_id)
        if record is None:
            return ()
        return record.bundles.get(txid, ())

    def state_digest(self) -> str:
        """Digest over every record; equal digests mean identical stash content."""
        return canonical_digest({cid: self._records[cid].to_dict() for cid in self.contracts()})

    # -- mutation --------------------------------------------------------------

    def admit(self, contract_id: str, node: Node, anchor: Optional[Anchor] = None) -> bool:
        """
        Append one validated node. Re-admitting a known node is a no-op.

        Returns True when the node was newly admitted.
        """
        return self.admit_all(contract_id, [(node, anchor)]) == 1

    def admit_all(
        self,
        contract_id: str,
        entries: Sequence[Tuple[Node, Optional[Anchor]]],
    ) -> int:
        """
        Atomically append a batch of nodes in the given (topological) order.

        A node the contract already holds is merged with the stored copy, so
        seals and states revealed by the new copy are kept. Returns the number
        of newly admitted nodes.
        """
        with self.exclusive(contract_id):
            current = self._records.get(contract_id)
            staged = current.copy() if current is not None else None
            admitted: List[str] = []
            revealed: List[str] = []
            for node, anchor in entries:
                node_id = node.node_id
                if staged is not None and node_id in staged.nodes:
                    stored = staged.nodes[node_id]
                    merged = stored.merge_reveal(node)
                    if merged is not stored:
                        staged.nodes[node_id] = merged
                        revealed.append(node_id)
                    continue
                if self.has(node_id):
                    continue
                staged = self._stage(contract_id, staged, node, anchor)
                admitted.append(node_id)
            if not admitted and not revealed:
                return 0

            if current is not None:
                InvariantChecker.check_append_only("stash.nodes", len(current.order), len(staged.order))
            self.backend.save(staged)
            self._install(staged)
        logger.info("Nodes admitted", contract_id=contract_id, count=len(admitted), revealed=len(revealed))
        return len(admitted)

    def _install(self, record: ContractRecord) -> None:
        with self._index.transaction():
            self._records[record.contract_id] = record
            for node_id in record.order:
                owner = self._index.get(node_id)
                if owner is not None and owner != record.contract_id:
                    raise InvariantViolation(f"node {node_id} indexed under two contracts")
                self._index[node_id] = record.contract_id

    def _stage(
        self,
        contract_id: str,
        record: Optional[ContractRecord],
        node: Node,
        anchor: Optional[Anchor],
    ) -> ContractRecord:
        node_id = node.node_id
        if isinstance(node, Genesis):
            if node_id != contract_id:
                raise UnknownAncestor(contract_id, referenced_by=node_id,
                                      detail="genesis does not define this contract")
            record = ContractRecord(contract_id=contract_id, schema_id=node.schema_id)
        else:
            if record is None:
                raise UnknownAncestor(contract_id, referenced_by=node_id, detail="genesis unknown")
            if node.contract_id != contract_id:
                raise UnknownAncestor(node.contract_id, referenced_by=node_id,
                                      detail=f"node belongs to contract {node.contract_id}")
            if anchor is None or node_id not in anchor.node_ids:
                raise AnchorInvalid(node_id, "no anchor binds this node")

        for parent_id in sorted(node.parents()):
            if parent_id not in record.nodes:
                raise UnknownAncestor(parent_id, referenced_by=node_id)

        closes: List[Tuple[AssignmentRef, Outpoint]] = []
        for ref in node.inputs_refs():
            assignment = record.nodes[ref.node_id].output(ref.owned_type, ref.index)
            if assignment is None:
                raise UnknownAncestor(ref.node_id, referenced_by=node_id,
                                      detail=f"no output {ref.owned_type}/{ref.index}")
            parent_anchor = record.anchors.get(ref.node_id)
            context = SealContext(ref.node_id, parent_anchor.txid if parent_anchor else None)
            outpoint = resolve_seal(assignment.seal, context)
            closer = record.closures.get(outpoint)
            if closer is not None and closer != node_id:
                raise SealAlreadyClosed(outpoint, closed_by=closer, attempted_by=node_id)
            if any(o == outpoint for _r, o in closes):
                raise SealAlreadyClosed(outpoint, closed_by=node_id, attempted_by=node_id)
            closes.append((ref, outpoint))

        record.nodes[node_id] = node
        record.order.append(node_id)
        if anchor is not None:
            record.anchors[node_id] = anchor
            record.bundles[anchor.txid] = anchor.node_ids
        for ref, outpoint in closes:
            record.closures[outpoint] = node_id
            record.spent[ref] = node_id
        return record
