"""
Seal Closing and Ledger Commitments

Binds state transitions to base-ledger transactions. For every witness
transaction, each contract contributes one message (the id of its bundle of
nodes anchored there); the messages are folded into a multi-protocol
commitment tree whose root is embedded into the transaction by a pluggable,
versioned commitment scheme.

Architecture:

    ┌──────────────────────────────────────────────────────────────────┐
    │  close(seals, {contract_id: bundle_id})                           │
    │      │                                                            │
    │      ▼                                                            │
    │  MPC tree ──► root ──► CommitmentScheme.output() ──► TxOutput     │
    │                                                                   │
    │  Anchor {txid, protocol, node_ids, mpc_proof, params}             │
    │      │                                                            │
    │      ▼                                                            │
    │  check(): txid match → bundle membership → MPC proof → embedding  │
    └──────────────────────────────────────────────────────────────────┘

Schemes:
    opret1st    first OP_RETURN output carries the 32-byte root
    p2c         output at vout is OP_1 <H_p2c(internal_key || root)>,
                a hash-based pay-to-contract key tweak

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sealstash.canonical import concat_hex, is_hex_32, tagged_digest, tagged_hash, tagged_hash_bytes
from sealstash.config import get_config
from sealstash.encoding import decode_document, encode_document
from sealstash.hardening import AnchorInvalid, CryptoUtils, MalformedEncoding
from sealstash.ledger import Transaction, TxOutput, is_op_return, op_return_script, p2c_script
from sealstash.mpc import MpcProof, MpcTree
from sealstash.observability import Layer, get_logger
from sealstash.seal import Outpoint

logger = get_logger("commitment", Layer.COMMITMENT)

BUNDLE_TAG = "sealstash:bundle"
P2C_TAG = "sealstash:p2c"
ANCHOR_TAG = "sealstash:anchor"


def bundle_id(node_ids: Iterable[str]) -> str:
    """Identity of the set of a contract's nodes anchored in one transaction."""
    ids = sorted(set(node_ids))
    if not ids:
        raise ValueError("bundle must contain at least one node")
    return tagged_hash(BUNDLE_TAG, concat_hex(ids))


# =============================================================================
# COMMITMENT SCHEMES
# =============================================================================

class CommitmentScheme(ABC):
    """A convention for embedding a 32-byte commitment into a transaction."""

    protocol: str = ""

    @abstractmethod
    def output(self, root: str, params: Dict[str, Any]) -> TxOutput:
        """Build the output that carries the commitment."""

    @abstractmethod
    def locate(self, root: str, tx: Transaction, params: Dict[str, Any]) -> Dict[str, Any]:
        """Return the anchor params for a transaction that carries ``root``."""

    @abstractmethod
    def verify(self, root: str, tx: Transaction, params: Dict[str, Any]) -> bool:
        """Check that ``tx`` commits to ``root``."""

    def validate_params(self, params: Dict[str, Any]) -> None:
        if params:
            raise MalformedEncoding(f"{self.protocol} anchors take no parameters")


class OpretFirstScheme(CommitmentScheme):
    """The first OP_RETURN output of the transaction carries the root."""

    protocol = "opret1st"

    def output(self, root: str, params: Dict[str, Any]) -> TxOutput:
        return TxOutput(script=op_return_script(bytes.fromhex(root)), value=0)

    def locate(self, root: str, tx: Transaction, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.verify(root, tx, {}):
            raise ValueError("transaction does not carry the commitment in its first OP_RETURN")
        return {}

    def verify(self, root: str, tx: Transaction, params: Dict[str, Any]) -> bool:
        for out in tx.outputs:
            if is_op_return(out.script):
                return CryptoUtils.secure_compare(out.script, op_return_script(bytes.fromhex(root)))
        return False


class PayToContractScheme(CommitmentScheme):
    """The output key is tweaked by hashing the internal key with the root."""

    protocol = "p2c"

    @staticmethod
    def tweaked_key(internal_key: str, root: str) -> bytes:
        return tagged_hash_bytes(P2C_TAG, concat_hex([internal_key, root]))

    def output(self, root: str, params: Dict[str, Any]) -> TxOutput:
        self.validate_params({"vout": 0, **params})
        return TxOutput(script=p2c_script(self.tweaked_key(params["internal_key"], root)), value=params.get("value", 0))

    def locate(self, root: str, tx: Transaction, params: Dict[str, Any]) -> Dict[str, Any]:
        script = p2c_script(self.tweaked_key(params["internal_key"], root))
        for vout, out in enumerate(tx.outputs):
            if out.script == script:
                return {"internal_key": params["internal_key"], "vout": vout}
        raise ValueError("transaction has no output carrying the tweaked key")

    def verify(self, root: str, tx: Transaction, params: Dict[str, Any]) -> bool:
        out = tx.output(params.get("vout", -1))
        if out is None:
            return False
        expected = p2c_script(self.tweaked_key(params["internal_key"], root))
        return CryptoUtils.secure_compare(out.script, expected)

    def validate_params(self, params: Dict[str, Any]) -> None:
        if not is_hex_32(params.get("internal_key")):
            raise MalformedEncoding("p2c anchors require a 32-byte hex internal_key")
        vout = params.get("vout")
        if isinstance(vout, bool) or not isinstance(vout, int) or vout < 0:
            raise MalformedEncoding("p2c anchors require a non-negative integer vout")
        extra = set(params) - {"internal_key", "vout", "value"}
        if extra:
            raise MalformedEncoding(f"unexpected p2c anchor params: {sorted(extra)}")


_schemes: Dict[str, CommitmentScheme] = {}
_schemes_lock = threading.Lock()


def register_scheme(scheme: CommitmentScheme) -> None:
    """Register a commitment scheme under its protocol tag."""
    with _schemes_lock:
        _schemes[scheme.protocol] = scheme


def get_scheme(protocol: str) -> CommitmentScheme:
    with _schemes_lock:
        scheme = _schemes.get(protocol)
    if scheme is None:
        raise KeyError(f"unknown commitment protocol: {protocol}")
    return scheme


register_scheme(OpretFirstScheme())
register_scheme(PayToContractScheme())


# =============================================================================
# COMMITMENT (SENDER SIDE)
# =============================================================================

@dataclass(frozen=True)
class Commitment:
    """
    Result of closing a set of seals over a multi-protocol message.

    ``closes`` lists the outpoints the witness transaction must spend and
    ``output`` is the transaction output that must carry the commitment.
    """
    protocol: str
    root: str
    closes: Tuple[Outpoint, ...]
    proofs: Dict[str, MpcProof]
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def output(self) -> TxOutput:
        return get_scheme(self.protocol).output(self.root, self.params)

    @property
    def value(self) -> str:
        """The 32 bytes actually embedded in the transaction, hex encoded."""
        if self.protocol == PayToContractScheme.protocol:
            return PayToContractScheme.tweaked_key(self.params["internal_key"], self.root).hex()
        return self.root

    def anchor_for(self, contract_id: str, tx: Transaction, node_ids: Iterable[str]) -> "Anchor":
        """Build the anchor of one contract's bundle once the witness transaction exists."""
        proof = self.proofs.get(contract_id)
        if proof is None:
            raise KeyError(f"contract {contract_id} is not part of this commitment")
        params = get_scheme(self.protocol).locate(self.root, tx, self.params)
        return Anchor(
            txid=tx.txid,
            protocol=self.protocol,
            node_ids=tuple(sorted(set(node_ids))),
            mpc_proof=proof,
            params=params,
        )


def close(
    seals: Iterable[Outpoint],
    message: Dict[str, str],
    protocol: Optional[str] = None,
    params: Optional[Dict[str, Any]] = None,
) -> Commitment:
    """
    Deterministically derive the commitment closing ``seals`` over ``message``.

    ``message`` maps contract ids to bundle ids. The same inputs always give
    the same commitment; nothing about the message is revealed by it.
    """
    protocol = protocol or get_config().commitment.default_protocol.get()
    scheme = get_scheme(protocol)
    tree = MpcTree.build(message)
    commitment = Commitment(
        protocol=protocol,
        root=tree.root,
        closes=tuple(sorted(set(seals))),
        proofs=tree.proofs,
        params=dict(params or {}),
    )
    logger.debug(
        "Seals closed over commitment",
        protocol=scheme.protocol,
        contracts=len(message),
        seals=len(commitment.closes),
    )
    return commitment


def verify(commitment: Commitment, transaction: Transaction, message: Dict[str, str]) -> bool:
    """Check that ``transaction`` embeds the commitment to ``message``."""
    try:
        tree = MpcTree.build(message)
        scheme = get_scheme(commitment.protocol)
    except (KeyError, ValueError):
        return False
    if not CryptoUtils.secure_compare_str(tree.root, commitment.root):
        return False
    params = commitment.params
    if commitment.protocol == PayToContractScheme.protocol:
        try:
            params = scheme.locate(commitment.root, transaction, commitment.params)
        except ValueError:
            return False
    return scheme.verify(commitment.root, transaction, params)


# =============================================================================
# ANCHOR (VALIDATOR SIDE)
# =============================================================================

@dataclass(frozen=True)
class Anchor:
    """
    Proof binding a contract's bundle of nodes to one ledger transaction.

    ``node_ids`` lists every node of the contract anchored in the
    transaction. Nodes a consignment does not reveal stay in this list as
    blinded placeholders so the bundle id can still be recomputed.
    """
    txid: str
    protocol: str
    node_ids: Tuple[str, ...]
    mpc_proof: MpcProof
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def bundle_id(self) -> str:
        return bundle_id(self.node_ids)

    @property
    def anchor_id(self) -> str:
        return tagged_digest(ANCHOR_TAG, self.to_dict())

    def check(self, contract_id: str, node_id: str, transaction: Transaction) -> None:
        """Raise AnchorInvalid unless this anchor binds ``node_id`` to ``transaction``."""
        if transaction.txid != self.txid:
            raise AnchorInvalid(node_id, f"anchor names tx {self.txid}, got {transaction.txid}")
        if node_id not in self.node_ids:
            raise AnchorInvalid(node_id, "node is not a member of the anchored bundle")
        try:
            scheme = get_scheme(self.protocol)
        except KeyError:
            raise AnchorInvalid(node_id, f"unknown commitment protocol {self.protocol}")
        root = self.mpc_proof.root_for(contract_id, self.bundle_id)
        if root is None:
            raise AnchorInvalid(node_id, "inconsistent multi-protocol commitment proof")
        if not scheme.verify(root, transaction, self.params):
            raise AnchorInvalid(node_id, f"transaction does not carry the {self.protocol} commitment")

    def verify(self, contract_id: str, node_id: str, transaction: Transaction) -> bool:
        try:
            self.check(contract_id, node_id, transaction)
        except AnchorInvalid as e:
            logger.debug("Anchor verification failed", node_id=node_id, reason=str(e))
            return False
        return True

    def merge(self, other: "Anchor") -> "Anchor":
        """Combine two views of the same anchor; they must agree on everything."""
        if self.to_dict() != other.to_dict():
            raise ValueError(f"conflicting anchors for transaction {self.txid}")
        return self

    def to_bytes(self) -> bytes:
        return encode_document(self.to_dict())

    @classmethod
    def from_bytes(cls, data: bytes) -> "Anchor":
        return cls.from_dict(decode_document(data, "anchor"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "protocol": self.protocol,
            "node_ids": list(self.node_ids),
            "mpc_proof": self.mpc_proof.to_dict(),
            "params": dict(self.params),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Anchor":
        expected = {"txid", "protocol", "node_ids", "mpc_proof", "params"}
        if not isinstance(data, dict) or set(data) != expected:
            raise MalformedEncoding(f"anchor must have exactly {sorted(expected)}")
        if not is_hex_32(data["txid"]):
            raise MalformedEncoding("anchor.txid must be 64 lowercase hex chars")
        if not isinstance(data["protocol"], str):
            raise MalformedEncoding("anchor.protocol must be a string")
        node_ids = data["node_ids"]
        if (not isinstance(node_ids, list) or not node_ids
                or not all(is_hex_32(n) for n in node_ids)):
            raise MalformedEncoding("anchor.node_ids must be a non-empty list of node ids")
        if node_ids != sorted(set(node_ids)):
            raise MalformedEncoding("anchor.node_ids must be sorted and unique")
        params = data["params"]
        if not isinstance(params, dict):
            raise MalformedEncoding("anchor.params must be an object")
        try:
            get_scheme(data["protocol"]).validate_params(params)
        except KeyError:
            # unknown protocols decode; check() rejects them
            pass
        return cls(
            txid=data["txid"],
            protocol=data["protocol"],
            node_ids=tuple(node_ids),
            mpc_proof=MpcProof.from_dict(data["mpc_proof"]),
            params=dict(params),
        )


def anchors_by_txid(anchors: Iterable[Anchor]) -> Dict[str, Anchor]:
    out: Dict[str, Anchor] = {}
    for a in anchors:
        out[a.txid] = out[a.txid].merge(a) if a.txid in out else a
    return out


def required_transactions(anchors: Iterable[Anchor]) -> List[str]:
    return sorted({a.txid for a in anchors})
