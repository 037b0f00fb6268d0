"""
Base-Ledger Transaction Access

The engine never fetches ledger data itself. Transactions are supplied as
in-memory values by a ledger-access collaborator implementing
``TransactionProvider``; timeouts, retries and confirmation tracking belong to
that collaborator.

The model is deliberately minimal:

    Transaction  {txid, inputs: [Outpoint], outputs: [TxOutput]}
    TxOutput     {script, value}

``MemoryLedger`` is an in-process provider that also builds transactions, for
tests and for callers that hold raw transaction data already.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hashlib
import secrets
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from sealstash.canonical import canonical_json_bytes
from sealstash.hardening import TransactionUnavailable
from sealstash.seal import Outpoint

OP_RETURN = 0x6A
OP_1 = 0x51
PUSH_32 = 0x20


def op_return_script(payload: bytes) -> bytes:
    """OP_RETURN <32-byte payload>."""
    if len(payload) != 32:
        raise ValueError("OP_RETURN commitment payload must be 32 bytes")
    return bytes([OP_RETURN, PUSH_32]) + payload


def p2c_script(tweaked_key: bytes) -> bytes:
    """OP_1 <32-byte tweaked key>."""
    if len(tweaked_key) != 32:
        raise ValueError("tweaked key must be 32 bytes")
    return bytes([OP_1, PUSH_32]) + tweaked_key


def is_op_return(script: bytes) -> bool:
    return len(script) > 0 and script[0] == OP_RETURN


@dataclass(frozen=True)
class TxOutput:
    """A transaction output: locking script (or commitment slot) and value."""
    script: bytes
    value: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {"script": self.script.hex(), "value": self.value}


@dataclass(frozen=True)
class Transaction:
    """A base-ledger transaction as seen by the engine."""
    txid: str
    inputs: Tuple[Outpoint, ...] = field(default_factory=tuple)
    outputs: Tuple[TxOutput, ...] = field(default_factory=tuple)

    def spends(self, outpoint: Outpoint) -> bool:
        return outpoint in self.inputs

    def output(self, vout: int) -> Optional[TxOutput]:
        if 0 <= vout < len(self.outputs):
            return self.outputs[vout]
        return None


class TransactionProvider(Protocol):
    """Protocol for the ledger-access collaborator."""

    def get_transaction(self, txid: str) -> Transaction:
        """Return the transaction or raise TransactionUnavailable."""
        ...


def compute_txid(inputs: Iterable[Outpoint], outputs: Iterable[TxOutput], nonce: str = "") -> str:
    """Double SHA-256 over the canonical transaction body."""
    body = canonical_json_bytes({
        "inputs": [o.to_dict() for o in inputs],
        "outputs": [o.to_dict() for o in outputs],
        "nonce": nonce,
    })
    return hashlib.sha256(hashlib.sha256(body).digest()).hexdigest()


class MemoryLedger:
    """
    In-memory transaction provider.

    Holds transactions by txid. ``build_transaction`` assembles and records a
    transaction from inputs and outputs the way a wallet would hand it over.
    """

    def __init__(self):
        self._txs: Dict[str, Transaction] = {}
        self._lock = threading.RLock()

    def add(self, tx: Transaction) -> Transaction:
        with self._lock:
            self._txs[tx.txid] = tx
        return tx

    def get_transaction(self, txid: str) -> Transaction:
        with self._lock:
            tx = self._txs.get(txid)
        if tx is None:
            raise TransactionUnavailable(txid)
        return tx

    def build_transaction(
        self,
        inputs: Iterable[Outpoint],
        outputs: Iterable[TxOutput],
        nonce: Optional[str] = None,
    ) -> Transaction:
        ins = tuple(inputs)
        outs = tuple(outputs)
        txid = compute_txid(ins, outs, nonce if nonce is not None else secrets.token_hex(8))
        return self.add(Transaction(txid=txid, inputs=ins, outputs=outs))

    def fund(self, n_outputs: int = 1, value: int = 10_000) -> Transaction:
        """Create a transaction with no inputs and ``n_outputs`` plain outputs."""
        outs = [TxOutput(script=bytes([0x00, 0x14]) + secrets.token_bytes(20), value=value)
                for _ in range(n_outputs)]
        return self.build_transaction([], outs)

    def transactions(self) -> List[Transaction]:
        with self._lock:
            return list(self._txs.values())
