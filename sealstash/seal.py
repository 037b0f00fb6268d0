"""
Single-Use Seals

A single-use seal binds ownership of off-chain state to a base-ledger output.
The seal is closed by spending that output; a seal may be closed at most once.

Seal forms:

    SealDefinition    {txid | None, vout, blinding}
                      txid None = witness-output seal, pointing at an output of
                      the very transaction that anchors the defining node
    ConcealedSeal     tagged_hash("sealstash:seal", txid || vout || blinding)

Two seals on the same outpoint with different blinding factors conceal to
unrelated hashes, so an outside observer cannot link them.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from sealstash.canonical import ZERO_HASH, is_hex_32, tagged_hash_bytes
from sealstash.hardening import CryptoUtils, MalformedEncoding, SealUnresolvable, Validators

SEAL_TAG = "sealstash:seal"

MAX_VOUT = (1 << 32) - 1


@dataclass(frozen=True, order=True)
class Outpoint:
    """A base-ledger transaction output reference."""
    txid: str
    vout: int

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"

    def to_dict(self) -> Dict[str, Any]:
        return {"txid": self.txid, "vout": self.vout}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Outpoint":
        txid = data.get("txid")
        vout = data.get("vout")
        if not is_hex_32(txid):
            raise MalformedEncoding("outpoint.txid must be 64 lowercase hex chars")
        if isinstance(vout, bool) or not isinstance(vout, int) or not 0 <= vout <= MAX_VOUT:
            raise MalformedEncoding("outpoint.vout must be a u32")
        return cls(txid=txid, vout=vout)

    @classmethod
    def parse(cls, value: str) -> "Outpoint":
        """Parse ``txid:vout``."""
        txid, sep, vout = value.partition(":")
        if not sep or not vout.isdigit():
            raise MalformedEncoding(f"invalid outpoint string: {value!r}")
        return cls.from_dict({"txid": txid, "vout": int(vout)})


@dataclass(frozen=True)
class ConcealedSeal:
    """A seal known only by its hash."""
    hash: str

    @property
    def is_revealed(self) -> bool:
        return False

    def conceal(self) -> str:
        return self.hash

    def to_dict(self) -> Dict[str, Any]:
        return {"concealed": self.hash}


@dataclass(frozen=True)
class SealDefinition:
    """A revealed seal definition."""
    txid: Optional[str]
    vout: int
    blinding: int

    def __post_init__(self):
        if self.txid is not None and not is_hex_32(self.txid):
            raise MalformedEncoding("seal.txid must be 64 lowercase hex chars or null")
        if isinstance(self.vout, bool) or not isinstance(self.vout, int) or not 0 <= self.vout <= MAX_VOUT:
            raise MalformedEncoding("seal.vout must be a u32")
        if not Validators.validate_u64(self.blinding, "seal.blinding").is_valid:
            raise MalformedEncoding("seal.blinding must be a u64")

    @classmethod
    def new(cls, vout: int, txid: Optional[str] = None, blinding: Optional[int] = None) -> "SealDefinition":
        """Create a seal with a fresh blinding factor unless one is given."""
        if blinding is None:
            blinding = CryptoUtils.secure_random_int(64)
        return cls(txid=txid, vout=vout, blinding=blinding)

    @property
    def is_revealed(self) -> bool:
        return True

    @property
    def is_witness(self) -> bool:
        """True when the seal points into the anchoring transaction itself."""
        return self.txid is None

    def conceal(self) -> str:
        txid = bytes.fromhex(self.txid or ZERO_HASH)
        msg = txid + self.vout.to_bytes(4, "big") + self.blinding.to_bytes(8, "big")
        return tagged_hash_bytes(SEAL_TAG, msg).hex()

    def to_dict(self) -> Dict[str, Any]:
        return {"txid": self.txid, "vout": self.vout, "blinding": self.blinding}


Seal = Union[SealDefinition, ConcealedSeal]


def seal_from_dict(data: Any) -> Seal:
    """Decode either seal form."""
    if not isinstance(data, dict):
        raise MalformedEncoding("seal must be an object")
    if set(data) == {"concealed"}:
        if not is_hex_32(data["concealed"]):
            raise MalformedEncoding("concealed seal must be 64 lowercase hex chars")
        return ConcealedSeal(hash=data["concealed"])
    if set(data) != {"txid", "vout", "blinding"}:
        raise MalformedEncoding(f"unexpected seal fields: {sorted(data)}")
    return SealDefinition(txid=data["txid"], vout=data["vout"], blinding=data["blinding"])


@dataclass(frozen=True)
class SealContext:
    """Where a seal was defined: the defining node and its witness transaction."""
    defining_node_id: str
    witness_txid: Optional[str]


def resolve_seal(seal: Seal, context: SealContext) -> Outpoint:
    """
    Dereference a seal to the ledger outpoint it designates.

    Witness-output seals resolve against the transaction anchoring the node
    that defines them; a genesis has no such transaction.
    """
    if not isinstance(seal, SealDefinition):
        raise SealUnresolvable(context.defining_node_id, f"seal {seal.conceal()} is concealed")
    if seal.txid is not None:
        return Outpoint(txid=seal.txid, vout=seal.vout)
    if context.witness_txid is None:
        raise SealUnresolvable(
            context.defining_node_id,
            "witness-output seal defined by a node without a witness transaction",
        )
    return Outpoint(txid=context.witness_txid, vout=seal.vout)


def seals_match(a: Seal, b: Seal) -> bool:
    """Whether two seal encodings designate the same seal."""
    return CryptoUtils.secure_compare_str(a.conceal(), b.conceal())
