"""Contract state projection.

Folds a contract's admitted history into the view a wallet works with:
global state in admission order, every owned assignment with the outpoint
its seal designates (when known) and whether it has been spent, declared and
redeemed rights, and balances of revealed fungible amounts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sealstash.node import AssignmentRef, Extension, FungibleState, Seal, State
from sealstash.seal import Outpoint, SealDefinition
from sealstash.stash import Stash


@dataclass(frozen=True)
class OwnedEntry:
    """One owned assignment as seen from the stash."""
    ref: AssignmentRef
    seal: Seal
    state: State
    outpoint: Optional[Outpoint]
    spent_by: Optional[str]

    @property
    def owned_type(self) -> str:
        return self.ref.owned_type

    @property
    def is_spent(self) -> bool:
        return self.spent_by is not None

    @property
    def amount(self) -> Optional[int]:
        return self.state.amount if isinstance(self.state, FungibleState) else None


@dataclass
class ContractState:
    contract_id: str
    schema_id: str
    global_state: Dict[str, List[Any]] = field(default_factory=dict)
    owned: List[OwnedEntry] = field(default_factory=list)
    rights: Dict[str, List[str]] = field(default_factory=dict)
    redeemed: Dict[str, List[str]] = field(default_factory=dict)

    def unspent(self, owned_type: Optional[str] = None) -> List[OwnedEntry]:
        return [
            e for e in self.owned
            if not e.is_spent and (owned_type is None or e.owned_type == owned_type)
        ]

    def balance(self, owned_type: str, outpoints: Optional[List[Outpoint]] = None) -> int:
        """Sum of revealed unspent amounts, optionally limited to ``outpoints``."""
        total = 0
        for e in self.unspent(owned_type):
            if e.amount is None:
                continue
            if outpoints is not None and e.outpoint not in outpoints:
                continue
            total += e.amount
        return total

    def allocations_at(self, outpoint: Outpoint) -> List[OwnedEntry]:
        return [e for e in self.owned if e.outpoint == outpoint]

    def open_rights(self, valency: str) -> List[str]:
        """Nodes declaring ``valency`` that no extension has redeemed yet."""
        used = set(self.redeemed.get(valency, []))
        return [n for n in self.rights.get(valency, []) if n not in used]


def _outpoint(seal: Seal, witness_txid: Optional[str]) -> Optional[Outpoint]:
    if not isinstance(seal, SealDefinition):
        return None
    if seal.txid is not None:
        return Outpoint(seal.txid, seal.vout)
    if witness_txid is None:
        return None
    return Outpoint(witness_txid, seal.vout)


def contract_state(stash: Stash, contract_id: str) -> ContractState:
    """Project the admitted history of ``contract_id``."""
    schema_id = stash.schema_id_for(contract_id)
    if schema_id is None:
        raise KeyError(f"unknown contract {contract_id}")
    state = ContractState(contract_id=contract_id, schema_id=schema_id)
    for node in stash.contract_nodes(contract_id):
        for name, values in node.global_state.items():
            state.global_state.setdefault(name, []).extend(values)
        for valency in getattr(node, "public_rights", ()):
            state.rights.setdefault(valency, []).append(node.node_id)
        if isinstance(node, Extension):
            for valency, origin in node.redeems.items():
                state.redeemed.setdefault(valency, []).append(origin)
        anchor = stash.anchor_for(node.node_id)
        witness_txid = anchor.txid if anchor is not None else None
        for owned_type, index, assignment in node.assignments():
            ref = AssignmentRef(node.node_id, owned_type, index)
            state.owned.append(OwnedEntry(
                ref=ref,
                seal=assignment.seal,
                state=assignment.state,
                outpoint=_outpoint(assignment.seal, witness_txid),
                spent_by=stash.spent_by(ref),
            ))
    return state
