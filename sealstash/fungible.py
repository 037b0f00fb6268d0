"""
Fungible assets

The standard fungible-asset contract class and helpers that build its nodes
with balanced blinding factors:

    genesis     ticker, name, precision, issued_supply; ``assets`` outputs
                hide exactly issued_supply; may declare the ``inflation`` right
    transfer    spends ``assets`` and re-assigns the same total
    issue       extension redeeming ``inflation``; new ``assets`` outputs hide
                exactly its issued_supply

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from sealstash import pedersen
from sealstash.hardening import Validators
from sealstash.node import Assignment, AssignmentRef, Extension, FungibleState, Genesis, Seal, Transition
from sealstash.schema import (
    NONE_OR_ONCE,
    ONCE,
    ONCE_OR_MORE,
    FieldSpec,
    NodeTemplate,
    Occurrence,
    PredicateRef,
    Schema,
)

ASSETS = "assets"
INFLATION = "inflation"
SUPPLY_FIELD = "issued_supply"


def fungible_schema() -> Schema:
    """The fungible-asset contract class."""
    issue_predicate = PredicateRef("fungible_issue", {"owned_type": ASSETS, "supply_field": SUPPLY_FIELD})
    return Schema(
        name="fungible_asset",
        version=1,
        fields={
            "ticker": FieldSpec("string", 8),
            "name": FieldSpec("string", 64),
            "precision": FieldSpec("u8"),
            SUPPLY_FIELD: FieldSpec("u64"),
            "memo": FieldSpec("string", 256),
        },
        owned_types={ASSETS: "fungible"},
        valencies=(INFLATION,),
        genesis=NodeTemplate(
            global_state={"ticker": ONCE, "name": ONCE, "precision": ONCE, SUPPLY_FIELD: ONCE},
            outputs={ASSETS: ONCE_OR_MORE},
            public_rights={INFLATION: NONE_OR_ONCE},
            predicate=issue_predicate,
        ),
        transitions={
            "transfer": NodeTemplate(
                metadata={"memo": NONE_OR_ONCE},
                inputs={ASSETS: ONCE_OR_MORE},
                outputs={ASSETS: ONCE_OR_MORE},
                predicate=PredicateRef("fungible_conservation", {"owned_type": ASSETS}),
            ),
        },
        extensions={
            "issue": NodeTemplate(
                global_state={SUPPLY_FIELD: ONCE},
                outputs={ASSETS: ONCE_OR_MORE},
                public_rights={INFLATION: NONE_OR_ONCE},
                redeems={INFLATION: Occurrence(1, 1)},
                predicate=issue_predicate,
            ),
        },
    )


def _issued_assignments(allocations: Sequence[Tuple[Seal, int]]) -> Tuple[Assignment, ...]:
    """Assignments whose blinding factors sum to zero."""
    if not allocations:
        raise ValueError("at least one allocation is required")
    blindings = [pedersen.random_blinding() for _ in allocations[:-1]]
    blindings.append(pedersen.balancing_blinding([], blindings))
    return tuple(
        Assignment(seal, FungibleState(amount, blinding))
        for (seal, amount), blinding in zip(allocations, blindings)
    )


def issue(
    schema_id: str,
    ticker: str,
    name: str,
    allocations: Sequence[Tuple[Seal, int]],
    precision: int = 8,
    chain: str = "regtest",
    inflatable: bool = False,
) -> Genesis:
    """Genesis issuing ``sum(amounts)`` units over ``allocations``."""
    supply = sum(amount for _seal, amount in allocations)
    Validators.validate_u64(supply, SUPPLY_FIELD).raise_if_invalid()
    return Genesis(
        schema_id=schema_id,
        chain=chain,
        global_state={
            "ticker": (ticker,),
            "name": (name,),
            "precision": (precision,),
            SUPPLY_FIELD: (supply,),
        },
        owned_state={ASSETS: _issued_assignments(allocations)},
        public_rights=(INFLATION,) if inflatable else (),
    )


def transfer(
    contract_id: str,
    inputs: Sequence[Tuple[AssignmentRef, FungibleState]],
    outputs: Sequence[Tuple[Seal, int]],
    memo: Optional[str] = None,
) -> Transition:
    """
    Transition spending ``inputs`` into ``outputs``.

    The caller supplies the revealed state behind each input; the last
    output's blinding balances the rest.
    """
    total_in = sum(state.amount for _ref, state in inputs)
    total_out = sum(amount for _seal, amount in outputs)
    if total_in != total_out:
        raise ValueError(f"inputs carry {total_in}, outputs {total_out}")
    if not outputs:
        raise ValueError("at least one output is required")
    input_blindings = [state.blinding for _ref, state in inputs]
    blindings = [pedersen.random_blinding() for _ in outputs[:-1]]
    blindings.append(pedersen.balancing_blinding(input_blindings, blindings))
    owned = tuple(
        Assignment(seal, FungibleState(amount, blinding))
        for (seal, amount), blinding in zip(outputs, blindings)
    )
    metadata: Dict[str, Tuple[str, ...]] = {"memo": (memo,)} if memo is not None else {}
    return Transition(
        kind="transfer",
        contract_id=contract_id,
        inputs=tuple(ref for ref, _state in inputs),
        metadata=metadata,
        owned_state={ASSETS: owned},
    )


def inflate(
    contract_id: str,
    right_holder: str,
    allocations: Sequence[Tuple[Seal, int]],
    keep_right: bool = False,
) -> Extension:
    """Extension redeeming the inflation right declared by ``right_holder``."""
    supply = sum(amount for _seal, amount in allocations)
    Validators.validate_u64(supply, SUPPLY_FIELD).raise_if_invalid()
    return Extension(
        kind="issue",
        contract_id=contract_id,
        redeems={INFLATION: right_holder},
        global_state={SUPPLY_FIELD: (supply,)},
        owned_state={ASSETS: _issued_assignments(allocations)},
        public_rights=(INFLATION,) if keep_right else (),
    )


def revealed_inputs(
    node,
    owned_type: str = ASSETS,
) -> List[Tuple[AssignmentRef, FungibleState]]:
    """Revealed fungible outputs of ``node`` ready to be spent by ``transfer``."""
    found: List[Tuple[AssignmentRef, FungibleState]] = []
    for t, index, a in node.assignments():
        if t == owned_type and isinstance(a.state, FungibleState):
            found.append((AssignmentRef(node.node_id, t, index), a.state))
    return found
