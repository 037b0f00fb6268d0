"""
sealstash: client-side validation for seal-anchored contracts

Contract state lives off-ledger. Each state change is a node in a per-contract
DAG, bound to a ledger transaction through a commitment, and every owned piece
of state is guarded by a single-use seal (an unspent transaction output). A
recipient receives a consignment, the slice of history it needs, and verifies
it locally against the ledger before admitting it to its stash.

Architecture
────────────

    ┌──────────────────────────────────────────────────────────────────┐
    │  TRANSFER                                                        │
    │    consignment.py  Consignment model, validator, builder         │
    │    disclosure.py   Signed disclosures of anchored bundles        │
    │                                                                  │
    │  STORAGE                                                         │
    │    graph.py        Per-contract DAG over a read-through base     │
    │    stash.py        Append-only store with exclusive sections     │
    │    state.py        Contract state projection and balances        │
    │                                                                  │
    │  RULES                                                           │
    │    schema.py       Contract classes, templates, predicates       │
    │    fungible.py     Standard fungible-asset class and helpers     │
    │    node.py         Genesis, transitions, extensions, NodeId      │
    │                                                                  │
    │  LEDGER BINDING                                                  │
    │    seal.py         Single-use seals and their resolution         │
    │    commitment.py   Commitment schemes, close/verify, anchors     │
    │    mpc.py          Multi-protocol commitment tree                │
    │    ledger.py       Transaction model and in-memory ledger        │
    │    pedersen.py     Hidden fungible amounts                       │
    │                                                                  │
    │  FOUNDATION                                                      │
    │    canonical.py    Canonical bytes and tagged hashes             │
    │    encoding.py     Strict decoding with JSON Schema              │
    │    hardening.py    Errors, validators, invariants                │
    │    config.py       YAML and environment configuration            │
    │    observability.py Structured logging and tracing               │
    └──────────────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import sealstash modules on first access."""

    if name in ("Schema", "SchemaEngine", "SchemaRegistry", "NodeTemplate", "FieldSpec",
                "Occurrence", "PredicateRef", "ContractMetadata", "validate"):
        from sealstash import schema
        return getattr(schema, name)

    if name in ("Outpoint", "SealDefinition", "ConcealedSeal", "SealContext", "resolve_seal"):
        from sealstash import seal
        return getattr(seal, name)

    if name in ("Anchor", "Commitment", "close", "verify", "bundle_id"):
        from sealstash import commitment
        return getattr(commitment, name)

    if name in ("Genesis", "Transition", "Extension", "Assignment", "AssignmentRef",
                "FungibleState", "DataState", "DeclarativeState"):
        from sealstash import node
        return getattr(node, name)

    if name in ("StateGraph", "topological_order"):
        from sealstash import graph
        return getattr(graph, name)

    if name in ("Stash", "MemoryStashBackend", "FileStashBackend"):
        from sealstash import stash
        return getattr(stash, name)

    if name in ("Consignment", "ConsignmentBuilder", "ConsignmentValidator",
                "ValidationReport", "ValidationStatus"):
        from sealstash import consignment
        return getattr(consignment, name)

    if name in ("Disclosure",):
        from sealstash import disclosure
        return getattr(disclosure, name)

    if name in ("ContractState", "contract_state"):
        from sealstash import state
        return getattr(state, name)

    if name in ("MemoryLedger", "Transaction", "TxOutput"):
        from sealstash import ledger
        return getattr(ledger, name)

    if name in ("ConsignmentError", "SchemaViolation", "UnknownAncestor", "SealAlreadyClosed",
                "AnchorInvalid", "GraphCycle", "UnknownSchema", "MalformedEncoding",
                "SealNotSpent", "SealUnresolvable", "TransactionUnavailable",
                "InvariantViolation", "Reject", "RejectKind"):
        from sealstash import hardening
        return getattr(hardening, name)

    raise AttributeError(f"module 'sealstash' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Schema
    "Schema",
    "SchemaEngine",
    "SchemaRegistry",
    # Seals and commitments
    "Outpoint",
    "SealDefinition",
    "Anchor",
    "close",
    "verify",
    # Nodes
    "Genesis",
    "Transition",
    "Extension",
    # Storage
    "StateGraph",
    "Stash",
    # Transfer
    "Consignment",
    "ConsignmentBuilder",
    "ConsignmentValidator",
    "Disclosure",
    # Errors
    "ConsignmentError",
    "InvariantViolation",
]
