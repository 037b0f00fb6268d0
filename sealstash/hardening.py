"""
sealstash Error Taxonomy and Hardening Utilities

Every consignment is untrusted input. This module defines the typed failures
surfaced to callers and the defensive-programming helpers used by the engine:

1. Consignment rejection taxonomy (terminal, never retried internally)
2. Internal invariant violations (loud, never converted into rejections)
3. Input validators with ValidationResult objects
4. Constant-time comparisons
5. Thread-safety primitives

Security Model:
    - All inputs are untrusted until validated
    - All digest comparisons use constant-time comparisons
    - All stash mutations are atomic per contract
    - A rejected consignment leaves no trace in the stash

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hmac
import re
import secrets
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Set,
    TypeVar,
)

from sealstash.observability import Layer, get_logger

logger = get_logger("hardening", Layer.STASH)


# =============================================================================
# SCHEMA REJECTION REASONS
# =============================================================================

class RejectKind(Enum):
    """Typed reasons produced by the Schema Engine."""
    UNKNOWN_FIELD_TYPE = "UnknownFieldType"
    ARITY_MISMATCH = "ArityMismatch"
    PREDICATE_VIOLATION = "PredicateViolation"
    UNKNOWN_TRANSITION_KIND = "UnknownTransitionKind"
    TYPE_MISMATCH = "TypeMismatch"


@dataclass(frozen=True)
class Reject:
    """A schema rejection: what kind of rule failed and where."""
    kind: RejectKind
    detail: str
    field: str = ""

    def __str__(self) -> str:
        where = f" [{self.field}]" if self.field else ""
        return f"{self.kind.value}{where}: {self.detail}"


# =============================================================================
# CONSIGNMENT ERROR TYPES
# =============================================================================

class ConsignmentError(Exception):
    """
    Base class for terminal rejections of untrusted input.

    Every subclass carries a stable ``code`` so callers can decide whether
    to re-request data (e.g. refetch a transaction) or abandon the transfer.
    """
    code = "CONSIGNMENT_ERROR"

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message)


class SchemaViolation(ConsignmentError):
    """A node does not satisfy its contract schema."""
    code = "SCHEMA_VIOLATION"

    def __init__(self, reason: Reject, node_id: Optional[str] = None):
        self.reason = reason
        super().__init__(f"schema violation in node {node_id}: {reason}", node_id)


class UnknownAncestor(ConsignmentError):
    """A referenced node is neither in the stash nor in the consignment."""
    code = "UNKNOWN_ANCESTOR"

    def __init__(self, node_id: str, referenced_by: Optional[str] = None, detail: str = ""):
        self.referenced_by = referenced_by
        message = f"unknown ancestor {node_id}"
        if referenced_by:
            message += f" referenced by {referenced_by}"
        if detail:
            message += f": {detail}"
        super().__init__(message, node_id)


class SealAlreadyClosed(ConsignmentError):
    """A resolved outpoint is closed by two different nodes."""
    code = "SEAL_ALREADY_CLOSED"

    def __init__(self, outpoint: Any, closed_by: str, attempted_by: str):
        self.outpoint = outpoint
        self.closed_by = closed_by
        self.attempted_by = attempted_by
        super().__init__(
            f"seal {outpoint} already closed by {closed_by}; rejected closing by {attempted_by}",
            attempted_by,
        )


class AnchorInvalid(ConsignmentError):
    """A node's anchor does not bind it to the claimed ledger transaction."""
    code = "ANCHOR_INVALID"

    def __init__(self, node_id: str, detail: str = ""):
        self.detail = detail
        message = f"invalid anchor for node {node_id}"
        if detail:
            message += f": {detail}"
        super().__init__(message, node_id)


class GraphCycle(ConsignmentError):
    """Adding a node would create a cycle in the state graph."""
    code = "GRAPH_CYCLE"

    def __init__(self, node_id: str):
        super().__init__(f"cycle detected at node {node_id}", node_id)


class UnknownSchema(ConsignmentError):
    """A schema id cannot be resolved."""
    code = "UNKNOWN_SCHEMA"

    def __init__(self, schema_id: str, detail: str = ""):
        self.schema_id = schema_id
        message = f"unknown schema {schema_id}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class MalformedEncoding(ConsignmentError):
    """Bytes or documents that do not decode into the strict data model."""
    code = "MALFORMED_ENCODING"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"malformed encoding: {detail}")


class SealNotSpent(ConsignmentError):
    """The witness transaction of a node does not spend a seal the node closes."""
    code = "SEAL_NOT_SPENT"

    def __init__(self, node_id: str, outpoint: Any):
        self.outpoint = outpoint
        super().__init__(f"witness transaction of {node_id} does not spend seal {outpoint}", node_id)


class SealUnresolvable(ConsignmentError):
    """A seal needed for validation is concealed or cannot be dereferenced."""
    code = "SEAL_UNRESOLVABLE"

    def __init__(self, node_id: str, detail: str):
        self.detail = detail
        super().__init__(f"cannot resolve seal for node {node_id}: {detail}", node_id)


class TransactionUnavailable(ConsignmentError):
    """The ledger-access collaborator does not hold a referenced transaction."""
    code = "TRANSACTION_UNAVAILABLE"

    def __init__(self, txid: str):
        self.txid = txid
        super().__init__(f"ledger transaction {txid} is not available")


class InvariantViolation(Exception):
    """Internal invariant violated. Indicates a bug, not bad input."""
    pass


# =============================================================================
# VALIDATION RESULT
# =============================================================================

class ValidationError(Exception):
    """Field-level validation failure."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise MalformedEncoding if validation failed."""
        if not self.is_valid:
            messages = "; ".join(f"{e.field}: {e.message}" for e in self.errors)
            raise MalformedEncoding(messages)

    @classmethod
    def success(cls, sanitized_value: Any = None) -> "ValidationResult":
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> "ValidationResult":
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    HEX_PATTERN = re.compile(r'^(?:[a-f0-9]{2})*$')
    NAME_PATTERN = re.compile(r'^[a-z][a-z0-9_]{0,63}$')

    MAX_U64 = (1 << 64) - 1

    @classmethod
    def validate_hex(cls, value: Any, field_name: str, max_bytes: Optional[int] = None) -> ValidationResult:
        """Validate an even-length lowercase hex string."""
        if not isinstance(value, str) or not cls.HEX_PATTERN.match(value):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be even-length lowercase hex", value)
            ])
        if max_bytes is not None and len(value) // 2 > max_bytes:
            return ValidationResult.failure([
                ValidationError(field_name, f"Too long (max {max_bytes} bytes)", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_name(cls, value: Any, field_name: str = "name") -> ValidationResult:
        """Validate a schema identifier (snake_case, starts with a letter)."""
        if not isinstance(value, str) or not cls.NAME_PATTERN.match(value):
            return ValidationResult.failure([
                ValidationError(field_name, "Must match ^[a-z][a-z0-9_]{0,63}$", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_u64(cls, value: Any, field_name: str = "amount") -> ValidationResult:
        """Validate an unsigned 64-bit integer."""
        # bool is an int subclass
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected integer, got {type(value).__name__}", value)
            ])
        if value < 0 or value > cls.MAX_U64:
            return ValidationResult.failure([
                ValidationError(field_name, "Out of u64 range", value)
            ])
        return ValidationResult.success(value)


# =============================================================================
# CRYPTOGRAPHIC UTILITIES
# =============================================================================

class CryptoUtils:
    """Cryptographic utility functions with security hardening."""

    @staticmethod
    def secure_compare_str(a: str, b: str) -> bool:
        """Constant-time string comparison."""
        return hmac.compare_digest(a.encode(), b.encode())

    @staticmethod
    def secure_compare(a: bytes, b: bytes) -> bool:
        """Constant-time comparison to prevent timing attacks."""
        return hmac.compare_digest(a, b)

    @staticmethod
    def secure_random_hex(n_bytes: int = 32) -> str:
        """Generate cryptographically secure random hex string."""
        return secrets.token_hex(n_bytes)

    @staticmethod
    def secure_random_int(bits: int = 64) -> int:
        """Generate a cryptographically secure random integer."""
        return secrets.randbits(bits)


# =============================================================================
# THREAD SAFETY
# =============================================================================

T = TypeVar('T')


class ThreadSafeDict(Dict[str, T]):
    """Thread-safe dictionary wrapper."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._lock = threading.RLock()

    def __getitem__(self, key: str) -> T:
        with self._lock:
            return super().__getitem__(key)

    def __setitem__(self, key: str, value: T) -> None:
        with self._lock:
            super().__setitem__(key, value)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return super().__contains__(key)

    def __iter__(self):
        with self._lock:
            return iter(list(super().keys()))

    def __len__(self):
        with self._lock:
            return super().__len__()

    def get(self, key: str, default: T = None) -> Optional[T]:
        with self._lock:
            return super().get(key, default)

    def setdefault(self, key: str, default: T = None) -> T:
        with self._lock:
            return super().setdefault(key, default)

    @contextmanager
    def transaction(self):
        """Context manager for atomic multi-operation transactions."""
        with self._lock:
            yield self


# =============================================================================
# STATE MACHINE INVARIANTS
# =============================================================================

def _violation(message: str) -> None:
    logger.critical("Invariant violated", error_code="INVARIANT_VIOLATION", detail=message)
    raise InvariantViolation(message)


class InvariantChecker:
    """Enforces state machine invariants."""

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Dict[Enum, Set[Enum]],
    ) -> None:
        """Verify state transition is valid."""
        valid_targets = valid_transitions.get(current_state, set())
        if target_state not in valid_targets:
            _violation(
                f"Invalid state transition: {current_state.value} -> {target_state.value}. "
                f"Valid targets: {sorted(s.value for s in valid_targets)}"
            )

    @staticmethod
    def check_append_only(field_name: str, old_count: int, new_count: int) -> None:
        """Ensure an append-only collection never shrinks."""
        if new_count < old_count:
            _violation(f"{field_name} is append-only: cannot shrink from {old_count} to {new_count}")
