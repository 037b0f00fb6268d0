"""Error taxonomy, validators and invariant checks."""

import threading
from enum import Enum

import pytest

from sealstash.hardening import (
    AnchorInvalid,
    ConsignmentError,
    GraphCycle,
    InvariantChecker,
    InvariantViolation,
    MalformedEncoding,
    Reject,
    RejectKind,
    SchemaViolation,
    SealAlreadyClosed,
    SealNotSpent,
    SealUnresolvable,
    ThreadSafeDict,
    TransactionUnavailable,
    UnknownAncestor,
    UnknownSchema,
    Validators,
)


class TestErrorTaxonomy:

    @pytest.mark.parametrize("error,code", [
        (SchemaViolation(Reject(RejectKind.ARITY_MISMATCH, "x"), "n"), "SCHEMA_VIOLATION"),
        (UnknownAncestor("n"), "UNKNOWN_ANCESTOR"),
        (SealAlreadyClosed("tx:0", "a", "b"), "SEAL_ALREADY_CLOSED"),
        (AnchorInvalid("n"), "ANCHOR_INVALID"),
        (GraphCycle("n"), "GRAPH_CYCLE"),
        (UnknownSchema("s"), "UNKNOWN_SCHEMA"),
        (MalformedEncoding("bad"), "MALFORMED_ENCODING"),
        (SealNotSpent("n", "tx:0"), "SEAL_NOT_SPENT"),
        (SealUnresolvable("n", "concealed"), "SEAL_UNRESOLVABLE"),
        (TransactionUnavailable("tx"), "TRANSACTION_UNAVAILABLE"),
    ])
    def test_stable_codes(self, error, code):
        assert isinstance(error, ConsignmentError)
        assert error.code == code

    def test_invariant_violation_is_not_a_rejection(self):
        assert not issubclass(InvariantViolation, ConsignmentError)

    def test_unknown_ancestor_carries_node_id(self):
        e = UnknownAncestor("ab" * 32, referenced_by="cd" * 32, detail="missing")
        assert e.node_id == "ab" * 32
        assert "referenced by" in str(e)
        assert "missing" in str(e)

    def test_reject_str_names_kind_and_field(self):
        r = Reject(RejectKind.TYPE_MISMATCH, "expected u8", "global_state.precision")
        assert str(r) == "TypeMismatch [global_state.precision]: expected u8"


class TestValidators:

    def test_u64_bounds(self):
        assert Validators.validate_u64(0).is_valid
        assert Validators.validate_u64(Validators.MAX_U64).is_valid
        assert not Validators.validate_u64(Validators.MAX_U64 + 1).is_valid
        assert not Validators.validate_u64(-1).is_valid

    def test_u64_rejects_bool(self):
        assert not Validators.validate_u64(True).is_valid

    def test_name(self):
        assert Validators.validate_name("issued_supply").is_valid
        assert not Validators.validate_name("Issued").is_valid
        assert not Validators.validate_name("1abc").is_valid

    def test_hex_length_limit(self):
        assert Validators.validate_hex("00ff", "b", max_bytes=2).is_valid
        assert not Validators.validate_hex("00ff00", "b", max_bytes=2).is_valid
        assert not Validators.validate_hex("0", "b").is_valid

    def test_raise_if_invalid_raises_malformed_encoding(self):
        with pytest.raises(MalformedEncoding, match="amount"):
            Validators.validate_u64("7", "amount").raise_if_invalid()


class _Phase(Enum):
    A = "a"
    B = "b"


class TestInvariantChecker:

    def test_valid_transition_passes(self):
        InvariantChecker.check_state_transition(_Phase.A, _Phase.B, {_Phase.A: {_Phase.B}})

    def test_invalid_transition_raises(self):
        with pytest.raises(InvariantViolation, match="b -> a"):
            InvariantChecker.check_state_transition(_Phase.B, _Phase.A, {_Phase.A: {_Phase.B}})

    def test_append_only(self):
        InvariantChecker.check_append_only("nodes", 2, 3)
        with pytest.raises(InvariantViolation):
            InvariantChecker.check_append_only("nodes", 3, 2)


class TestThreadSafeDict:

    def test_concurrent_setdefault(self):
        d: ThreadSafeDict[int] = ThreadSafeDict()

        def worker(i):
            for k in range(50):
                d.setdefault(f"k{k}", i)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(d) == 50
