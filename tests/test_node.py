"""Nodes, assignments, NodeId and concealment."""

import pytest

from sealstash import pedersen
from sealstash.canonical import sha256_bytes
from sealstash.hardening import MalformedEncoding
from sealstash.node import (
    Assignment,
    AssignmentRef,
    ConcealedData,
    ConcealedFungible,
    DataState,
    DeclarativeState,
    Extension,
    FungibleState,
    Genesis,
    NodeType,
    Transition,
    node_from_bytes,
    node_from_dict,
    node_to_bytes,
    state_from_dict,
)
from sealstash.seal import ConcealedSeal, SealDefinition

SCHEMA_ID = sha256_bytes(b"schema")
FUNDING = sha256_bytes(b"funding")


def _genesis(amount=100):
    return Genesis(
        schema_id=SCHEMA_ID,
        global_state={"ticker": ("TST",)},
        owned_state={
            "assets": (Assignment(SealDefinition(FUNDING, 0, 11), FungibleState(amount, 5)),),
            "notes": (Assignment(SealDefinition(FUNDING, 1, 12), DataState.new("hello")),),
            "votes": (Assignment(SealDefinition(FUNDING, 2, 13), DeclarativeState()),),
        },
        public_rights=("inflation",),
    )


def _transition(genesis):
    return Transition(
        kind="transfer",
        contract_id=genesis.contract_id,
        inputs=(AssignmentRef(genesis.node_id, "assets", 0),),
        metadata={"memo": ("hi",)},
        owned_state={"assets": (Assignment(SealDefinition(None, 1, 21), FungibleState(100, 5)),)},
    )


class TestStates:

    def test_fungible_conceals_to_commitment(self):
        s = FungibleState(10, 3)
        concealed = s.conceal()
        assert isinstance(concealed, ConcealedFungible)
        assert concealed.commitment() == pedersen.commit(10, 3)
        assert concealed.verify_range()
        assert s.conceal() == concealed
        assert s.commit_dict() == s.conceal().commit_dict()

    def test_data_conceals_to_salted_hash(self):
        a, b = DataState.new("x"), DataState.new("x")
        assert a.commitment() != b.commitment()
        assert isinstance(a.conceal(), ConcealedData)

    def test_declarative_has_nothing_to_hide(self):
        d = DeclarativeState()
        assert d.conceal() is d
        assert d.commitment() is None

    def test_fungible_amount_must_be_u64(self):
        with pytest.raises(MalformedEncoding):
            FungibleState(1 << 64, 1)
        with pytest.raises(MalformedEncoding):
            FungibleState(1, pedersen.Q)

    @pytest.mark.parametrize("state", [
        FungibleState(7, 9),
        FungibleState(7, 9).conceal(),
        DataState.new("v"),
        DeclarativeState(),
    ])
    def test_state_dict_round_trip(self, state):
        assert state_from_dict(state.to_dict()) == state

    def test_unknown_state_encoding(self):
        with pytest.raises(MalformedEncoding):
            state_from_dict({"type": "fungible", "amount": 1})

    def test_concealed_amount_requires_range_proof(self):
        encoded = FungibleState(7, 9).conceal().to_dict()
        with pytest.raises(MalformedEncoding):
            state_from_dict({"type": "fungible", "commitment": encoded["commitment"]})
        with pytest.raises(MalformedEncoding, match="range_proof"):
            state_from_dict(dict(encoded, range_proof=encoded["range_proof"][1:]))


class TestAssignment:

    def test_reveal_requires_matching_seal(self):
        seal = SealDefinition(FUNDING, 0, 1)
        concealed = Assignment(seal, FungibleState(1, 1)).conceal_seal()
        assert isinstance(concealed.seal, ConcealedSeal)
        assert concealed.reveal_seal(seal).seal == seal
        with pytest.raises(ValueError):
            concealed.reveal_seal(SealDefinition(FUNDING, 0, 2))

    def test_ref_ordering_and_str(self):
        a = AssignmentRef("a" * 64, "assets", 1)
        b = AssignmentRef("a" * 64, "assets", 0)
        assert sorted([a, b]) == [b, a]
        assert str(a) == f"{'a' * 64}/assets/1"

    def test_ref_index_bounds(self):
        with pytest.raises(MalformedEncoding):
            AssignmentRef.from_dict({"node_id": "a" * 64, "owned_type": "assets", "index": 1 << 16})


class TestNodeId:

    def test_genesis_id_is_contract_id(self):
        g = _genesis()
        assert g.contract_id == g.node_id
        assert g.node_type is NodeType.GENESIS
        assert g.is_genesis

    def test_id_is_deterministic(self):
        g = _genesis()
        assert node_from_dict(g.to_dict()).node_id == g.node_id

    def test_content_change_changes_id(self):
        assert _genesis(100).node_id != _genesis(101).node_id

    def test_concealment_preserves_id(self):
        g = _genesis()
        concealed = g.conceal()
        assert concealed.node_id == g.node_id
        assert all(not a.seal.is_revealed for _t, _i, a in concealed.assignments())
        assert node_from_dict(concealed.to_dict()).node_id == g.node_id

    def test_partial_conceal(self):
        g = _genesis()
        partial = g.conceal(reveal_states=[("assets", 0)], reveal_seals=[("assets", 0)])
        assert partial.output("assets", 0) == g.output("assets", 0)
        assert not partial.output("notes", 0).state.is_revealed
        assert partial.node_id == g.node_id

    def test_reveal_seal_restores(self):
        g = _genesis()
        seal = g.output("assets", 0).seal
        concealed = g.conceal_seal("assets", 0)
        assert concealed.find_seal(seal.conceal()) == ("assets", 0)
        assert concealed.reveal_seal("assets", 0, seal).to_dict() == g.to_dict()

    def test_reveal_seal_missing_output(self):
        with pytest.raises(KeyError):
            _genesis().reveal_seal("assets", 5, SealDefinition(FUNDING, 0, 1))


class TestMergeReveal:

    def test_takes_reveals_from_both_copies(self):
        g = _genesis()
        left = g.conceal(reveal_states=[("assets", 0)], reveal_seals=[("notes", 0)])
        right = g.conceal(reveal_seals=[("assets", 0)], reveal_states=[("notes", 0)])
        merged = left.merge_reveal(right)
        assert merged.node_id == g.node_id
        assert merged.output("assets", 0) == g.output("assets", 0)
        assert merged.output("notes", 0) == g.output("notes", 0)
        assert not merged.output("votes", 0).seal.is_revealed

    def test_nothing_new_returns_self(self):
        g = _genesis()
        concealed = g.conceal()
        assert g.merge_reveal(concealed) is g
        assert concealed.merge_reveal(concealed.conceal()) is concealed

    def test_different_nodes_do_not_merge(self):
        g = _genesis()
        with pytest.raises(ValueError):
            g.merge_reveal(_genesis(amount=101))
        with pytest.raises(ValueError):
            g.merge_reveal(_transition(g))


class TestNodeShapes:

    def test_transition_parents_and_inputs(self):
        g = _genesis()
        t = _transition(g)
        assert t.parents() == {g.node_id}
        assert t.inputs_refs() == (AssignmentRef(g.node_id, "assets", 0),)
        assert t.node_type is NodeType.TRANSITION

    def test_duplicate_inputs_rejected(self):
        g = _genesis()
        ref = AssignmentRef(g.node_id, "assets", 0)
        with pytest.raises(MalformedEncoding):
            Transition(kind="transfer", contract_id=g.contract_id, inputs=(ref, ref))

    def test_extension_parents_are_redeemed_nodes(self):
        g = _genesis()
        e = Extension(kind="issue", contract_id=g.contract_id, redeems={"inflation": g.node_id})
        assert e.parents() == {g.node_id}
        assert e.inputs_refs() == ()

    def test_assignments_iterate_in_type_order(self):
        types = [t for t, _i, _a in _genesis().assignments()]
        assert types == sorted(types)

    def test_output_refs(self):
        g = _genesis()
        assert AssignmentRef(g.node_id, "notes", 0) in g.output_refs()
        assert g.output("notes", 1) is None


class TestNodeEncoding:

    @pytest.mark.parametrize("make", [
        _genesis,
        lambda: _transition(_genesis()),
        lambda: Extension(kind="issue", contract_id=_genesis().contract_id,
                          redeems={"inflation": _genesis().node_id}, public_rights=("inflation",)),
    ])
    def test_bytes_round_trip(self, make):
        node = make()
        data = node_to_bytes(node)
        decoded = node_from_bytes(data)
        assert decoded.node_id == node.node_id
        assert node_to_bytes(decoded) == data

    def test_unknown_type(self):
        with pytest.raises(MalformedEncoding):
            node_from_dict({"type": "mystery"})

    def test_extra_keys_rejected(self):
        d = _genesis().to_dict()
        d["extra"] = 1
        with pytest.raises(MalformedEncoding):
            node_from_dict(d)

    def test_unsorted_rights_rejected(self):
        d = _genesis().to_dict()
        d["public_rights"] = ["zeta", "alpha"]
        with pytest.raises(MalformedEncoding):
            node_from_dict(d)

    def test_transition_without_inputs_rejected(self):
        d = _transition(_genesis()).to_dict()
        d["inputs"] = []
        with pytest.raises(MalformedEncoding):
            node_from_dict(d)
