"""End-to-end consignment building, validation and admission."""

import pytest

from sealstash import fungible, pedersen, rangeproof
from sealstash.commitment import Anchor
from sealstash.config import get_config_manager
from sealstash.consignment import (
    Consignment,
    ConsignmentBuilder,
    ConsignmentValidator,
    ValidationStatus,
)
from sealstash.encoding import encode_document
from sealstash.hardening import (
    AnchorInvalid,
    MalformedEncoding,
    RejectKind,
    SchemaViolation,
    SealAlreadyClosed,
    SealNotSpent,
    TransactionUnavailable,
    UnknownAncestor,
    UnknownSchema,
)
from sealstash.ledger import MemoryLedger
from sealstash.node import Assignment, AssignmentRef, ConcealedFungible, FungibleState, Transition
from sealstash.schema import SchemaRegistry
from sealstash.seal import ConcealedSeal, SealDefinition
from sealstash.stash import Stash

FULL_HISTORY = [
    ValidationStatus.RECEIVED,
    ValidationStatus.DECOMPOSING,
    ValidationStatus.CONTEXT_CHECKED,
    ValidationStatus.SCHEMA_CHECKED,
    ValidationStatus.SEAL_CHECKED,
    ValidationStatus.ADMITTED,
]


def _fresh_recipient(ledger):
    return ConsignmentValidator(Stash(), SchemaRegistry(), ledger)


def _inflating_transfer(chain, prev, extra=1):
    """A transfer creating ``extra`` units out of nothing, anchored and committed."""
    (ref, state), = fungible.revealed_inputs(prev)
    node = Transition(
        kind="transfer", contract_id=prev.contract_id, inputs=(ref,),
        owned_state={"assets": (
            Assignment(SealDefinition.new(vout=1), FungibleState(state.amount + extra, state.blinding)),
        )},
    )
    _tx, anchor = chain.anchor(prev.contract_id, [node], [chain.outpoint_of(ref)])
    return node, anchor


def _transfer_with_change(chain, prev, paid, change):
    """Spend the single revealed output of ``prev`` into ``paid`` (revealed) and ``change``."""
    (ref, _state), = fungible.revealed_inputs(prev)
    node = Transition(
        kind="transfer", contract_id=prev.contract_id, inputs=(ref,),
        owned_state={"assets": (
            Assignment(SealDefinition.new(vout=1), paid),
            Assignment(SealDefinition.new(vout=2), change),
        )},
    )
    _tx, anchor = chain.anchor(prev.contract_id, [node], [chain.outpoint_of(ref)])
    return node, anchor

    return node, anchor


class TestEndToEnd:

    def test_transfer_is_admitted(self, chain, builder, recipient):
        g = chain.issue([100])
        t1, _a1 = chain.transfer(g, [60, 40])

        consignment = builder.build(g.contract_id, t1.node_id)
        report = recipient.validate(consignment.to_bytes())

        assert report.accepted, report.error
        assert report.history == FULL_HISTORY
        assert report.admitted == 2
        assert report.contract_id == g.contract_id
        assert report.consignment_id == consignment.consignment_id
        assert recipient.stash.frontier(g.contract_id) == set(t1.output_refs())
        assert recipient.schemas.has(chain.schema_id)

    def test_concealment_hides_history_but_keeps_ids(self, chain, builder):
        g = chain.issue([70, 30])
        t1, _ = chain.transfer(g, [70], inputs=[g.output_refs()[0]])
        t2, _ = chain.transfer(t1, [50, 20])

        c = builder.build(g.contract_id, t2.node_id)
        assert [n.node_id for n in c.nodes()] == [g.node_id, t1.node_id, t2.node_id]
        assert not any(a.state.is_revealed for _t, _i, a in c.genesis.assignments())
        # the unspent genesis output keeps its seal hidden
        assert not c.genesis.output("assets", 1).seal.is_revealed
        assert c.genesis.output("assets", 0).seal.is_revealed
        revealed_t2 = c.bundles[-1].nodes[0]
        assert all(a.is_revealed for _t, _i, a in revealed_t2.assignments())

    def test_chain_of_transfers_and_onward_consignment(self, chain, builder, ledger):
        g = chain.issue([100])
        t1, _ = chain.transfer(g, [100])
        t2, _ = chain.transfer(t1, [10, 90])

        first = _fresh_recipient(ledger)
        assert first.validate(builder.build(g.contract_id, t2.node_id)).accepted

        onward = ConsignmentBuilder(first.stash, first.schemas).build(g.contract_id, t2.node_id)
        second = _fresh_recipient(ledger)
        report = second.validate(onward.to_bytes())
        assert report.accepted, report.error
        assert second.stash.frontier(g.contract_id) == set(t2.output_refs())

    def test_extension(self, chain, builder, recipient):
        g = chain.issue([100], inflatable=True)
        ext = fungible.inflate(g.contract_id, g.node_id, [(SealDefinition.new(vout=1), 50)])
        _tx, anchor = chain.anchor(g.contract_id, [ext])
        assert chain.stash.admit(g.contract_id, ext, anchor)

        report = recipient.validate(builder.build(g.contract_id, ext.node_id))
        assert report.accepted, report.error
        assert set(ext.output_refs()) <= recipient.stash.frontier(g.contract_id)

    def test_extension_without_declared_right(self, chain, recipient):
        g = chain.issue([100])
        ext = fungible.inflate(g.contract_id, g.node_id, [(SealDefinition.new(vout=1), 50)])
        _tx, anchor = chain.anchor(g.contract_id, [ext])
        report = recipient.validate(chain.consignment(g, [(anchor, [ext])]))
        assert isinstance(report.error, SchemaViolation)

    def test_sibling_transfers_into_one_stash(self, chain, builder, recipient):
        g = chain.issue([70, 30])
        t1, _ = chain.transfer(g, [70], inputs=[g.output_refs()[0]])
        t2, _ = chain.transfer(g, [30], inputs=[g.output_refs()[1]])

        first = recipient.validate(builder.build(g.contract_id, t1.node_id))
        assert first.accepted, first.error
        assert not recipient.stash.get(g.node_id).output("assets", 1).seal.is_revealed

        second_data = builder.build(g.contract_id, t2.node_id).to_bytes()
        second = recipient.validate(second_data)
        assert second.accepted, second.error
        assert second.admitted == 1

        stored = recipient.stash.get(g.node_id)
        assert all(a.seal.is_revealed for _t, _i, a in stored.assignments())
        assert recipient.stash.frontier(g.contract_id) == set(t1.output_refs()) | set(t2.output_refs())

        digest = recipient.stash.state_digest()
        again = recipient.validate(second_data)
        assert again.accepted and again.admitted == 0
        assert recipient.stash.state_digest() == digest

    def test_concealed_change_is_accepted(self, chain, recipient):
        g = chain.issue([100])
        (_ref, state), = fungible.revealed_inputs(g)
        paid = FungibleState(60, pedersen.random_blinding())
        change = FungibleState(40, pedersen.balancing_blinding([state.blinding], [paid.blinding]))
        t1, a1 = _transfer_with_change(chain, g, paid, change.conceal())

        report = recipient.validate(chain.consignment(g, [(a1, [t1])]))
        assert report.accepted, report.error
        assert not recipient.stash.get(t1.node_id).output("assets", 1).state.is_revealed

    def test_concealed_recipient_seal_is_revealed_on_accept(self, chain, builder, recipient):
        g = chain.issue([100])
        mine = SealDefinition.new(vout=1)
        t1, _ = chain.transfer(g, [60, 40], seals=[ConcealedSeal(mine.conceal()), SealDefinition.new(vout=2)])

        report = recipient.validate(builder.build(g.contract_id, t1.node_id), reveal=[mine])
        assert report.accepted, report.error
        stored = recipient.stash.get(t1.node_id)
        assert stored.output("assets", 0).seal == mine
        assert stored.node_id == t1.node_id


class TestRejections:

    def test_double_spend_within_consignment(self, chain):
        g = chain.issue([100])
        t1a, a1a = chain.transfer(g, [100], admit=False)
        t1b, a1b = chain.transfer(g, [30, 70], admit=False)
        for bundles in ([(a1a, [t1a]), (a1b, [t1b])], [(a1b, [t1b]), (a1a, [t1a])]):
            report = _fresh_recipient(chain.ledger).validate(chain.consignment(g, bundles))
            assert isinstance(report.error, SealAlreadyClosed)

    def test_double_spend_across_consignments(self, chain, recipient):
        g = chain.issue([100])
        t1a, a1a = chain.transfer(g, [100], admit=False)
        t1b, a1b = chain.transfer(g, [30, 70], admit=False)

        assert recipient.validate(chain.consignment(g, [(a1a, [t1a])], t1a.output_refs())).accepted
        digest = recipient.stash.state_digest()
        report = recipient.validate(chain.consignment(g, [(a1b, [t1b])], t1b.output_refs()))
        assert isinstance(report.error, SealAlreadyClosed)
        assert recipient.stash.state_digest() == digest

    def test_failed_consignment_admits_nothing(self, chain, recipient):
        g = chain.issue([100])
        t1, a1 = chain.transfer(g, [100], admit=False)
        bad, bad_anchor = _inflating_transfer(chain, t1)
        empty = recipient.stash.state_digest()

        report = recipient.validate(chain.consignment(g, [(a1, [t1]), (bad_anchor, [bad])]))
        assert report.status is ValidationStatus.REJECTED
        assert report.history[-2:] == [ValidationStatus.CONTEXT_CHECKED, ValidationStatus.REJECTED]
        assert isinstance(report.error, SchemaViolation)
        assert report.error.node_id == bad.node_id
        assert recipient.stash.state_digest() == empty
        assert not recipient.stash.has(g.node_id)
        assert not recipient.stash.has(t1.node_id)

    def test_unspent_seal(self, chain, recipient):
        g = chain.issue([100])
        t1, a1 = chain.transfer(g, [100], admit=False, spend=False)
        report = recipient.validate(chain.consignment(g, [(a1, [t1])]))
        assert isinstance(report.error, SealNotSpent)
        assert report.history[-2:] == [ValidationStatus.SCHEMA_CHECKED, ValidationStatus.REJECTED]

    def test_unspent_seal_allowed_when_configured(self, chain, recipient):
        get_config_manager().set("validation.require_seal_spend", False)
        g = chain.issue([100])
        t1, a1 = chain.transfer(g, [100], admit=False, spend=False)
        assert recipient.validate(chain.consignment(g, [(a1, [t1])])).accepted

    def test_missing_transaction(self, chain, builder):
        g = chain.issue([100])
        t1, _ = chain.transfer(g, [100])
        t2, _ = chain.transfer(t1, [100])
        blind = _fresh_recipient(MemoryLedger())
        for conceal in (True, False):
            report = blind.validate(builder.build(g.contract_id, t2.node_id, conceal=conceal))
            assert isinstance(report.error, TransactionUnavailable)
        assert blind.stash.contracts() == []

    def test_tampered_node(self, chain, builder, recipient):
        g = chain.issue([100])
        t1, _ = chain.transfer(g, [100])
        t2, _ = chain.transfer(t1, [100])
        doc = builder.build(g.contract_id, t2.node_id).to_dict()
        doc["bundles"][0]["nodes"][0]["metadata"] = {"memo": ["rewritten"]}

        report = recipient.validate(encode_document(doc))
        assert isinstance(report.error, UnknownAncestor)
        assert report.error.node_id == t1.node_id

    def test_node_outside_its_anchor(self, chain, recipient):
        g = chain.issue([60, 40])
        t1, a1 = chain.transfer(g, [60], inputs=[g.output_refs()[0]], admit=False)
        t2, _a2 = chain.transfer(g, [40], inputs=[g.output_refs()[1]], admit=False)
        report = recipient.validate(chain.consignment(g, [(a1, [t1, t2])]))
        assert isinstance(report.error, AnchorInvalid)

    def test_anchor_names_transaction_without_commitment(self, chain, recipient):
        g = chain.issue([100])
        t1, a1 = chain.transfer(g, [100], admit=False)
        unrelated = chain.ledger.fund(1)
        forged = Anchor.from_dict(dict(a1.to_dict(), txid=unrelated.txid))
        report = recipient.validate(chain.consignment(g, [(forged, [t1])]))
        assert isinstance(report.error, AnchorInvalid)
        assert report.history[-2:] == [ValidationStatus.DECOMPOSING, ValidationStatus.REJECTED]

    def test_schema_mismatch(self, chain, recipient):
        g = chain.issue([100])
        c = chain.consignment(g, [])
        forged = Consignment(schema_id="ab" * 32, schema=c.schema, genesis=g)
        assert isinstance(recipient.validate(forged).error, UnknownSchema)

    def test_contract_bound_to_other_schema(self, chain, recipient):
        g = chain.issue([100])
        recipient.stash.admit(g.contract_id, g)
        recipient.stash._records[g.contract_id].schema_id = "cd" * 32
        report = recipient.validate(chain.consignment(g, []))
        assert isinstance(report.error, UnknownSchema)

    def test_endpoint_spent_inside_consignment(self, chain, recipient):
        g = chain.issue([100])
        t1, a1 = chain.transfer(g, [100], admit=False)
        report = recipient.validate(chain.consignment(g, [(a1, [t1])], g.output_refs()))
        assert isinstance(report.error, MalformedEncoding)

    def test_endpoint_outside_consignment(self, chain, recipient):
        g = chain.issue([100])
        t1, a1 = chain.transfer(g, [100], admit=False)
        outside = AssignmentRef("ef" * 32, "assets", 0)
        report = recipient.validate(chain.consignment(g, [(a1, [t1])], [outside]))
        assert isinstance(report.error, UnknownAncestor)

    def test_size_limit(self, chain, builder, recipient):
        g = chain.issue([100])
        t1, _ = chain.transfer(g, [100])
        get_config_manager().set("validation.max_consignment_nodes", 1)
        report = recipient.validate(builder.build(g.contract_id, t1.node_id).to_bytes())
        assert isinstance(report.error, MalformedEncoding)

    def test_garbage_bytes(self, recipient):
        report = recipient.validate(b"\x00not a consignment")
        assert report.history == [ValidationStatus.RECEIVED, ValidationStatus.DECOMPOSING,
                                  ValidationStatus.REJECTED]
        assert report.to_dict()["error"]["code"] == "MALFORMED_ENCODING"
        with pytest.raises(MalformedEncoding):
            recipient.accept(b"\x00not a consignment")


    def test_concealed_amount_wrapping_the_group_order(self, chain, recipient):
        g = chain.issue([100])
        (_ref, state), = fungible.revealed_inputs(g)
        paid = FungibleState(1000, pedersen.random_blinding())
        r = pedersen.balancing_blinding([state.blinding], [paid.blinding])
        # 1000 + (q - 900) == 100 in the exponent
        forged = ConcealedFungible(pedersen.commit(pedersen.Q - 900, r), rangeproof.prove(5, r))
        t1, a1 = _transfer_with_change(chain, g, paid, forged)

        report = recipient.validate(chain.consignment(g, [(a1, [t1])]))
        assert isinstance(report.error, SchemaViolation)
        assert report.error.reason.kind is RejectKind.PREDICATE_VIOLATION
        assert "range proof" in report.error.reason.detail
        assert not recipient.stash.has(t1.node_id)


class TestProperties:

    def test_idempotent(self, chain, builder, recipient):
        g = chain.issue([100])
        t1, _ = chain.transfer(g, [50, 50])
        data = builder.build(g.contract_id, t1.node_id).to_bytes()
        assert recipient.validate(data).admitted == 2
        digest = recipient.stash.state_digest()
        again = recipient.validate(data)
        assert again.accepted and again.admitted == 0
        assert recipient.stash.state_digest() == digest

    def test_build_is_deterministic(self, chain, builder):
        g = chain.issue([100])
        t1, _ = chain.transfer(g, [50, 50])
        first = builder.build(g.contract_id, t1.node_id)
        second = builder.build(g.contract_id, t1.node_id)
        assert first.to_bytes() == second.to_bytes()
        assert first.consignment_id == second.consignment_id

    def test_validation_is_deterministic(self, chain, builder, ledger):
        g = chain.issue([100])
        t1, _ = chain.transfer(g, [50, 50])
        t2, _ = chain.transfer(t1, [50], inputs=[t1.output_refs()[0]])
        data = builder.build(g.contract_id, t2.node_id).to_bytes()
        a, b = _fresh_recipient(ledger), _fresh_recipient(ledger)
        assert a.validate(data).accepted and b.validate(data).accepted
        assert a.stash.state_digest() == b.stash.state_digest()

    def test_minimal_and_full_agree(self, chain, builder, ledger):
        g = chain.issue([60, 40])
        t1, _ = chain.transfer(g, [60], inputs=[g.output_refs()[0]])
        chain.transfer(g, [40], inputs=[g.output_refs()[1]])
        t3, _ = chain.transfer(t1, [60])

        minimal = builder.build(g.contract_id, t3.node_id)
        full = builder.build(g.contract_id, t3.node_id, conceal=False)
        assert minimal.node_count() < full.node_count()
        assert _fresh_recipient(ledger).validate(minimal).accepted
        assert _fresh_recipient(ledger).validate(full).accepted

    def test_minimal_and_full_reject_bad_history(self, chain, builder, ledger):
        g = chain.issue([100])
        t1, _ = chain.transfer(g, [100])
        bad, bad_anchor = _inflating_transfer(chain, t1)
        # admitted without schema checks
        assert chain.stash.admit(g.contract_id, bad, bad_anchor)
        chain.nodes[bad.node_id] = bad
        chain.anchors[bad.node_id] = bad_anchor
        child, _ = chain.transfer(bad, [101])

        for conceal in (True, False):
            receiver = _fresh_recipient(ledger)
            report = receiver.validate(builder.build(g.contract_id, child.node_id, conceal=conceal))
            assert isinstance(report.error, SchemaViolation)
            assert report.error.node_id == bad.node_id
            assert receiver.stash.contracts() == []

    def test_round_trip_bytes(self, chain, builder):
        g = chain.issue([100])
        t1, _ = chain.transfer(g, [100])
        c = builder.build(g.contract_id, t1.node_id)
        assert Consignment.from_bytes(c.to_bytes()).to_bytes() == c.to_bytes()

    def test_builder_rejects_foreign_target(self, chain, builder):
        g = chain.issue([100])
        other = chain.issue([5])
        with pytest.raises(UnknownAncestor):
            builder.build(g.contract_id, other.node_id)

    def test_accept_raises(self, chain, recipient):
        g = chain.issue([100])
        t1, a1 = chain.transfer(g, [100], admit=False, spend=False)
        with pytest.raises(SealNotSpent):
            recipient.accept(chain.consignment(g, [(a1, [t1])]))
