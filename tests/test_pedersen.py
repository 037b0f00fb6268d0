"""Pedersen value commitments."""

import pytest

from sealstash import pedersen


class TestCommit:

    def test_commitment_is_fixed_width_hex(self):
        c = pedersen.commit(10, pedersen.random_blinding())
        assert len(c) == pedersen.COMMITMENT_HEX_LEN
        assert pedersen.is_valid_commitment(c)

    def test_hiding(self):
        assert pedersen.commit(10, 1) != pedersen.commit(10, 2)

    def test_binding_to_amount(self):
        assert pedersen.commit(10, 7) != pedersen.commit(11, 7)

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            pedersen.commit(-1, 1)

    def test_fixed_base_table(self):
        for e in (0, 1, 63, 64, 2 ** 200 + 5, pedersen.Q - 1, pedersen.Q + 3):
            assert pedersen.h_pow(e) == pow(pedersen.H, e % pedersen.Q, pedersen.P)

    def test_commitments_lie_in_subgroup(self):
        c = int(pedersen.commit(10, 7), 16)
        assert pedersen.in_subgroup(c)
        assert not pedersen.in_subgroup(pedersen.P - c)
        assert not pedersen.in_subgroup(0)

    def test_invalid_encodings(self):
        assert not pedersen.is_valid_commitment("00")
        assert not pedersen.is_valid_commitment("0" * pedersen.COMMITMENT_HEX_LEN)
        assert not pedersen.is_valid_commitment("F" * pedersen.COMMITMENT_HEX_LEN)


class TestBalance:

    def test_transfer_balances(self):
        b_in = [pedersen.random_blinding(), pedersen.random_blinding()]
        inputs = [pedersen.commit(70, b_in[0]), pedersen.commit(30, b_in[1])]
        b_out = [pedersen.random_blinding()]
        b_out.append(pedersen.balancing_blinding(b_in, b_out))
        outputs = [pedersen.commit(55, b_out[0]), pedersen.commit(45, b_out[1])]
        assert pedersen.verify_sum(inputs, outputs)

    def test_inflation_detected(self):
        b = pedersen.random_blinding()
        inputs = [pedersen.commit(100, b)]
        outputs = [pedersen.commit(101, b)]
        assert not pedersen.verify_sum(inputs, outputs)

    def test_issue(self):
        b1 = pedersen.random_blinding()
        b2 = pedersen.balancing_blinding([], [b1])
        outputs = [pedersen.commit(600, b1), pedersen.commit(400, b2)]
        assert pedersen.verify_issue(outputs, 1000)
        assert not pedersen.verify_issue(outputs, 999)

    def test_issue_needs_zero_net_blinding(self):
        outputs = [pedersen.commit(1000, 5)]
        assert not pedersen.verify_issue(outputs, 1000)


class TestBlindingEncoding:

    def test_round_trip(self):
        b = pedersen.random_blinding()
        assert pedersen.blinding_from_hex(pedersen.blinding_to_hex(b)) == b

    @pytest.mark.parametrize("value", ["", "0a", "AB", "zz"])
    def test_non_canonical_rejected(self, value):
        with pytest.raises(ValueError):
            pedersen.blinding_from_hex(value)
