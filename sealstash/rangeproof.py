"""
Range Proofs for Concealed Amounts

A concealed fungible state is a bare Pedersen commitment C = g^a h^r. Its
commitment alone balances modulo q for any a, including "negative" amounts
near q, so every concealed amount carries a proof that a lies in [0, 2^64).

The proof decomposes the amount into bits:

    a = sum(b_i * 2^i)        r = sum(r_i * 2^i)  (mod q)
    C_i = g^b_i * h^r_i       prod(C_i^(2^i)) = C

and proves for each bit commitment that it opens to 0 or 1 with a
Fiat-Shamir OR proof of knowing log_h(C_i) or log_h(C_i / g). Each bit is
encoded as [C_i, e0, e1, z0, z1]; the verifier recomputes

    A_k = h^z_k * Y_k^(-e_k)        Y_0 = C_i, Y_1 = C_i / g
    e0 + e1 = H(C, i, C_i, A_0, A_1)  (mod 2^128)

Nonces are derived from the opening, so proving the same opening twice gives
the same proof.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List, Tuple

from sealstash import pedersen
from sealstash.canonical import tagged_hash_bytes

RANGE_BITS = 64
CHALLENGE_BITS = 128

NONCE_TAG = "sealstash:rangeproof:nonce"
CHALLENGE_TAG = "sealstash:rangeproof:challenge"

_ELEMENT_BYTES = pedersen.COMMITMENT_HEX_LEN // 2
_CHALLENGE_HEX_LEN = CHALLENGE_BITS // 4
_CHALLENGE_MOD = 1 << CHALLENGE_BITS


@dataclass(frozen=True)
class BitProof:
    """OR proof that one bit commitment opens to 0 or 1."""
    commitment: int
    e0: int
    e1: int
    z0: int
    z1: int

    def to_list(self) -> List[str]:
        return [
            _element_hex(self.commitment),
            format(self.e0, f"0{_CHALLENGE_HEX_LEN}x"),
            format(self.e1, f"0{_CHALLENGE_HEX_LEN}x"),
            _element_hex(self.z0),
            _element_hex(self.z1),
        ]

    @classmethod
    def from_list(cls, data: Any) -> "BitProof":
        if not isinstance(data, list) or len(data) != 5:
            raise ValueError("bit proof must be a list of five hex strings")
        c, e0, e1, z0, z1 = data
        return cls(
            commitment=_parse_hex(c, pedersen.COMMITMENT_HEX_LEN, pedersen.P),
            e0=_parse_hex(e0, _CHALLENGE_HEX_LEN, _CHALLENGE_MOD),
            e1=_parse_hex(e1, _CHALLENGE_HEX_LEN, _CHALLENGE_MOD),
            z0=_parse_hex(z0, pedersen.COMMITMENT_HEX_LEN, pedersen.Q),
            z1=_parse_hex(z1, pedersen.COMMITMENT_HEX_LEN, pedersen.Q),
        )


@dataclass(frozen=True)
class RangeProof:
    """Proof that a Pedersen commitment hides an amount below 2^64."""
    bits: Tuple[BitProof, ...]

    def to_list(self) -> List[List[str]]:
        return [b.to_list() for b in self.bits]

    @classmethod
    def from_list(cls, data: Any) -> "RangeProof":
        if not isinstance(data, list) or len(data) != RANGE_BITS:
            raise ValueError(f"range proof must hold {RANGE_BITS} bit proofs")
        return cls(bits=tuple(BitProof.from_list(b) for b in data))


def _element_hex(value: int) -> str:
    return format(value, f"0{pedersen.COMMITMENT_HEX_LEN}x")


def _parse_hex(value: Any, width: int, bound: int) -> int:
    if not isinstance(value, str) or len(value) != width or value != value.lower():
        raise ValueError(f"expected {width} lowercase hex chars")
    try:
        parsed = int(value, 16)
    except ValueError:
        raise ValueError(f"expected {width} lowercase hex chars")
    if parsed >= bound:
        raise ValueError("value out of range")
    return parsed


def _challenge(commitment: int, index: int, bit_commitment: int, a0: int, a1: int) -> int:
    msg = b"".join(v.to_bytes(_ELEMENT_BYTES, "big") for v in (commitment, bit_commitment, a0, a1))
    digest = tagged_hash_bytes(CHALLENGE_TAG, msg + index.to_bytes(1, "big"))
    return int.from_bytes(digest[:CHALLENGE_BITS // 8], "big")


def _nonce(seed: bytes, label: bytes, index: int, bits: int) -> int:
    """Deterministic scalar of ``bits`` bits derived from the opening."""
    material = b""
    counter = 0
    while len(material) * 8 < bits + 128:
        material += tagged_hash_bytes(NONCE_TAG, seed + label + bytes([index, counter]))
        counter += 1
    return int.from_bytes(material, "big")


@lru_cache(maxsize=4096)
def prove(amount: int, blinding: int) -> RangeProof:
    """Range proof for ``commit(amount, blinding)``."""
    if not 0 <= amount < (1 << RANGE_BITS):
        raise ValueError(f"amount must be below 2^{RANGE_BITS}")
    P, Q = pedersen.P, pedersen.Q
    r = blinding % Q
    commitment = int(pedersen.commit(amount, r), 16)
    seed = amount.to_bytes(8, "big") + r.to_bytes(_ELEMENT_BYTES, "big")

    blindings = [_nonce(seed, b"r", i, Q.bit_length()) % Q for i in range(1, RANGE_BITS)]
    r0 = (r - sum(ri << i for i, ri in enumerate(blindings, start=1))) % Q
    blindings.insert(0, r0)

    bits: List[BitProof] = []
    for i, ri in enumerate(blindings):
        b = (amount >> i) & 1
        ci = (pow(pedersen.G, b, P) * pedersen.h_pow(ri)) % P
        ci_inv = pow(ci, -1, P)
        # inverses of Y_0 = C_i and Y_1 = C_i / g
        y_inv = (ci_inv, (ci_inv * pedersen.G) % P)

        k = _nonce(seed, b"k", i, Q.bit_length()) % Q
        e_sim = _nonce(seed, b"e", i, CHALLENGE_BITS) % _CHALLENGE_MOD
        z_sim = _nonce(seed, b"z", i, Q.bit_length()) % Q
        a = [0, 0]
        a[b] = pedersen.h_pow(k)
        a[1 - b] = (pedersen.h_pow(z_sim) * pow(y_inv[1 - b], e_sim, P)) % P

        e = _challenge(commitment, i, ci, a[0], a[1])
        e_real = (e - e_sim) % _CHALLENGE_MOD
        z_real = (k + e_real * ri) % Q
        es, zs = [0, 0], [0, 0]
        es[b], zs[b] = e_real, z_real
        es[1 - b], zs[1 - b] = e_sim, z_sim
        bits.append(BitProof(ci, es[0], es[1], zs[0], zs[1]))
    return RangeProof(bits=tuple(bits))


@lru_cache(maxsize=4096)
def verify(commitment_hex: str, proof: RangeProof) -> bool:
    """Check that ``proof`` shows ``commitment_hex`` hides an amount below 2^64."""
    if not pedersen.is_valid_commitment(commitment_hex) or len(proof.bits) != RANGE_BITS:
        return False
    P = pedersen.P
    commitment = int(commitment_hex, 16)
    if not pedersen.in_subgroup(commitment):
        return False

    if not all(0 < bit.commitment < P for bit in proof.bits):
        return False
    recombined = 1
    for bit in reversed(proof.bits):
        recombined = (recombined * recombined * bit.commitment) % P
    if recombined != commitment:
        return False

    for i, bit in enumerate(proof.bits):
        ci_inv = pow(bit.commitment, -1, P)
        a0 = (pedersen.h_pow(bit.z0) * pow(ci_inv, bit.e0, P)) % P
        a1 = (pedersen.h_pow(bit.z1) * pow((ci_inv * pedersen.G) % P, bit.e1, P)) % P
        if (bit.e0 + bit.e1) % _CHALLENGE_MOD != _challenge(commitment, i, bit.commitment, a0, a1):
            return False
    return True
