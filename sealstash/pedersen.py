"""
Pedersen Value Commitments

Hidden fungible amounts are carried as Pedersen commitments so that
conservation of value can be verified without revealing any amount:

    C(a, r) = g^a * h^r  (mod p)

over the quadratic-residue subgroup of the RFC 3526 2048-bit MODP group.
Commitments are additively homomorphic in both amount and blinding:

    C(a1, r1) * C(a2, r2) = C(a1 + a2, r1 + r2)

so a transition balances when the product of its input commitments equals
the product of its output commitments, and an issuance balances when the
product of its outputs equals g^supply (blindings summing to zero mod q).

The second generator h is derived by hashing, so nobody knows log_g(h).

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hashlib
import re
import secrets
from functools import lru_cache
from typing import Iterable, List, Tuple

# RFC 3526, group 14
P = int(
    "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD1"
    "29024E088A67CC74020BBEA63B139B22514A08798E3404DD"
    "EF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245"
    "E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7ED"
    "EE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3D"
    "C2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F"
    "83655D23DCA3AD961C62F356208552BB9ED529077096966D"
    "670C354E4ABC9804F1746C08CA18217C32905E462E36CE3B"
    "E39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9"
    "DE2BCBF6955817183995497CEA956AE515D2261898FA0510"
    "15728E5A8AACAA68FFFFFFFFFFFFFFFF",
    16,
)
Q = (P - 1) // 2
G = 4

COMMITMENT_HEX_LEN = 512
BLINDING_RE = re.compile(r"^(0|[1-9a-f][0-9a-f]*)$")


def _derive_generator(label: bytes) -> int:
    material = b""
    counter = 0
    while len(material) * 8 < P.bit_length() + 128:
        material += hashlib.sha256(label + counter.to_bytes(4, "big")).digest()
        counter += 1
    candidate = pow(int.from_bytes(material, "big") % P, 2, P)
    if candidate in (0, 1):
        raise RuntimeError("degenerate generator derivation")
    return candidate


H = _derive_generator(b"sealstash:pedersen:h")

WINDOW_BITS = 6


@lru_cache(maxsize=None)
def _h_table() -> Tuple[Tuple[int, ...], ...]:
    """Rows of H^(d * 2^(WINDOW_BITS * j)) for every window j and digit d."""
    rows = []
    base = H
    for _ in range(-(-Q.bit_length() // WINDOW_BITS)):
        row = [1]
        for _d in range(1, 1 << WINDOW_BITS):
            row.append((row[-1] * base) % P)
        rows.append(tuple(row))
        base = (row[-1] * base) % P
    return tuple(rows)


def h_pow(exponent: int) -> int:
    """H^exponent mod p using the fixed-base window table."""
    e = exponent % Q
    mask = (1 << WINDOW_BITS) - 1
    acc = 1
    for row in _h_table():
        if not e:
            break
        digit = e & mask
        if digit:
            acc = (acc * row[digit]) % P
        e >>= WINDOW_BITS
    return acc


def in_subgroup(value: int) -> bool:
    """Membership in the order-q subgroup (the quadratic residues mod p)."""
    return 0 < value < P and pow(value, Q, P) == 1


def commit(amount: int, blinding: int) -> str:
    """Commit to ``amount`` with blinding factor ``blinding``; returns fixed-width hex."""
    if amount < 0:
        raise ValueError("amount must be non-negative")
    c = (pow(G, amount, P) * h_pow(blinding)) % P
    return format(c, f"0{COMMITMENT_HEX_LEN}x")


def is_valid_commitment(value: str) -> bool:
    """Check the encoding and range of a commitment."""
    if not isinstance(value, str) or len(value) != COMMITMENT_HEX_LEN:
        return False
    try:
        c = int(value, 16)
    except ValueError:
        return False
    return value == value.lower() and 0 < c < P


def random_blinding() -> int:
    """Fresh blinding factor."""
    return secrets.randbelow(Q)


def blinding_to_hex(blinding: int) -> str:
    return format(blinding % Q, "x")


def blinding_from_hex(value: str) -> int:
    """Parse a canonical blinding encoding (lowercase hex, no leading zeros, < q)."""
    if not isinstance(value, str) or not BLINDING_RE.match(value):
        raise ValueError("blinding must be lowercase hex without leading zeros")
    b = int(value, 16)
    if b >= Q:
        raise ValueError("blinding out of range")
    return b


def balancing_blinding(inputs: Iterable[int], others: Iterable[int]) -> int:
    """Blinding for the last output so that outputs balance the inputs.

    For an issuance pass no inputs: the result makes all blindings sum to zero.
    """
    return (sum(inputs) - sum(others)) % Q


def _product(commitments: Iterable[str]) -> int:
    acc = 1
    for c in commitments:
        acc = (acc * int(c, 16)) % P
    return acc


def verify_sum(inputs: List[str], outputs: List[str]) -> bool:
    """Check that input and output commitments hide the same total."""
    if not all(is_valid_commitment(c) for c in list(inputs) + list(outputs)):
        return False
    return _product(inputs) == _product(outputs)


def verify_issue(outputs: List[str], supply: int) -> bool:
    """Check that issued outputs hide exactly ``supply`` with zero net blinding."""
    if supply < 0 or not all(is_valid_commitment(c) for c in outputs):
        return False
    return _product(outputs) == pow(G, supply, P)
