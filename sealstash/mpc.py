"""Multi-protocol commitment (MPC) tree.

One ledger transaction can anchor bundles of many contracts at once. Each
contract contributes a single leaf and the transaction commits to the tree
root only; a contract's inclusion proof reveals its own leaf plus sibling
hashes, never the other contracts' messages.

The tree is a Merkle Mountain Range (append-only accumulator with compact
inclusion proofs):

- leaf = tagged_hash("sealstash:mpc:leaf", contract_id || bundle_id)
- node = tagged_hash("sealstash:mpc:node", left || right)
- root = tagged_hash("sealstash:mpc:root", bagged_peaks || size_u32)

Leaves are ordered by contract id so that the root depends only on the set of
(contract, bundle) messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sealstash.canonical import concat_hex, is_hex_32, tagged_hash
from sealstash.hardening import MalformedEncoding

LEAF_TAG = "sealstash:mpc:leaf"
NODE_TAG = "sealstash:mpc:node"
ROOT_TAG = "sealstash:mpc:root"


def mpc_leaf_hash(contract_id: str, bundle_id: str) -> str:
    return tagged_hash(LEAF_TAG, concat_hex([contract_id, bundle_id]))


def mpc_node_hash(left: str, right: str) -> str:
    return tagged_hash(NODE_TAG, concat_hex([left, right]))


@dataclass(frozen=True)
class Peak:
    height: int
    hash: str


def build_peaks(leaf_hashes: List[str]) -> List[Peak]:
    """Build MMR peaks for a list of leaf hashes (left-to-right append order)."""
    peaks: List[Tuple[int, str]] = []
    for lh in leaf_hashes:
        cur_h = 0
        cur = lh
        # Merge while the top peak has the same height.
        while peaks and peaks[-1][0] == cur_h:
            left_h, left = peaks.pop()
            cur = mpc_node_hash(left, cur)
            cur_h = left_h + 1
        peaks.append((cur_h, cur))
    return [Peak(height=h, hash=d) for (h, d) in peaks]


def bag_peaks(peaks: List[Peak], size: int) -> str:
    """Fold peaks right-to-left and bind the leaf count."""
    if not peaks:
        raise ValueError("cannot bag an empty peak list")
    bag = peaks[-1].hash
    for p in reversed(peaks[:-1]):
        bag = mpc_node_hash(p.hash, bag)
    return tagged_hash(ROOT_TAG, bytes.fromhex(bag) + size.to_bytes(4, "big"))


def _peak_plan(size: int) -> List[Tuple[int, int]]:
    """Return peaks as (height, leaf_count) from left-to-right for a given leaf size."""
    out: List[Tuple[int, int]] = []
    n = size
    while n > 0:
        h = n.bit_length() - 1
        cnt = 1 << h
        out.append((h, cnt))
        n -= cnt
    return out


def _find_peak_for_leaf(size: int, leaf_index: int) -> Tuple[int, int, int]:
    """Return (peak_index, peak_start, peak_height) for leaf_index."""
    if leaf_index < 0 or leaf_index >= size:
        raise ValueError("leaf_index out of range")
    start = 0
    for i, (h, cnt) in enumerate(_peak_plan(size)):
        if start <= leaf_index < start + cnt:
            return (i, start, h)
        start += cnt
    raise RuntimeError("unable to locate peak")


def _merkle_path(leaf_hashes: List[str], leaf_pos: int) -> List[Tuple[str, str]]:
    """Sibling path for a power-of-two sized leaf list."""
    level = list(leaf_hashes)
    pos = leaf_pos
    path: List[Tuple[str, str]] = []
    while len(level) > 1:
        sibling_pos = pos ^ 1
        side = "left" if sibling_pos < pos else "right"
        path.append((side, level[sibling_pos]))
        level = [mpc_node_hash(level[i], level[i + 1]) for i in range(0, len(level), 2)]
        pos //= 2
    return path


@dataclass(frozen=True)
class MpcProof:
    """Inclusion proof of one contract leaf in an MPC tree."""
    size: int
    leaf_index: int
    path: Tuple[Tuple[str, str], ...]
    peaks: Tuple[Peak, ...]

    def root_for(self, contract_id: str, bundle_id: str) -> Optional[str]:
        """Recompute the root for a claimed (contract, bundle) message.

        Returns None when the proof is structurally inconsistent.
        """
        if self.size <= 0 or not 0 <= self.leaf_index < self.size:
            return None
        peak_index, _start, peak_height = _find_peak_for_leaf(self.size, self.leaf_index)
        plan = _peak_plan(self.size)
        if len(self.peaks) != len(plan) or len(self.path) != peak_height:
            return None
        if any(p.height != h for p, (h, _cnt) in zip(self.peaks, plan)):
            return None

        cur = mpc_leaf_hash(contract_id, bundle_id)
        for side, sibling in self.path:
            cur = mpc_node_hash(sibling, cur) if side == "left" else mpc_node_hash(cur, sibling)

        peaks = list(self.peaks)
        peaks[peak_index] = Peak(height=peak_height, hash=cur)
        return bag_peaks(peaks, self.size)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "leaf_index": self.leaf_index,
            "path": [{"side": side, "hash": h} for side, h in self.path],
            "peaks": [{"height": p.height, "hash": p.hash} for p in self.peaks],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "MpcProof":
        if not isinstance(data, dict) or set(data) != {"size", "leaf_index", "path", "peaks"}:
            raise MalformedEncoding("mpc proof must have size, leaf_index, path, peaks")
        size, leaf_index = data["size"], data["leaf_index"]
        if not isinstance(size, int) or not isinstance(leaf_index, int):
            raise MalformedEncoding("mpc proof size and leaf_index must be integers")
        if not isinstance(data["path"], list) or not isinstance(data["peaks"], list):
            raise MalformedEncoding("mpc proof path and peaks must be arrays")
        path: List[Tuple[str, str]] = []
        for step in data["path"]:
            if (not isinstance(step, dict) or step.get("side") not in ("left", "right")
                    or not is_hex_32(step.get("hash"))):
                raise MalformedEncoding("invalid mpc proof path step")
            path.append((step["side"], step["hash"]))
        peaks: List[Peak] = []
        for p in data["peaks"]:
            if (not isinstance(p, dict) or not isinstance(p.get("height"), int)
                    or not is_hex_32(p.get("hash"))):
                raise MalformedEncoding("invalid mpc proof peak")
            peaks.append(Peak(height=p["height"], hash=p["hash"]))
        return cls(size=size, leaf_index=leaf_index, path=tuple(path), peaks=tuple(peaks))


@dataclass(frozen=True)
class MpcTree:
    """A built MPC tree: root plus one proof per contract."""
    root: str
    proofs: Dict[str, MpcProof]

    @classmethod
    def build(cls, messages: Dict[str, str]) -> "MpcTree":
        """Build the tree for ``{contract_id: bundle_id}``."""
        if not messages:
            raise ValueError("cannot commit to an empty message set")
        contracts = sorted(messages)
        leaves = [mpc_leaf_hash(c, messages[c]) for c in contracts]
        size = len(leaves)
        peaks = build_peaks(leaves)
        root = bag_peaks(peaks, size)

        proofs: Dict[str, MpcProof] = {}
        for idx, contract_id in enumerate(contracts):
            _pi, start, height = _find_peak_for_leaf(size, idx)
            peak_leaves = leaves[start:start + (1 << height)]
            proofs[contract_id] = MpcProof(
                size=size,
                leaf_index=idx,
                path=tuple(_merkle_path(peak_leaves, idx - start)),
                peaks=tuple(peaks),
            )
        return cls(root=root, proofs=proofs)
