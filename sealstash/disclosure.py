"""
Disclosures

A disclosure packages anchored bundles and pending extensions of one or more
contracts so a wallet can hand them to a counterparty or a watchtower, with
an optional comment and Ed25519 signatures over the content:

    {version, anchored_bundles: [{contract_id, anchor, nodes}],
     extensions: {contract_id: [node]}, comment, signatures: {pubkey: sig}}

``disclosure_id`` commits to version, bundles and extensions. The signature
hash additionally covers the comment, so editing a comment invalidates
signatures but keeps the id. Every content mutation clears the signatures.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from sealstash.canonical import canonical_json_bytes, is_hex_32, tagged_digest, tagged_hash_bytes
from sealstash.commitment import Anchor
from sealstash.encoding import decode_document, encode_document
from sealstash.hardening import MalformedEncoding
from sealstash.node import Extension, Genesis, Node, node_from_dict
from sealstash.observability import Layer, get_logger
from sealstash.stash import Stash

logger = get_logger("disclosure", Layer.DISCLOSURE)

DISCLOSURE_VERSION = 1
DISCLOSURE_TAG = "sealstash:disclosure"
SIGHASH_TAG = "sealstash:disclosure:sighash"


@dataclass
class AnchoredBundle:
    """Revealed members of one contract's bundle in one witness transaction."""
    contract_id: str
    anchor: Anchor
    nodes: Dict[str, Node] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "anchor": self.anchor.to_dict(),
            "nodes": [self.nodes[n].to_dict() for n in sorted(self.nodes)],
        }


@dataclass(frozen=True)
class SignatureResult:
    public_key: str
    ok: bool
    error: str = ""


def _public_key_hex(key: Ed25519PublicKey) -> str:
    return key.public_bytes(Encoding.Raw, PublicFormat.Raw).hex()


class Disclosure:
    """Signed, comment-able package of anchored contract data."""

    def __init__(self, comment: Optional[str] = None):
        self.version = DISCLOSURE_VERSION
        self.anchored_bundles: Dict[Tuple[str, str], AnchoredBundle] = {}
        self.extensions: Dict[str, Dict[str, Extension]] = {}
        self.comment = comment
        self.signatures: Dict[str, str] = {}

    # -- content -------------------------------------------------------------

    def insert_anchored_bundle(self, contract_id: str, anchor: Anchor, nodes: Iterable[Node]) -> None:
        """Add nodes under ``anchor``, merging with what is already disclosed for its txid."""
        incoming: Dict[str, Node] = {}
        for node in nodes:
            if isinstance(node, Genesis):
                raise ValueError("genesis is never part of an anchored bundle")
            if node.contract_id != contract_id:
                raise ValueError(f"node {node.node_id} belongs to contract {node.contract_id}")
            if node.node_id not in anchor.node_ids:
                raise ValueError(f"node {node.node_id} is not a member of the anchored bundle")
            incoming[node.node_id] = node

        key = (anchor.txid, contract_id)
        existing = self.anchored_bundles.get(key)
        if existing is None:
            self.anchored_bundles[key] = AnchoredBundle(contract_id, anchor, incoming)
        else:
            existing.anchor = existing.anchor.merge(anchor)
            for node_id, node in incoming.items():
                held = existing.nodes.get(node_id)
                existing.nodes[node_id] = node if held is None else held.merge_reveal(node)
        self.signatures.clear()

    def insert_extensions(self, contract_id: str, extensions: Iterable[Extension]) -> None:
        bucket = self.extensions.setdefault(contract_id, {})
        for ext in extensions:
            if not isinstance(ext, Extension):
                raise ValueError(f"{type(ext).__name__} is not an extension")
            if ext.contract_id != contract_id:
                raise ValueError(f"extension {ext.node_id} belongs to contract {ext.contract_id}")
            bucket[ext.node_id] = ext
        self.signatures.clear()

    def change_comment(self, comment: str) -> bool:
        """Set the comment; returns whether a comment was replaced."""
        had = self.comment is not None
        self.comment = comment
        self.signatures.clear()
        return had

    def remove_comment(self) -> bool:
        had = self.comment is not None
        self.comment = None
        self.signatures.clear()
        return had

    def contract_ids(self) -> List[str]:
        ids = {cid for _txid, cid in self.anchored_bundles}
        ids.update(cid for cid, bucket in self.extensions.items() if bucket)
        return sorted(ids)

    def nodes(self) -> List[Node]:
        found: List[Node] = []
        for key in sorted(self.anchored_bundles):
            bundle = self.anchored_bundles[key]
            found.extend(bundle.nodes[n] for n in sorted(bundle.nodes))
        for cid in sorted(self.extensions):
            bucket = self.extensions[cid]
            found.extend(bucket[n] for n in sorted(bucket))
        return found

    # -- concealment ---------------------------------------------------------

    def _rewrite(self, fn) -> int:
        """Apply ``fn(node) -> (node, changed)`` to every disclosed node."""
        total = 0
        for bundle in self.anchored_bundles.values():
            for node_id, node in list(bundle.nodes.items()):
                bundle.nodes[node_id], changed = fn(node)
                total += changed
        for bucket in self.extensions.values():
            for node_id, node in list(bucket.items()):
                bucket[node_id], changed = fn(node)
                total += changed
        if total:
            self.signatures.clear()
        return total

    def conceal_seals(self, seal_hashes: Iterable[str]) -> int:
        """Conceal every revealed seal whose concealed hash is listed."""
        targets: Set[str] = set(seal_hashes)

        def fn(node: Node) -> Tuple[Node, int]:
            changed = 0
            for owned_type, index, a in list(node.assignments()):
                if a.seal.is_revealed and a.seal.conceal() in targets:
                    node = node.conceal_seal(owned_type, index)
                    changed += 1
            return node, changed

        return self._rewrite(fn)

    def conceal_state_except(self, seal_hashes: Iterable[str]) -> int:
        """Conceal every revealed state not assigned to one of the listed seals."""
        keep: Set[str] = set(seal_hashes)

        def fn(node: Node) -> Tuple[Node, int]:
            changed = 0
            for owned_type, index, a in list(node.assignments()):
                if a.state.is_revealed and a.seal.conceal() not in keep and a.state.conceal() != a.state:
                    node = node.conceal_state(owned_type, index)
                    changed += 1
            return node, changed

        return self._rewrite(fn)

    # -- identity and signatures ---------------------------------------------

    def commit_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "anchored_bundles": [self.anchored_bundles[k].to_dict() for k in sorted(self.anchored_bundles)],
            "extensions": {
                cid: [bucket[n].to_dict() for n in sorted(bucket)]
                for cid, bucket in sorted(self.extensions.items())
            },
        }

    @property
    def disclosure_id(self) -> str:
        return tagged_digest(DISCLOSURE_TAG, self.commit_dict())

    def sig_hash(self) -> bytes:
        msg = canonical_json_bytes(self.commit_dict())
        if self.comment is not None:
            msg += tagged_hash_bytes(DISCLOSURE_TAG + ":comment", self.comment.encode("utf-8"))
        return tagged_hash_bytes(SIGHASH_TAG, msg)

    def sign(self, private_key: Ed25519PrivateKey) -> str:
        """Sign the current content and return the signer's public key hex."""
        public_key = _public_key_hex(private_key.public_key())
        self.signatures[public_key] = private_key.sign(self.sig_hash()).hex()
        logger.debug("Disclosure signed", disclosure_id=self.disclosure_id, public_key=public_key)
        return public_key

    def add_signature(self, public_key: str, signature: str) -> Optional[str]:
        """Attach a detached signature; returns the one it replaces, if any."""
        if not is_hex_32(public_key):
            raise ValueError("public key must be 64 lowercase hex chars")
        if len(signature) != 128 or any(c not in "0123456789abcdef" for c in signature):
            raise ValueError("signature must be 128 lowercase hex chars")
        previous = self.signatures.get(public_key)
        self.signatures[public_key] = signature
        return previous

    def remove_signature(self, public_key: str) -> Optional[str]:
        return self.signatures.pop(public_key, None)

    def empty_signatures(self) -> int:
        count = len(self.signatures)
        self.signatures.clear()
        return count

    def verify_signatures(self) -> List[SignatureResult]:
        """Verify every attached signature against the current content."""
        msg = self.sig_hash()
        results: List[SignatureResult] = []
        for public_key in sorted(self.signatures):
            try:
                pub = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key))
                pub.verify(bytes.fromhex(self.signatures[public_key]), msg)
                results.append(SignatureResult(public_key=public_key, ok=True))
            except InvalidSignature:
                results.append(SignatureResult(public_key=public_key, ok=False, error="invalid signature"))
            except ValueError as ex:
                results.append(SignatureResult(public_key=public_key, ok=False, error=str(ex)))
        return results

    def is_signed_by(self, public_key: str) -> bool:
        return any(r.ok and r.public_key == public_key for r in self.verify_signatures())

    # -- serialization -------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        out = self.commit_dict()
        out["comment"] = self.comment
        out["signatures"] = dict(sorted(self.signatures.items()))
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "Disclosure":
        expected = {"version", "anchored_bundles", "extensions", "comment", "signatures"}
        if not isinstance(data, dict) or set(data) != expected:
            raise MalformedEncoding(f"disclosure must have exactly {sorted(expected)}")
        if data["version"] != DISCLOSURE_VERSION:
            raise MalformedEncoding(f"unsupported disclosure version {data['version']!r}")
        disclosure = cls()
        try:
            for entry in data["anchored_bundles"]:
                anchor = Anchor.from_dict(entry["anchor"])
                disclosure.insert_anchored_bundle(
                    entry["contract_id"], anchor, [node_from_dict(n) for n in entry["nodes"]],
                )
            for cid, items in data["extensions"].items():
                disclosure.insert_extensions(cid, [node_from_dict(n) for n in items])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedEncoding(f"invalid disclosure content: {e}")
        disclosure.comment = data["comment"]
        for public_key, signature in data["signatures"].items():
            try:
                disclosure.add_signature(public_key, signature)
            except ValueError as e:
                raise MalformedEncoding(str(e))
        return disclosure

    def to_bytes(self) -> bytes:
        return encode_document(self.to_dict())

    @classmethod
    def from_bytes(cls, data: bytes) -> "Disclosure":
        return cls.from_dict(decode_document(data, "disclosure"))

    @classmethod
    def from_stash(
        cls,
        stash: Stash,
        contract_id: str,
        node_ids: Optional[Iterable[str]] = None,
        comment: Optional[str] = None,
    ) -> "Disclosure":
        """Disclose admitted nodes of a contract (all non-genesis nodes by default)."""
        wanted = set(node_ids) if node_ids is not None else None
        disclosure = cls(comment=comment)
        for node in stash.contract_nodes(contract_id):
            if isinstance(node, Genesis):
                continue
            if wanted is not None and node.node_id not in wanted:
                continue
            anchor = stash.anchor_for(node.node_id)
            if anchor is None:
                raise ValueError(f"admitted node {node.node_id} has no anchor")
            disclosure.insert_anchored_bundle(contract_id, anchor, [node])
        return disclosure
