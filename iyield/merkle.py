"""Sorted-pair Merkle tree utilities for attested valuation datasets.

Attestors commit to a valuation dataset (one leaf per policy record) by its Merkle
root. Anyone holding a leaf and its sibling path can check inclusion against the
confirmed root without seeing the rest of the dataset.

Hashing:
- SHA-256
- leaf = SHA256(0x00 || canonical_json(record))
- node = SHA256(min(a, b) || max(a, b)) over the raw 32-byte children

Ordering the pair before hashing makes the proof independent of left/right
position, so a proof is just an ordered list of sibling hashes. Levels with an
odd node count duplicate their last node.

All hashes are exchanged as 64 lowercase hex chars.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, List, Sequence

from iyield.hardening import MalformedProof, secure_compare_str


EMPTY_ROOT = "0" * 64


def _sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def _is_hex_32(s: Any) -> bool:
    if not isinstance(s, str):
        return False
    ss = s.strip().lower()
    if len(ss) != 64:
        return False
    try:
        bytes.fromhex(ss)
        return True
    except ValueError:
        return False


def hash_leaf(payload: Any) -> str:
    """Compute the leaf hash of a dataset record.

    `payload` may be raw bytes or any JSON-serializable record; records are
    canonicalized with sorted keys and no whitespace before hashing.
    """
    if isinstance(payload, bytes):
        data = payload
    else:
        data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return _sha256(b"\x00" + data).hex()


def hash_pair(a_hex: str, b_hex: str) -> str:
    """Combine two node hashes, order-independently."""
    if not _is_hex_32(a_hex) or not _is_hex_32(b_hex):
        raise ValueError("node hashes must be 64 hex chars")
    a = bytes.fromhex(a_hex.strip().lower())
    b = bytes.fromhex(b_hex.strip().lower())
    lo, hi = (a, b) if a <= b else (b, a)
    return _sha256(lo + hi).hex()


def merkle_root(leaf_hashes: Sequence[str]) -> str:
    """Compute the root over already-hashed leaves."""
    if not leaf_hashes:
        return EMPTY_ROOT
    level = [h.strip().lower() for h in leaf_hashes]
    for h in level:
        if not _is_hex_32(h):
            raise ValueError("invalid leaf hash")
    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        level = [hash_pair(level[i], level[i + 1]) for i in range(0, len(level), 2)]
    return level[0]


def build_proof(leaf_hashes: Sequence[str], index: int) -> List[str]:
    """Return the sibling path for the leaf at `index`, bottom-up."""
    if not leaf_hashes:
        raise ValueError("cannot build proof for empty tree")
    if index < 0 or index >= len(leaf_hashes):
        raise ValueError("index out of range")

    level = [h.strip().lower() for h in leaf_hashes]
    pos = index
    path: List[str] = []
    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        path.append(level[pos ^ 1])
        level = [hash_pair(level[i], level[i + 1]) for i in range(0, len(level), 2)]
        pos //= 2
    return path


def verify(proof: Sequence[str], leaf: str, root: str) -> bool:
    """Recompute the root from `leaf` through `proof` and compare with `root`.

    Malformed input (non-hex elements, wrong lengths, non-list proofs) is a
    mismatch, never an exception.
    """
    if not _is_hex_32(leaf) or not _is_hex_32(root):
        return False
    if isinstance(proof, (str, bytes)) or not isinstance(proof, Sequence):
        return False
    cur = leaf.strip().lower()
    for sibling in proof:
        if not _is_hex_32(sibling):
            return False
        cur = hash_pair(cur, sibling)
    return secure_compare_str(cur, root.strip().lower())


def require_well_formed(proof: Any, leaf: Any, root: Any) -> None:
    """Raise MalformedProof if the proof cannot even be evaluated."""
    if not _is_hex_32(leaf):
        raise MalformedProof("leaf must be 64 hex chars", leaf=leaf)
    if not _is_hex_32(root):
        raise MalformedProof("root must be 64 hex chars", root=root)
    if isinstance(proof, (str, bytes)) or not isinstance(proof, Sequence):
        raise MalformedProof("proof must be a list of sibling hashes")
    for i, sibling in enumerate(proof):
        if not _is_hex_32(sibling):
            raise MalformedProof("proof element must be 64 hex chars", index=i)
