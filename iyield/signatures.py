"""Attestor signatures over valuation submissions.

Submissions are identified by a digest:

    digest = SHA256(canonical_json({attestor, subject, value, merkle_root, timestamp, doc_ref}))

Canonical JSON is UTF-8 with sorted keys and no insignificant whitespace. An
attestor signs the raw 32 digest bytes with Ed25519; signatures travel as
base64url without padding.

The oracle only depends on the `SignatureVerifier` protocol, so a host can
swap in a different primitive without touching consensus logic.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import threading
from typing import Any, Dict, Optional, Protocol, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from iyield.hardening import ValidationError


def canonical_json(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def submission_digest(
    attestor: str,
    subject: str,
    value: int,
    merkle_root: str,
    timestamp: int,
    doc_ref: str = "",
) -> str:
    """Digest an attestor signs for one valuation submission."""
    payload = {
        "attestor": attestor,
        "subject": subject,
        "value": value,
        "merkle_root": merkle_root.lower(),
        "timestamp": timestamp,
        "doc_ref": doc_ref,
    }
    return hashlib.sha256(canonical_json(payload)).hexdigest()


class SignatureVerifier(Protocol):
    """Signature primitive consumed by the oracle."""

    def verify(self, digest: str, signature: str, signer: str) -> bool:
        ...


class Ed25519SignatureVerifier:
    """
    Ed25519 verification against keys registered per signer.

    Unknown signers and undecodable signatures verify as False; this never raises.
    """

    def __init__(self) -> None:
        self._keys: Dict[str, Ed25519PublicKey] = {}
        self._lock = threading.Lock()

    def register_key(self, signer: str, public_key: bytes) -> None:
        if not isinstance(public_key, bytes) or len(public_key) != 32:
            raise ValidationError("public_key", "Ed25519 public key must be 32 bytes")
        key = Ed25519PublicKey.from_public_bytes(public_key)
        with self._lock:
            self._keys[signer] = key

    def unregister_key(self, signer: str) -> None:
        with self._lock:
            self._keys.pop(signer, None)

    def has_key(self, signer: str) -> bool:
        with self._lock:
            return signer in self._keys

    def verify(self, digest: str, signature: str, signer: str) -> bool:
        with self._lock:
            key = self._keys.get(signer)
        if key is None or not isinstance(signature, str) or not isinstance(digest, str):
            return False
        try:
            sig = b64url_decode(signature)
            message = bytes.fromhex(digest)
        except (ValueError, binascii.Error):
            return False
        if len(sig) != 64:
            return False
        try:
            key.verify(sig, message)
        except InvalidSignature:
            return False
        return True


# Key helpers for attestor tooling and tests.

def generate_keypair() -> Tuple[Ed25519PrivateKey, bytes]:
    """Generate an Ed25519 private key and its raw 32-byte public key."""
    priv = Ed25519PrivateKey.generate()
    pub = priv.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return priv, pub


def sign_digest(private_key: Ed25519PrivateKey, digest: str) -> str:
    return b64url_encode(private_key.sign(bytes.fromhex(digest)))


def sign_submission(
    private_key: Ed25519PrivateKey,
    attestor: str,
    subject: str,
    value: int,
    merkle_root: str,
    timestamp: int,
    doc_ref: str = "",
    digest: Optional[str] = None,
) -> str:
    """Sign a submission tuple (or a precomputed digest of it)."""
    digest = digest or submission_digest(attestor, subject, value, merkle_root, timestamp, doc_ref)
    return sign_digest(private_key, digest)
