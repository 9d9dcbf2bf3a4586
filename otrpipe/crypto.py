"""
crypto.py - small helpers around the `cryptography` primitives we use.

Why this exists:
- Keep every primitive in one place so the conversation engine can call
  `agree/seal/open_sealed/sign/verify` without worrying about encodings.
- Use URL-safe Base64 without '=' padding so values drop cleanly into
  JSON and never contain the frame delimiter.

Choices:
- Identity keys are Ed25519; a fingerprint is SHA-256 of the raw public key.
- Key agreement is ephemeral X25519 + HKDF-SHA256.
- Messages are sealed with ChaCha20-Poly1305, nonce = 96-bit counter.
"""

import base64
import hashlib
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

KEY_SIZE = 32
NONCE_SIZE = 12
MAX_COUNTER = 2 ** (8 * NONCE_SIZE)  # counters must fit in the nonce

# -----------------------------
# Base64 URL helpers (no padding)
# -----------------------------

def b64url_encode(data: bytes) -> str:
    """URL-safe Base64 without '=' padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode our URL-safe, no-padding Base64 back to bytes."""
    # Add the minimal padding back so Python's decoder is happy.
    pad_len = (-len(data)) % 4
    return base64.urlsafe_b64decode(data + "=" * pad_len)


# -----------------
# Identity key utils
# -----------------

def generate_identity() -> Ed25519PrivateKey:
    """Fresh long-term identity key."""
    return Ed25519PrivateKey.generate()


def export_privkey_pem(priv: Ed25519PrivateKey) -> bytes:
    """
    Export the identity key in PKCS#8 (unencrypted) form.
    Store it with tight permissions; this is the raw key.
    """
    return priv.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_privkey_pem(pem_bytes: bytes) -> Ed25519PrivateKey:
    """Load an unencrypted PKCS#8 PEM identity key. ValueError if it isn't one."""
    key = serialization.load_pem_private_key(pem_bytes, password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError("Key is not an Ed25519 private key")
    return key


def public_bytes(pub) -> bytes:
    """Raw 32-byte encoding of an Ed25519 or X25519 public key."""
    return pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def fingerprint_raw(pub_raw: bytes) -> bytes:
    """SHA-256 over the raw public key; this is what contacts are keyed by."""
    return hashlib.sha256(pub_raw).digest()


def fingerprint(pub: Ed25519PublicKey) -> bytes:
    return fingerprint_raw(public_bytes(pub))


# -------------------------
# Signing & Verification API
# -------------------------

def sign(priv: Ed25519PrivateKey, data: bytes) -> bytes:
    return priv.sign(data)


def verify(pub_raw: bytes, data: bytes, sig: bytes) -> bool:
    """
    Verify an Ed25519 signature against a raw public key.
    Returns False on any failure (bad key, wrong data, bad signature).
    """
    try:
        Ed25519PublicKey.from_public_bytes(pub_raw).verify(sig, data)
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------
# Key agreement & AEAD helpers
# ---------------------------

def generate_ephemeral() -> X25519PrivateKey:
    return X25519PrivateKey.generate()


def agree(mine: X25519PrivateKey, theirs_raw: bytes, info: bytes) -> Tuple[bytes, bytes]:
    """
    X25519 + HKDF-SHA256 into two 32-byte directional keys.

    Returns (low_key, high_key): the key used by the side whose ephemeral
    public key sorts lower, then the other one. Both sides compute the same
    pair and pick their halves by comparing the public keys.
    """
    shared = mine.exchange(X25519PublicKey.from_public_bytes(theirs_raw))
    okm = HKDF(algorithm=hashes.SHA256(), length=2 * KEY_SIZE, salt=None, info=info).derive(shared)
    return okm[:KEY_SIZE], okm[KEY_SIZE:]


def counter_nonce(counter: int) -> bytes:
    return counter.to_bytes(NONCE_SIZE, "big")


def seal(key: bytes, counter: int, data: bytes, aad: bytes) -> bytes:
    """ChaCha20-Poly1305 encrypt; the counter must never repeat under one key."""
    return ChaCha20Poly1305(key).encrypt(counter_nonce(counter), data, aad)


def open_sealed(key: bytes, counter: int, ct: bytes, aad: bytes) -> bytes:
    """Inverse of seal(). Raises InvalidTag if anything was tampered with."""
    return ChaCha20Poly1305(key).decrypt(counter_nonce(counter), ct, aad)

