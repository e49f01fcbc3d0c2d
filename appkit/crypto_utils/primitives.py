# =============================================================================
# Crypto Utilities for the AppKit Authentication Handshake
# =============================================================================
"""
Design goals
- Small set of functions with safe defaults; the handshake layer sequences them.
- Text in, text out: every value here ends up in a query string or a JSON file.

What you get
1) Random tokens:
   - 50 characters from a 94-character printable alphabet, CSPRNG-backed
   - used both as one-shot control keys and as the long-lived session secret

2) Control codes:
   - SHA-256 hex digest over "message|key" (or "message" when no key)
   - constant-time verification

3) Public-key encryption of credentials:
   - RSA PKCS#1 v1.5 with the server's PEM public key, base64 output
   - the padding matches what the server decrypts with (openssl_private_decrypt)

"""

from __future__ import annotations

import base64
import secrets
import string
from typing import Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import constant_time, hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa


# =============================================================================
# Constants
# =============================================================================

SECRET_LENGTH = 50
SECRET_ALPHABET = string.ascii_letters + string.digits + string.punctuation  # 94 chars

CONTROL_SEPARATOR = "|"

_PEM_HEADER = "-----BEGIN PUBLIC KEY-----"
_PEM_FOOTER = "-----END PUBLIC KEY-----"


class EncryptionError(ValueError):
    """The public key could not be loaded or could not encrypt the payload."""


# =============================================================================
# Encoding
# =============================================================================

def b64_encode(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def b64_decode(data: str) -> bytes:
    return base64.b64decode(data.encode("utf-8"))


def _sha256_hex(data: bytes) -> str:
    h = hashes.Hash(hashes.SHA256())
    h.update(data)
    return h.finalize().hex()


# =============================================================================
# Random tokens
# =============================================================================

def generate_secret(length: int = SECRET_LENGTH) -> str:
    """
    Random token drawn uniformly from SECRET_ALPHABET.

    secrets.choice uses the OS CSPRNG, so tokens are safe to use as keys.
    """
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


# =============================================================================
# Control codes
# =============================================================================

def sign_control(message: str, key: Optional[str] = None) -> str:
    """
    Control code for a message.

    The key is appended after a "|" separator before hashing. Without a key the
    digest only proves integrity, not origin.
    """
    data = message if key is None else message + CONTROL_SEPARATOR + key
    return _sha256_hex(data.encode("utf-8"))


def verify_control(message: str, key: Optional[str], digest: object) -> bool:
    if not isinstance(digest, str) or not digest:
        return False
    expected = sign_control(message, key)
    return constant_time.bytes_eq(expected.encode("utf-8"), digest.encode("utf-8"))


# =============================================================================
# Public-key encryption
# =============================================================================

def normalize_public_key_pem(public_key: str) -> str:
    # Servers sometimes hand out the bare base64 body without armor lines.
    pem = public_key.strip()
    if pem.startswith("-----BEGIN"):
        return pem + "\n"
    body = "".join(pem.split())
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return "\n".join([_PEM_HEADER, *lines, _PEM_FOOTER]) + "\n"


def load_rsa_public_key(public_key: str) -> rsa.RSAPublicKey:
    pem = normalize_public_key_pem(public_key)
    try:
        key = serialization.load_pem_public_key(pem.encode("utf-8"))
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise EncryptionError(f"invalid public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise EncryptionError("public key is not an RSA key")
    return key


def encrypt_with_public_key(plaintext: str, public_key: str) -> str:
    """
    Encrypt a short text with the server's RSA public key.

    Returns base64 ciphertext. PKCS#1 v1.5 caps the payload at key size minus
    11 bytes; longer payloads raise EncryptionError.
    """
    key = load_rsa_public_key(public_key)
    try:
        ct = key.encrypt(plaintext.encode("utf-8"), padding.PKCS1v15())
    except ValueError as e:
        raise EncryptionError(f"cannot encrypt payload: {e}") from e
    return b64_encode(ct)
