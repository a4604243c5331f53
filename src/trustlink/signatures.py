"""
trustlink.signatures — Stateless cryptographic checks.

Ed25519 detached signatures (wallet proofs) and HMAC-SHA256 signed opaque
tokens (OAuth state). Every check raises InvalidProof on failure.
"""

import base64
import binascii
import hashlib
import hmac
import json
from typing import Optional, Union

import base58
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from .errors import InvalidProof

Bytes = Union[bytes, bytearray]


# ─── Encodings ─────────────────────────────────────────────────────

def b64url_encode(data: bytes) -> str:
    """base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    try:
        padded = text + "=" * (-len(text) % 4)
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise InvalidProof("malformed base64url segment") from e


def b58decode(text: str, expected_len: Optional[int] = None, what: str = "value") -> bytes:
    """Decode base58, optionally enforcing the decoded length."""
    if not text:
        raise InvalidProof(f"empty {what}")
    try:
        raw = base58.b58decode(text)
    except ValueError as e:
        raise InvalidProof(f"{what} is not valid base58") from e
    if expected_len is not None and len(raw) != expected_len:
        raise InvalidProof(f"{what} must decode to {expected_len} bytes, got {len(raw)}")
    return raw


def hmac_sha256(key: Bytes, message: Bytes) -> bytes:
    return hmac.new(bytes(key), bytes(message), hashlib.sha256).digest()


# ─── Verifier ──────────────────────────────────────────────────────

class SignatureVerifier:
    """Detached-signature and signed-token checks. Holds no state."""

    PUBLIC_KEY_LEN = 32
    SIGNATURE_LEN = 64

    @staticmethod
    def verify_detached(message: Bytes, signature: Bytes, public_key: Bytes) -> None:
        """Verify an Ed25519 detached signature over ``message``."""
        if len(public_key) != SignatureVerifier.PUBLIC_KEY_LEN:
            raise InvalidProof("public key must be 32 bytes")
        if len(signature) != SignatureVerifier.SIGNATURE_LEN:
            raise InvalidProof("signature must be 64 bytes")
        try:
            VerifyKey(bytes(public_key)).verify(bytes(message), bytes(signature))
        except (BadSignatureError, ValueError, TypeError) as e:
            raise InvalidProof("signature does not match") from e

    @staticmethod
    def constant_time_equal(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
        if isinstance(a, str):
            a = a.encode()
        if isinstance(b, str):
            b = b.encode()
        return hmac.compare_digest(a, b)

    @staticmethod
    def sign_token(payload: dict, secret: Union[str, bytes]) -> str:
        """base64url(JSON payload) + "." + base64url(HMAC-SHA256 of that segment)."""
        key = secret.encode() if isinstance(secret, str) else secret
        data = b64url_encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode())
        sig = b64url_encode(hmac_sha256(key, data.encode("ascii")))
        return f"{data}.{sig}"

    @staticmethod
    def verify_token(token: str, secret: Union[str, bytes]) -> dict:
        """Check the HMAC over the data segment and return the decoded payload."""
        if not secret:
            raise InvalidProof("token secret not configured")
        data, sep, sig = (token or "").partition(".")
        if not sep or not data or not sig:
            raise InvalidProof("malformed token")
        key = secret.encode() if isinstance(secret, str) else secret
        try:
            expected = b64url_encode(hmac_sha256(key, data.encode("ascii")))
        except UnicodeEncodeError as e:
            raise InvalidProof("malformed token") from e
        if not SignatureVerifier.constant_time_equal(sig, expected):
            raise InvalidProof("token signature mismatch")
        try:
            payload = json.loads(b64url_decode(data))
        except ValueError as e:
            raise InvalidProof("token payload is not JSON") from e
        if not isinstance(payload, dict):
            raise InvalidProof("token payload is not an object")
        return payload


__all__ = [
    "SignatureVerifier",
    "b64url_encode",
    "b64url_decode",
    "b58decode",
    "hmac_sha256",
]
