"""Tests for trustlink.signatures — Ed25519 detached checks and signed tokens."""

import base58
import pytest
from nacl.signing import SigningKey

from trustlink.errors import InvalidProof
from trustlink.signatures import (
    SignatureVerifier, b58decode, b64url_decode, b64url_encode, hmac_sha256,
)


@pytest.fixture
def key():
    return SigningKey.generate()


class TestDetached:
    def test_valid_signature(self, key):
        msg = b"hello wallet"
        sig = key.sign(msg).signature
        SignatureVerifier.verify_detached(msg, sig, bytes(key.verify_key))

    def test_mutated_message(self, key):
        sig = key.sign(b"hello wallet").signature
        with pytest.raises(InvalidProof):
            SignatureVerifier.verify_detached(b"hello wallex", sig, bytes(key.verify_key))

    def test_mutated_signature(self, key):
        sig = bytearray(key.sign(b"hello").signature)
        sig[10] ^= 0x01
        with pytest.raises(InvalidProof):
            SignatureVerifier.verify_detached(b"hello", bytes(sig), bytes(key.verify_key))

    def test_wrong_key(self, key):
        sig = key.sign(b"hello").signature
        other = SigningKey.generate().verify_key
        with pytest.raises(InvalidProof):
            SignatureVerifier.verify_detached(b"hello", sig, bytes(other))

    def test_bad_lengths(self, key):
        sig = key.sign(b"hello").signature
        with pytest.raises(InvalidProof):
            SignatureVerifier.verify_detached(b"hello", sig[:63], bytes(key.verify_key))
        with pytest.raises(InvalidProof):
            SignatureVerifier.verify_detached(b"hello", sig, bytes(key.verify_key)[:31])


class TestSignedToken:
    def test_roundtrip(self):
        token = SignatureVerifier.sign_token({"accountId": "a1", "n": 3}, "secret")
        assert SignatureVerifier.verify_token(token, "secret") == {"accountId": "a1", "n": 3}

    def test_format(self):
        token = SignatureVerifier.sign_token({"a": 1}, "secret")
        data, sig = token.split(".")
        assert "=" not in token
        assert b64url_decode(data) == b'{"a":1}'
        assert len(b64url_decode(sig)) == 32

    def test_wrong_secret(self):
        token = SignatureVerifier.sign_token({"a": 1}, "secret")
        with pytest.raises(InvalidProof):
            SignatureVerifier.verify_token(token, "other")

    @pytest.mark.parametrize("segment", [0, 1])
    def test_tampered_segment(self, segment):
        token = SignatureVerifier.sign_token({"accountId": "a1"}, "secret")
        parts = token.split(".")
        ch = parts[segment][-2]
        parts[segment] = parts[segment][:-2] + ("A" if ch != "A" else "B") + parts[segment][-1]
        with pytest.raises(InvalidProof):
            SignatureVerifier.verify_token(".".join(parts), "secret")

    @pytest.mark.parametrize("token", ["", "nodot", ".sig", "data."])
    def test_malformed(self, token):
        with pytest.raises(InvalidProof):
            SignatureVerifier.verify_token(token, "secret")

    def test_non_object_payload(self):
        data = b64url_encode(b"[1,2]")
        sig = b64url_encode(hmac_sha256(b"secret", data.encode()))
        with pytest.raises(InvalidProof, match="not an object"):
            SignatureVerifier.verify_token(f"{data}.{sig}", "secret")

    def test_missing_secret(self):
        token = SignatureVerifier.sign_token({"a": 1}, "secret")
        with pytest.raises(InvalidProof):
            SignatureVerifier.verify_token(token, "")


class TestBase58:
    def test_decode(self):
        raw = bytes(range(32))
        assert b58decode(base58.b58encode(raw).decode(), 32) == raw

    def test_wrong_length(self):
        with pytest.raises(InvalidProof, match="32 bytes"):
            b58decode(base58.b58encode(b"short").decode(), 32, what="wallet address")

    def test_invalid_alphabet(self):
        with pytest.raises(InvalidProof):
            b58decode("0OIl")

    def test_empty(self):
        with pytest.raises(InvalidProof):
            b58decode("")
