"""
trustlink.providers.wallet — Wallet signature verification.

Two signing modes:
  * message   — the wallet signs the challenge text directly.
  * tx_message — wallets that can only sign transactions sign a serialized
    transaction message (base58) whose memo carries the challenge text.

Either way the challenge must embed ``Timestamp: <unix-ms>`` within
[-5 min, +30 s] of the server clock.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from ..config import WALLET_MAX_FUTURE_MS, WALLET_MAX_PAST_MS, Settings
from ..errors import ExpiredProof, InvalidProof
from ..models import ProviderKind, VerifiedIdentity
from ..signatures import SignatureVerifier, b58decode

logger = logging.getLogger(__name__)

TIMESTAMP_RE = re.compile(r"Timestamp: (\d+)")


class WalletProof(BaseModel):
    """Wallet verification input."""
    address: str = Field(min_length=1)
    signature: str = Field(min_length=1)
    message: str = Field(min_length=1)
    tx_message: Optional[str] = None

    @classmethod
    def parse(cls, data: dict) -> "WalletProof":
        """Accept both snake_case and the client's camelCase ``txMessage``."""
        data = dict(data)
        if "txMessage" in data and "tx_message" not in data:
            data["tx_message"] = data.pop("txMessage")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidProof("wallet proof is missing required fields") from e


def extract_timestamp_ms(message: str) -> Optional[int]:
    m = TIMESTAMP_RE.search(message)
    return int(m.group(1)) if m else None


class WalletVerifier:
    """Verifies detached Ed25519 signatures from wallet addresses."""

    def __init__(self, max_past_ms: int = WALLET_MAX_PAST_MS,
                 max_future_ms: int = WALLET_MAX_FUTURE_MS):
        self.max_past_ms = max_past_ms
        self.max_future_ms = max_future_ms

    @classmethod
    def from_settings(cls, settings: Settings) -> "WalletVerifier":
        return cls(settings.wallet_max_past_ms, settings.wallet_max_future_ms)

    def signed_payload(self, proof: WalletProof) -> bytes:
        """Bytes the wallet actually signed."""
        challenge = proof.message.encode("utf-8")
        if not proof.tx_message:
            return challenge
        tx_bytes = b58decode(proof.tx_message, what="transaction message")
        # The challenge rides in the transaction's memo instruction
        if challenge not in tx_bytes:
            raise InvalidProof("transaction message does not carry the challenge")
        return tx_bytes

    def verify(self, proof: WalletProof, now_ms: Optional[int] = None) -> VerifiedIdentity:
        """Verify ``proof``; raises InvalidProof or ExpiredProof."""
        if isinstance(proof, dict):
            proof = WalletProof.parse(proof)

        public_key = b58decode(proof.address, SignatureVerifier.PUBLIC_KEY_LEN, what="wallet address")
        signature = b58decode(proof.signature, SignatureVerifier.SIGNATURE_LEN, what="signature")
        SignatureVerifier.verify_detached(self.signed_payload(proof), signature, public_key)

        issued_ms = extract_timestamp_ms(proof.message)
        if issued_ms is None:
            raise InvalidProof("challenge has no Timestamp")
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        if issued_ms - now_ms > self.max_future_ms:
            raise ExpiredProof("challenge timestamp is in the future", issued_ms=issued_ms)
        if now_ms - issued_ms > self.max_past_ms:
            raise ExpiredProof("challenge signature expired", issued_ms=issued_ms)

        logger.debug("wallet signature verified", extra={"wallet": proof.address,
                                                         "tx_mode": bool(proof.tx_message)})
        return VerifiedIdentity(ProviderKind.WALLET, proof.address, {})
