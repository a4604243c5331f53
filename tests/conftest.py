"""Shared fixtures: signed mini-app payloads, wallet keypairs, wired flows."""

import hashlib
import hmac
import json
import os
import sys
import time
from urllib.parse import urlencode

import base58
import pytest
from nacl.signing import SigningKey

# Ensure src is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from trustlink.config import Settings
from trustlink.flows import IdentityFlows
from trustlink.storage import MemoryStore, StoreAccountDirectory

BOT_TOKEN = "123456:TEST-BOT-TOKEN"
STATE_SECRET = "state-secret-for-tests"


# ─── Messaging payloads ────────────────────────────────────────────

def make_init_data(user: dict, auth_date=None, bot_token: str = BOT_TOKEN,
                   extra: dict = None, tamper: bool = False) -> str:
    """Build init data signed the way the messaging platform signs it."""
    fields = {
        "auth_date": str(int(time.time()) if auth_date is None else auth_date),
        "query_id": "AAH-test",
        "user": json.dumps(user, separators=(",", ":")),
    }
    fields.update(extra or {})
    check = "\n".join(f"{k}={fields[k]}" for k in sorted(fields))
    secret = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    fields["hash"] = hmac.new(secret, check.encode(), hashlib.sha256).hexdigest()
    if tamper:
        fields["query_id"] = "AAH-other"
    return urlencode(fields)


# ─── Wallets ───────────────────────────────────────────────────────

class Wallet:
    def __init__(self):
        self.key = SigningKey.generate()
        self.address = base58.b58encode(bytes(self.key.verify_key)).decode()

    def sign(self, payload: bytes) -> str:
        return base58.b58encode(self.key.sign(payload).signature).decode()

    def proof(self, timestamp_ms=None, account: str = "") -> dict:
        ts = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
        message = f"Link wallet {account}\nTimestamp: {ts}"
        return {"address": self.address, "signature": self.sign(message.encode()), "message": message}


@pytest.fixture
def wallet():
    return Wallet()


@pytest.fixture
def other_wallet():
    return Wallet()


# ─── Wiring ────────────────────────────────────────────────────────

@pytest.fixture
def settings():
    return Settings(
        bot_token=BOT_TOKEN,
        state_secret=STATE_SECRET,
        social_client_id="client-id",
        social_client_secret="client-secret",
        social_callback_url="https://app.example/callback",
        solana_rpc_url="https://rpc.example",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def directory(store):
    return StoreAccountDirectory(store)


@pytest.fixture
def flows(settings, store, directory):
    return IdentityFlows(settings, store=store, directory=directory)
