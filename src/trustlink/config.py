"""
trustlink.config — Runtime settings loaded from the environment.

All variables use the ``TRUSTLINK_`` prefix. Score caps are configuration,
not policy baked into the formula:

    TRUSTLINK_SCORE_CAPS="handshakes=30,wallet=20,social=20,events=20,community=10"
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Mapping, Optional

# Freshness windows
MESSAGING_MAX_AGE_S = 3600
WALLET_MAX_PAST_MS = 5 * 60 * 1000
WALLET_MAX_FUTURE_MS = 30 * 1000
OAUTH_STATE_TTL_MS = 10 * 60 * 1000

DEFAULT_PLACEHOLDER_DOMAIN = "id.trustlink.local"
DEFAULT_DB_PATH = "trustlink.db"


@dataclass(frozen=True)
class ScoreCaps:
    """Hard cap per score category. The caps must not add up to more than 100."""
    handshakes: int = 30
    wallet: int = 20
    social: int = 20
    events: int = 20
    community: int = 10

    def __post_init__(self):
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValueError(f"score cap {f.name} must be >= 0")
        if self.total > 100:
            raise ValueError(f"score caps add up to {self.total}, maximum is 100")

    @property
    def total(self) -> int:
        return sum(getattr(self, f.name) for f in fields(self))

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def parse(cls, raw: str) -> "ScoreCaps":
        """Parse ``name=value,name=value``; unnamed categories keep defaults."""
        values: dict[str, int] = {}
        known = {f.name for f in fields(cls)}
        for part in raw.split(","):
            part = part.strip()
            if not part:
                continue
            name, sep, value = part.partition("=")
            name = name.strip()
            if not sep or name not in known:
                raise ValueError(f"bad score cap entry: {part!r}")
            values[name] = int(value)
        return cls(**values)


@dataclass
class Settings:
    # Messaging mini-app
    bot_token: str = ""
    messaging_max_age_s: int = MESSAGING_MAX_AGE_S

    # Wallet
    wallet_max_past_ms: int = WALLET_MAX_PAST_MS
    wallet_max_future_ms: int = WALLET_MAX_FUTURE_MS
    solana_rpc_url: str = "https://api.devnet.solana.com"

    # Social OAuth2 (PKCE)
    state_secret: str = ""
    social_client_id: str = ""
    social_client_secret: str = ""
    social_callback_url: str = ""
    social_authorize_url: str = "https://x.com/i/oauth2/authorize"
    social_token_url: str = "https://api.x.com/2/oauth2/token"
    social_revoke_url: str = "https://api.x.com/2/oauth2/revoke"
    social_profile_url: str = "https://api.x.com/2/users/me"
    social_scope: str = "tweet.read users.read offline.access"
    oauth_state_ttl_ms: int = OAUTH_STATE_TTL_MS

    # Accounts / storage
    placeholder_domain: str = DEFAULT_PLACEHOLDER_DOMAIN
    db_path: str = DEFAULT_DB_PATH

    score_caps: ScoreCaps = field(default_factory=ScoreCaps)
    log_level: str = "INFO"

    @property
    def social_configured(self) -> bool:
        return bool(self.social_client_id and self.social_callback_url and self.state_secret)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def _int(name: str, default: int) -> int:
            raw = env.get(name, "")
            return int(raw) if raw else default

        caps_raw = env.get("TRUSTLINK_SCORE_CAPS", "")
        return cls(
            bot_token=env.get("TRUSTLINK_BOT_TOKEN", ""),
            messaging_max_age_s=_int("TRUSTLINK_MESSAGING_MAX_AGE_S", MESSAGING_MAX_AGE_S),
            wallet_max_past_ms=_int("TRUSTLINK_WALLET_MAX_PAST_MS", WALLET_MAX_PAST_MS),
            wallet_max_future_ms=_int("TRUSTLINK_WALLET_MAX_FUTURE_MS", WALLET_MAX_FUTURE_MS),
            solana_rpc_url=env.get("TRUSTLINK_SOLANA_RPC_URL", cls.solana_rpc_url),
            state_secret=env.get("TRUSTLINK_STATE_SECRET", ""),
            social_client_id=env.get("TRUSTLINK_SOCIAL_CLIENT_ID", ""),
            social_client_secret=env.get("TRUSTLINK_SOCIAL_CLIENT_SECRET", ""),
            social_callback_url=env.get("TRUSTLINK_SOCIAL_CALLBACK_URL", ""),
            social_authorize_url=env.get("TRUSTLINK_SOCIAL_AUTHORIZE_URL", cls.social_authorize_url),
            social_token_url=env.get("TRUSTLINK_SOCIAL_TOKEN_URL", cls.social_token_url),
            social_revoke_url=env.get("TRUSTLINK_SOCIAL_REVOKE_URL", cls.social_revoke_url),
            social_profile_url=env.get("TRUSTLINK_SOCIAL_PROFILE_URL", cls.social_profile_url),
            social_scope=env.get("TRUSTLINK_SOCIAL_SCOPE", cls.social_scope),
            oauth_state_ttl_ms=_int("TRUSTLINK_OAUTH_STATE_TTL_MS", OAUTH_STATE_TTL_MS),
            placeholder_domain=env.get("TRUSTLINK_PLACEHOLDER_DOMAIN", DEFAULT_PLACEHOLDER_DOMAIN),
            db_path=env.get("TRUSTLINK_DB", DEFAULT_DB_PATH),
            score_caps=ScoreCaps.parse(caps_raw) if caps_raw else ScoreCaps(),
            log_level=env.get("TRUSTLINK_LOG_LEVEL", "INFO"),
        )


__all__ = ["Settings", "ScoreCaps"]
