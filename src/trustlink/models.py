"""
trustlink.models — Records shared by verifiers, resolver, merge and scoring.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProviderKind(Enum):
    """Kind of identity proof."""
    MESSAGING = "messaging"
    WALLET = "wallet"
    SOCIAL = "social"

    @property
    def durable(self) -> bool:
        """Wallet and social proofs are durable; a messaging id alone is a placeholder."""
        return self is not ProviderKind.MESSAGING


# ─── Identity ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class VerifiedIdentity:
    """Normalized result of a successful provider verification."""
    provider_kind: ProviderKind
    provider_id: str
    claims: dict = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict:
        return {
            "provider_kind": self.provider_kind.value,
            "provider_id": self.provider_id,
            "claims": dict(self.claims),
        }


@dataclass
class IdentityLink:
    """(provider_kind, provider_id) -> account_id."""
    provider_kind: ProviderKind
    provider_id: str
    account_id: str
    handle: Optional[str] = None
    linked_at: str = field(default_factory=utcnow_iso)
    id: Optional[str] = None

    def to_row(self) -> dict:
        row = {
            "provider_kind": self.provider_kind.value,
            "provider_id": self.provider_id,
            "account_id": self.account_id,
            "handle": self.handle,
            "linked_at": self.linked_at,
        }
        if self.id:
            row["id"] = self.id
        return row

    @classmethod
    def from_row(cls, row: dict) -> "IdentityLink":
        return cls(
            provider_kind=ProviderKind(row["provider_kind"]),
            provider_id=row["provider_id"],
            account_id=row["account_id"],
            handle=row.get("handle"),
            linked_at=row.get("linked_at") or utcnow_iso(),
            id=row.get("id"),
        )


@dataclass
class Account:
    """Row of the external identity store: id -> login handle."""
    id: str
    handle: str
    created_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_row(cls, row: dict) -> "Account":
        return cls(id=row["id"], handle=row["handle"], created_at=row.get("created_at") or utcnow_iso())


# ─── Trust signals ─────────────────────────────────────────────────

RAW_SIGNAL_FIELDS = (
    "total_handshakes",
    "wallet_connected",
    "wallet_address",
    "wallet_age_days",
    "wallet_tx_count",
    "wallet_has_tokens",
    "messaging_premium",
    "has_username",
    "messaging_account_age_days",
    "social_verified",
    "social_premium",
    "social_user_id",
    "social_handle",
    "social_refresh_token",
    "events_attended",
    "community_points",
)

SCORE_FIELDS = (
    "trust_score",
    "score_handshakes",
    "score_wallet",
    "score_social",
    "score_events",
    "score_community",
    "trust_level",
)


@dataclass
class TrustSignals:
    """One row per account: raw facts plus the last computed scores."""
    account_id: str
    total_handshakes: int = 0
    wallet_connected: bool = False
    wallet_address: Optional[str] = None
    wallet_age_days: Optional[int] = None
    wallet_tx_count: Optional[int] = None
    wallet_has_tokens: bool = False
    messaging_premium: bool = False
    has_username: bool = False
    messaging_account_age_days: Optional[int] = None
    social_verified: bool = False
    social_premium: bool = False
    social_user_id: Optional[str] = None
    social_handle: Optional[str] = None
    social_refresh_token: Optional[str] = None
    events_attended: int = 0
    community_points: int = 0
    trust_score: int = 0
    score_handshakes: int = 0
    score_wallet: int = 0
    score_social: int = 0
    score_events: int = 0
    score_community: int = 0
    trust_level: int = 1
    updated_at: Optional[str] = None

    def to_row(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> "TrustSignals":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in row.items() if k in known})

    def raw(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in RAW_SIGNAL_FIELDS}


# ─── Profile ───────────────────────────────────────────────────────

PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "company",
    "position",
    "bio",
    "social_handle",
    "linkedin_url",
    "website",
    "avatar_url",
)


@dataclass
class Profile:
    account_id: str
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    position: str = ""
    bio: str = ""
    social_handle: str = ""
    linkedin_url: str = ""
    website: str = ""
    avatar_url: str = ""
    updated_at: Optional[str] = None

    def to_row(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> "Profile":
        known = {f.name for f in fields(cls)}
        return cls(**{k: (v if v is not None else "") if k in PROFILE_FIELDS else v
                      for k, v in row.items() if k in known})


# ─── Results ───────────────────────────────────────────────────────

CATEGORIES = ("handshakes", "wallet", "social", "events", "community")


@dataclass(frozen=True)
class ScoreResult:
    """Composite 0-100 score and its five category sub-scores."""
    handshakes: int
    wallet: int
    social: int
    events: int
    community: int
    trust_level: int

    @property
    def composite(self) -> int:
        return self.handshakes + self.wallet + self.social + self.events + self.community

    @property
    def categories(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in CATEGORIES}

    def to_dict(self) -> dict:
        return {
            "composite": self.composite,
            "categories": self.categories,
            "trust_level": self.trust_level,
        }

    def as_columns(self) -> dict:
        """Column values persisted next to the raw signals."""
        return {
            "trust_score": self.composite,
            "score_handshakes": self.handshakes,
            "score_wallet": self.wallet,
            "score_social": self.social,
            "score_events": self.events,
            "score_community": self.community,
            "trust_level": self.trust_level,
        }


@dataclass
class LoginResult:
    """What the core hands back to the session-issuing collaborator."""
    account_id: str
    is_new_account: bool = False
    merged_from: Optional[str] = None
    merge_pending: bool = False
    score: Optional[ScoreResult] = None

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "is_new_account": self.is_new_account,
            "merged_from": self.merged_from,
            "merge_pending": self.merge_pending,
            "score": self.score.to_dict() if self.score else None,
        }


__all__ = [
    "ProviderKind",
    "VerifiedIdentity",
    "IdentityLink",
    "Account",
    "TrustSignals",
    "Profile",
    "ScoreResult",
    "LoginResult",
    "RAW_SIGNAL_FIELDS",
    "SCORE_FIELDS",
    "PROFILE_FIELDS",
    "CATEGORIES",
    "utcnow_iso",
]
