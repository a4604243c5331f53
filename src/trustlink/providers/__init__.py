"""Identity proof verifiers: messaging mini-app, wallet signature, social OAuth2."""

from .messaging import MiniAppUser, MiniAppVerifier, estimate_account_age_days
from .social import (
    AuthorizationRequest,
    OAuthPhase,
    SocialCallbackResult,
    SocialOAuthVerifier,
    SocialRefreshResult,
    StatePayload,
)
from .wallet import WalletProof, WalletVerifier, extract_timestamp_ms

__all__ = [
    "MiniAppUser",
    "MiniAppVerifier",
    "estimate_account_age_days",
    "WalletProof",
    "WalletVerifier",
    "extract_timestamp_ms",
    "AuthorizationRequest",
    "OAuthPhase",
    "SocialCallbackResult",
    "SocialOAuthVerifier",
    "SocialRefreshResult",
    "StatePayload",
]
