"""
trustlink.providers.social — Social-network OAuth2 (PKCE) verification.

    Init ──begin()──▶ AwaitingCallback ──complete()──▶ Verified
                                         ├─ bad/denied state ─▶ Denied   (InvalidProof)
                                         └─ state > 10 min   ─▶ Expired  (ExpiredProof)

The state token carries the caller's account id, the PKCE verifier and the
issue time, HMAC-signed so the callback needs no server-side session:

    base64url(JSON{accountId, codeVerifier, issuedAtMs}) + "." + base64url(HMAC-SHA256)
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import OAUTH_STATE_TTL_MS, Settings
from ..errors import ExpiredProof, InvalidProof, ProviderUnavailable
from ..models import ProviderKind, VerifiedIdentity
from ..signatures import SignatureVerifier, b64url_encode

logger = logging.getLogger(__name__)

PREMIUM_VERIFIED_TYPE = "blue"

# Token endpoint replies that mean the grant itself is bad (revoked or reused)
GRANT_REJECTED_STATUSES = (400, 401)


class OAuthPhase(Enum):
    INIT = "init"
    AWAITING_CALLBACK = "awaiting_callback"
    VERIFIED = "verified"
    DENIED = "denied"
    EXPIRED = "expired"


class StatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(alias="accountId", min_length=1)
    code_verifier: str = Field(alias="codeVerifier", min_length=43)
    issued_at_ms: int = Field(alias="issuedAtMs")


@dataclass
class AuthorizationRequest:
    url: str
    state: str
    code_verifier: str
    code_challenge: str
    phase: OAuthPhase = OAuthPhase.AWAITING_CALLBACK


@dataclass
class SocialCallbackResult:
    identity: VerifiedIdentity
    account_id: str
    access_token: str
    refresh_token: Optional[str] = None
    phase: OAuthPhase = OAuthPhase.VERIFIED

    @property
    def handle(self) -> Optional[str]:
        return self.identity.claims.get("handle")

    @property
    def premium(self) -> bool:
        return bool(self.identity.claims.get("premium"))


@dataclass
class SocialRefreshResult:
    """Outcome of re-verifying a stored refresh token."""
    active: bool
    refresh_token: Optional[str] = None
    premium: Optional[bool] = None


def generate_pkce() -> tuple[str, str]:
    """Return (verifier, S256 challenge)."""
    verifier = b64url_encode(os.urandom(32))
    challenge = b64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


class SocialOAuthVerifier:
    """OAuth2 authorization-code + PKCE against the social provider."""

    def __init__(self, client_id: str, client_secret: str, callback_url: str,
                 state_secret: str,
                 authorize_url: str = "https://x.com/i/oauth2/authorize",
                 token_url: str = "https://api.x.com/2/oauth2/token",
                 revoke_url: str = "https://api.x.com/2/oauth2/revoke",
                 profile_url: str = "https://api.x.com/2/users/me",
                 scope: str = "tweet.read users.read offline.access",
                 state_ttl_ms: int = OAUTH_STATE_TTL_MS,
                 timeout: float = 15.0):
        if not client_id or not callback_url or not state_secret:
            raise ValueError("social OAuth requires client id, callback URL and state secret")
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self._state_secret = state_secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.revoke_url = revoke_url
        self.profile_url = profile_url
        self.scope = scope
        self.state_ttl_ms = state_ttl_ms
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SocialOAuthVerifier":
        return cls(
            client_id=settings.social_client_id,
            client_secret=settings.social_client_secret,
            callback_url=settings.social_callback_url,
            state_secret=settings.state_secret,
            authorize_url=settings.social_authorize_url,
            token_url=settings.social_token_url,
            revoke_url=settings.social_revoke_url,
            profile_url=settings.social_profile_url,
            scope=settings.social_scope,
            state_ttl_ms=settings.oauth_state_ttl_ms,
        )

    # ── Init → AwaitingCallback ──

    def begin(self, account_id: str, now_ms: Optional[int] = None) -> AuthorizationRequest:
        """Build the authorization URL for ``account_id``."""
        verifier, challenge = generate_pkce()
        issued = int(time.time() * 1000) if now_ms is None else now_ms
        state = SignatureVerifier.sign_token(
            {"accountId": account_id, "codeVerifier": verifier, "issuedAtMs": issued},
            self._state_secret,
        )
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.callback_url,
            "scope": self.scope,
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        return AuthorizationRequest(
            url=f"{self.authorize_url}?{urlencode(params)}",
            state=state,
            code_verifier=verifier,
            code_challenge=challenge,
        )

    def decode_state(self, state: str, now_ms: Optional[int] = None) -> StatePayload:
        """Verify the state token's HMAC and freshness."""
        try:
            raw = SignatureVerifier.verify_token(state, self._state_secret)
        except InvalidProof as e:
            e.details.setdefault("phase", OAuthPhase.DENIED)
            raise
        try:
            payload = StatePayload.model_validate(raw)
        except ValidationError as e:
            raise InvalidProof("state payload is incomplete", phase=OAuthPhase.DENIED) from e
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        if now_ms - payload.issued_at_ms > self.state_ttl_ms:
            raise ExpiredProof("OAuth state expired", phase=OAuthPhase.EXPIRED)
        return payload

    # ── AwaitingCallback → Verified ──

    async def complete(self, code: Optional[str], state: Optional[str],
                       error: Optional[str] = None,
                       now_ms: Optional[int] = None) -> SocialCallbackResult:
        """Handle the provider redirect: check state, exchange code, fetch profile."""
        if error or not code or not state:
            raise InvalidProof("authorization denied", phase=OAuthPhase.DENIED, provider_error=error or "")
        payload = self.decode_state(state, now_ms=now_ms)

        tokens = await self._token_request({
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.callback_url,
            "code_verifier": payload.code_verifier,
        })
        access_token = tokens.get("access_token")
        if not access_token:
            raise InvalidProof("token response has no access token")

        profile = await self._fetch_profile(access_token)
        user_id = profile.get("id")
        if not user_id:
            raise InvalidProof("profile response has no user id")

        identity = VerifiedIdentity(
            provider_kind=ProviderKind.SOCIAL,
            provider_id=str(user_id),
            claims={
                "handle": profile.get("username"),
                "premium": profile.get("verified_type") == PREMIUM_VERIFIED_TYPE,
            },
        )
        logger.info("social identity verified", extra={"account_id": payload.account_id,
                                                       "social_user_id": identity.provider_id})
        return SocialCallbackResult(
            identity=identity,
            account_id=payload.account_id,
            access_token=access_token,
            refresh_token=tokens.get("refresh_token"),
        )

    # ── Re-verification ──

    async def refresh(self, refresh_token: str) -> SocialRefreshResult:
        """Rotate a stored refresh token and re-read the premium flag.

        A 400/401 reply means the user revoked the app (``active=False``).
        Any other failure, a rate limit included, raises ProviderUnavailable.
        """
        try:
            tokens = await self._token_request({
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            })
        except InvalidProof:
            return SocialRefreshResult(active=False)

        premium = None
        access_token = tokens.get("access_token")
        if access_token:
            try:
                profile = await self._fetch_profile(access_token)
                premium = profile.get("verified_type") == PREMIUM_VERIFIED_TYPE
            except (InvalidProof, ProviderUnavailable) as e:
                logger.warning("premium re-check failed: %s", e)
        return SocialRefreshResult(
            active=True,
            refresh_token=tokens.get("refresh_token") or refresh_token,
            premium=premium,
        )

    async def revoke(self, token: str) -> bool:
        """Best-effort token revocation. Never raises."""
        if not token:
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    self.revoke_url,
                    data={"token": token, "token_type_hint": "refresh_token",
                          "client_id": self.client_id},
                    auth=(self.client_id, self.client_secret),
                )
        except httpx.HTTPError as e:
            logger.warning("token revocation unreachable: %s", e)
            return False
        if resp.status_code >= 400:
            logger.warning("token revocation rejected: HTTP %s", resp.status_code)
            return False
        return True

    # ── HTTP ──

    async def _token_request(self, form: dict) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.token_url, data=form,
                                         auth=(self.client_id, self.client_secret))
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"token endpoint unreachable: {e}") from e
        if resp.status_code in GRANT_REJECTED_STATUSES:
            logger.warning("token request rejected: HTTP %s %s", resp.status_code, resp.text[:200])
            raise InvalidProof("authorization grant rejected by provider",
                               status=resp.status_code)
        if resp.status_code >= 400:
            raise ProviderUnavailable(f"token endpoint returned {resp.status_code}",
                                      status=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderUnavailable("token endpoint returned non-JSON body") from e

    async def _fetch_profile(self, access_token: str) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(
                    self.profile_url,
                    params={"user.fields": "verified_type"},
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"profile endpoint unreachable: {e}") from e
        if resp.status_code >= 500:
            raise ProviderUnavailable(f"profile endpoint returned {resp.status_code}")
        if resp.status_code >= 400:
            raise InvalidProof("profile request rejected", status=resp.status_code)
        try:
            body = resp.json()
        except ValueError as e:
            raise ProviderUnavailable("profile endpoint returned non-JSON body") from e
        if not isinstance(body, dict):
            raise ProviderUnavailable("profile endpoint returned an unexpected body")
        return body.get("data") or {}
