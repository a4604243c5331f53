"""
trustlink.flows — Login, link, connect and disconnect orchestration.

    verifier ──▶ resolver ──▶ (merge) ──▶ signals + score ──▶ LoginResult

The LoginResult's account id is what the caller hands to its session issuer.
A PartialMergeFailure inside a flow is recorded for resume_pending() and the
flow still returns a usable account with ``merge_pending=True``.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from .config import Settings
from .enrichment import WalletEnricher
from .errors import AlreadyLinked, NotFound, PartialMergeFailure, ProviderUnavailable
from .log import new_flow_id
from .merge import MergeEngine
from .models import LoginResult, ProviderKind, ScoreResult, VerifiedIdentity
from .providers.messaging import MiniAppVerifier, estimate_account_age_days
from .providers.social import AuthorizationRequest, SocialOAuthVerifier
from .providers.wallet import WalletProof, WalletVerifier
from .resolver import AccountResolver
from .scoring import TrustScoreEngine
from .signals import SignalLedger
from .storage import AccountDirectory, RecordStore, SQLiteStore, StoreAccountDirectory
from .uniqueness import UniquenessGuard

logger = logging.getLogger(__name__)


class IdentityFlows:
    """Wires verifiers, resolver, guard, merge and scoring over one store."""

    def __init__(self, settings: Optional[Settings] = None,
                 store: Optional[RecordStore] = None,
                 directory: Optional[AccountDirectory] = None,
                 messaging: Optional[MiniAppVerifier] = None,
                 wallet: Optional[WalletVerifier] = None,
                 social: Optional[SocialOAuthVerifier] = None,
                 enricher: Optional[WalletEnricher] = None):
        self.settings = settings or Settings.from_env()
        self.store = store if store is not None else SQLiteStore(self.settings.db_path)
        self.directory = directory or StoreAccountDirectory(self.store)

        self.engine = TrustScoreEngine(self.store, self.settings.score_caps)
        self.resolver = AccountResolver(self.store, self.directory, self.settings.placeholder_domain)
        self.guard = UniquenessGuard(self.store)
        self.ledger = SignalLedger(self.store, self.engine, self.guard, self.resolver)
        self.merger = MergeEngine(self.store, self.directory, self.engine)

        self._messaging = messaging
        self._wallet = wallet
        self._social = social
        self._enricher = enricher

    # ── Verifiers (built on first use so unused providers need no config) ──

    @property
    def messaging(self) -> MiniAppVerifier:
        if self._messaging is None:
            self._messaging = MiniAppVerifier.from_settings(self.settings)
        return self._messaging

    @property
    def wallet(self) -> WalletVerifier:
        if self._wallet is None:
            self._wallet = WalletVerifier.from_settings(self.settings)
        return self._wallet

    @property
    def social(self) -> SocialOAuthVerifier:
        if self._social is None:
            self._social = SocialOAuthVerifier.from_settings(self.settings)
        return self._social

    @property
    def enricher(self) -> WalletEnricher:
        if self._enricher is None:
            self._enricher = WalletEnricher.from_settings(self.settings)
        return self._enricher

    # ─── Login ─────────────────────────────────────────────────────

    def login_with_messaging(self, init_data: str, now: Optional[float] = None) -> LoginResult:
        new_flow_id()
        identity = self.messaging.verify(init_data, now=now)
        account_id, is_new = self.resolver.resolve(identity)
        score = self._messaging_signals(account_id, identity)
        logger.info("messaging login", extra={"account_id": account_id, "new_account": is_new})
        return LoginResult(account_id=account_id, is_new_account=is_new, score=score)

    def login_with_wallet(self, proof: Union[WalletProof, dict],
                          current_account_id: Optional[str] = None,
                          now_ms: Optional[int] = None) -> LoginResult:
        """Log in with a wallet signature, or link it when ``current_account_id`` is given."""
        new_flow_id()
        identity = self.wallet.verify(proof, now_ms=now_ms)
        if current_account_id:
            return self._link(current_account_id, identity)

        # A wallet verified before links existed routes to its owner
        conflict = self.guard.check(ProviderKind.WALLET, identity.provider_id, None)
        if conflict and conflict.matched_on != "identity_link":
            self.resolver.link(identity, conflict.owner_account_id)
            account_id, is_new = conflict.owner_account_id, False
        else:
            account_id, is_new = self.resolver.resolve(identity)

        score = self.ledger.mark_wallet_verified(account_id, identity.provider_id)
        logger.info("wallet login", extra={"account_id": account_id, "new_account": is_new})
        return LoginResult(account_id=account_id, is_new_account=is_new, score=score)

    # ─── Link ──────────────────────────────────────────────────────

    def link_identity(self, account_id: str, identity: VerifiedIdentity,
                      refresh_token: Optional[str] = None) -> LoginResult:
        """Attach a verified proof to ``account_id``.

        If the proof already belongs to another account, the placeholder side
        is merged into the other one. Two durable accounts are never merged:
        that raises AlreadyLinked.
        """
        new_flow_id()
        return self._link(account_id, identity, refresh_token)

    def _link(self, account_id: str, identity: VerifiedIdentity,
              refresh_token: Optional[str] = None) -> LoginResult:
        if self.directory.get_account(account_id) is None:
            raise NotFound(f"account {account_id} does not exist", account_id=account_id)
        self.guard.ensure_single_per_account(identity.provider_kind, identity.provider_id, account_id)

        link = self.resolver.lookup(identity.provider_kind, identity.provider_id)
        owner = link.account_id if link and link.account_id != account_id else None
        if owner is not None and self.directory.get_account(owner) is None:
            owner = None

        if owner is None:
            score = self._mark_verified(account_id, identity, refresh_token)
            return LoginResult(account_id=account_id, score=score)

        if self.resolver.is_placeholder(owner):
            source, target = owner, account_id
        elif self.resolver.is_placeholder(account_id):
            source, target = account_id, owner
        else:
            raise AlreadyLinked(
                f"this {identity.provider_kind.value} identity belongs to another account",
                owner_account_id=owner,
            )

        logger.info("identity owned by another account, merging",
                    extra={"source": source, "target": target,
                           "provider_kind": identity.provider_kind.value})
        try:
            self.merger.merge(source, target)
        except PartialMergeFailure as e:
            self.merger.record_pending(e)
            return LoginResult(account_id=target, merged_from=source, merge_pending=True,
                               score=self.engine.recompute(target))

        score = self._mark_verified(target, identity, refresh_token)
        return LoginResult(account_id=target, merged_from=source, score=score)

    def _mark_verified(self, account_id: str, identity: VerifiedIdentity,
                       refresh_token: Optional[str] = None) -> ScoreResult:
        kind = identity.provider_kind
        if kind is ProviderKind.WALLET:
            return self.ledger.mark_wallet_verified(account_id, identity.provider_id)
        if kind is ProviderKind.SOCIAL:
            return self.ledger.mark_social_verified(account_id, identity, refresh_token=refresh_token)
        self.ledger.claim(identity, account_id)
        return self._messaging_signals(account_id, identity)

    def _messaging_signals(self, account_id: str, identity: VerifiedIdentity) -> ScoreResult:
        changes = {
            "messaging_premium": bool(identity.claims.get("is_premium")),
            "has_username": bool(identity.claims.get("handle")),
        }
        # First observed age wins
        if self.ledger.get(account_id).messaging_account_age_days is None:
            age = estimate_account_age_days(int(identity.provider_id))
            if age is not None:
                changes["messaging_account_age_days"] = age
        return self.ledger.report(account_id, **changes)

    # ─── Social connect / disconnect ───────────────────────────────

    def begin_social_connect(self, account_id: str, now_ms: Optional[int] = None) -> AuthorizationRequest:
        new_flow_id()
        if self.directory.get_account(account_id) is None:
            raise NotFound(f"account {account_id} does not exist", account_id=account_id)
        return self.social.begin(account_id, now_ms=now_ms)

    async def complete_social_connect(self, code: Optional[str], state: Optional[str],
                                      error: Optional[str] = None,
                                      now_ms: Optional[int] = None) -> LoginResult:
        new_flow_id()
        result = await self.social.complete(code, state, error=error, now_ms=now_ms)
        return self._link(result.account_id, result.identity, refresh_token=result.refresh_token)

    async def disconnect_social(self, account_id: str) -> ScoreResult:
        """Clear social signals and the link; revocation at the provider is best-effort."""
        new_flow_id()
        token = self.ledger.get(account_id).social_refresh_token
        score = self.ledger.clear_social(account_id)
        self.resolver.unlink(ProviderKind.SOCIAL, account_id)
        if token:
            if self.settings.social_configured or self._social is not None:
                await self.social.revoke(token)
            else:
                logger.warning("social OAuth not configured, token not revoked",
                               extra={"account_id": account_id})
        logger.info("social disconnected", extra={"account_id": account_id})
        return score

    async def reverify_social(self, account_id: str) -> ScoreResult:
        """Rotate the stored refresh token and re-read the premium flag."""
        new_flow_id()
        signals = self.ledger.get(account_id)
        if not signals.social_verified or not signals.social_refresh_token:
            return self.engine.score(signals)

        try:
            refreshed = await self.social.refresh(signals.social_refresh_token)
        except ProviderUnavailable as e:
            logger.warning("social re-verification unavailable, keeping signals: %s", e,
                           extra={"account_id": account_id})
            return self.engine.score(signals)

        if not refreshed.active:
            logger.info("social authorization revoked by user", extra={"account_id": account_id})
            score = self.ledger.clear_social(account_id)
            self.resolver.unlink(ProviderKind.SOCIAL, account_id)
            return score

        changes: dict = {"social_refresh_token": refreshed.refresh_token}
        if refreshed.premium is not None:
            changes["social_premium"] = refreshed.premium
        return self.ledger.report(account_id, **changes)

    # ─── Wallet enrichment ─────────────────────────────────────────

    async def refresh_wallet_signals(self, account_id: str) -> ScoreResult:
        new_flow_id()
        signals = self.ledger.get(account_id)
        if not signals.wallet_connected or not signals.wallet_address:
            return self.engine.score(signals)

        enrichment = await self.enricher.enrich(signals.wallet_address)
        changes = enrichment.as_signals()
        if changes["wallet_age_days"] is None:
            changes.pop("wallet_age_days")
        return self.ledger.report(account_id, **changes)

    # ─── Read model ────────────────────────────────────────────────

    def get_score(self, account_id: str) -> ScoreResult:
        return self.engine.score(self.ledger.get(account_id))


__all__ = ["IdentityFlows"]
