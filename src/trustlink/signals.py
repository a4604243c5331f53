"""
trustlink.signals — Trust signal writes.

A write touches only the signals it names, then the score is recomputed from
the stored row, so concurrent writers never revert each other and the stored
composite always matches the stored signals.
Verified wallet / social flags pass the UniquenessGuard first and claim the
identity link, whose unique constraint is the storage-level backstop.
"""

from __future__ import annotations

import logging
from typing import Optional

from .errors import AlreadyLinked, UniqueViolation
from .models import (
    RAW_SIGNAL_FIELDS,
    Profile,
    ProviderKind,
    ScoreResult,
    TrustSignals,
    VerifiedIdentity,
    utcnow_iso,
)
from .resolver import AccountResolver
from .scoring import TrustScoreEngine
from .storage import PROFILES, TRUST_SIGNALS, RecordStore
from .uniqueness import UniquenessGuard

logger = logging.getLogger(__name__)


class SignalLedger:
    def __init__(self, store: RecordStore, engine: TrustScoreEngine,
                 guard: UniquenessGuard, resolver: AccountResolver):
        self._store = store
        self.engine = engine
        self.guard = guard
        self.resolver = resolver

    def get(self, account_id: str) -> TrustSignals:
        row = self._store.select_one(TRUST_SIGNALS, {"account_id": account_id})
        return TrustSignals.from_row(row) if row else TrustSignals(account_id=account_id)

    def report(self, account_id: str, **changes) -> ScoreResult:
        """Write only the given raw signals, then rescore from the stored row."""
        unknown = set(changes) - set(RAW_SIGNAL_FIELDS)
        if unknown:
            raise ValueError(f"unknown trust signals: {', '.join(sorted(unknown))}")

        where = {"account_id": account_id}
        if changes and not self._store.update(TRUST_SIGNALS, where, changes):
            row = {**TrustSignals(account_id=account_id).to_row(), **changes, "account_id": account_id}
            try:
                self._store.insert(TRUST_SIGNALS, row)
            except UniqueViolation:
                # Row created concurrently
                self._store.update(TRUST_SIGNALS, where, changes)

        result = self.engine.recompute(account_id)
        logger.info("trust signals updated", extra={"account_id": account_id,
                                                    "signals": sorted(changes),
                                                    "trust_score": result.composite})
        return result

    # ── Verified flags ──

    def claim(self, identity: VerifiedIdentity, account_id: str, handle: Optional[str] = None) -> None:
        """Pre-check, then write the identity link (the authoritative claim)."""
        self.guard.ensure_single_per_account(identity.provider_kind, identity.provider_id, account_id)
        self.guard.ensure_unique(identity.provider_kind, identity.provider_id, account_id, handle=handle)
        try:
            self.resolver.link(identity, account_id)
        except UniqueViolation as e:
            raise AlreadyLinked(f"{identity.provider_kind.value} identity was claimed concurrently") from e

    def mark_wallet_verified(self, account_id: str, address: str) -> ScoreResult:
        self.claim(VerifiedIdentity(ProviderKind.WALLET, address), account_id)
        return self.report(account_id, wallet_connected=True, wallet_address=address)

    def mark_social_verified(self, account_id: str, identity: VerifiedIdentity,
                             refresh_token: Optional[str] = None) -> ScoreResult:
        handle = identity.claims.get("handle")
        self.claim(identity, account_id, handle=handle)
        if handle:
            self._set_profile_handle(account_id, f"@{handle.lstrip('@')}")
        current = self.get(account_id)
        return self.report(
            account_id,
            social_verified=True,
            social_premium=bool(identity.claims.get("premium")),
            social_user_id=identity.provider_id,
            social_handle=handle,
            social_refresh_token=refresh_token or current.social_refresh_token,
        )

    def _set_profile_handle(self, account_id: str, handle: str) -> None:
        values = {"social_handle": handle, "updated_at": utcnow_iso()}
        where = {"account_id": account_id}
        if self._store.update(PROFILES, where, values):
            return
        try:
            self._store.insert(PROFILES, {**Profile(account_id=account_id).to_row(), **values})
        except UniqueViolation:
            self._store.update(PROFILES, where, values)

    def clear_social(self, account_id: str) -> ScoreResult:
        return self.report(
            account_id,
            social_verified=False,
            social_premium=False,
            social_user_id=None,
            social_handle=None,
            social_refresh_token=None,
        )


__all__ = ["SignalLedger"]
