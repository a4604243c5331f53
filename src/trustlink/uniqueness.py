"""
trustlink.uniqueness — Cross-account exclusivity pre-check.

Runs before any ``verified = true`` wallet or social signal is written. It is
a fast-fail check only: the check and the following write are separate
storage calls, so two concurrent claims can both pass. The unique constraint
on identity_links(provider_kind, provider_id) is what finally rejects the
loser (see AccountResolver.link).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import AlreadyLinked
from .models import ProviderKind
from .storage import IDENTITY_LINKS, PROFILES, TRUST_SIGNALS, RecordStore

logger = logging.getLogger(__name__)


def normalize_handle(handle: Optional[str]) -> str:
    return (handle or "").strip().lstrip("@").lower()


@dataclass
class UniquenessConflict:
    kind: ProviderKind
    key: str
    owner_account_id: str
    matched_on: str  # identity_link | address | provider_id | handle


class UniquenessGuard:
    def __init__(self, store: RecordStore):
        self._store = store

    def check(self, kind: ProviderKind, key: str, exclude_account_id: Optional[str],
              handle: Optional[str] = None) -> Optional[UniquenessConflict]:
        """Return the conflicting claim held by another account, if any."""
        link = self._store.select_one(IDENTITY_LINKS, {"provider_kind": kind.value, "provider_id": key})
        if link and link["account_id"] != exclude_account_id:
            return UniquenessConflict(kind, key, link["account_id"], "identity_link")

        if kind is ProviderKind.WALLET:
            for row in self._store.select(TRUST_SIGNALS, {"wallet_address": key, "wallet_connected": True}):
                if row["account_id"] != exclude_account_id:
                    return UniquenessConflict(kind, key, row["account_id"], "address")

        elif kind is ProviderKind.SOCIAL:
            for row in self._store.select(TRUST_SIGNALS, {"social_user_id": key}):
                if row["account_id"] != exclude_account_id:
                    return UniquenessConflict(kind, key, row["account_id"], "provider_id")
            if handle:
                conflict = self._legacy_handle_owner(normalize_handle(handle), exclude_account_id)
                if conflict:
                    return UniquenessConflict(kind, key, conflict, "handle")

        return None

    def _legacy_handle_owner(self, wanted: str, exclude_account_id: Optional[str]) -> Optional[str]:
        """Accounts verified before the provider id was captured only have a handle."""
        if not wanted:
            return None
        legacy = self._store.select(TRUST_SIGNALS, {"social_verified": True, "social_user_id": None})
        for row in legacy:
            account_id = row["account_id"]
            if account_id == exclude_account_id:
                continue
            stored = row.get("social_handle")
            if not stored:
                profile = self._store.select_one(PROFILES, {"account_id": account_id})
                stored = profile.get("social_handle") if profile else None
            if normalize_handle(stored) == wanted:
                return account_id
        return None

    def ensure_single_per_account(self, kind: ProviderKind, key: str, account_id: str) -> None:
        """An account holds at most one identity of each kind."""
        for link in self._store.select(IDENTITY_LINKS, {"provider_kind": kind.value,
                                                        "account_id": account_id}):
            if link["provider_id"] != key:
                raise AlreadyLinked(
                    f"account already has a different {kind.value} identity linked",
                    owner_account_id=account_id,
                    matched_on="account",
                )

    def ensure_unique(self, kind: ProviderKind, key: str, exclude_account_id: Optional[str],
                      handle: Optional[str] = None) -> None:
        """Raise AlreadyLinked instead of returning the conflict."""
        conflict = self.check(kind, key, exclude_account_id, handle=handle)
        if conflict:
            logger.info("uniqueness conflict", extra={"provider_kind": kind.value,
                                                      "matched_on": conflict.matched_on,
                                                      "account_id": exclude_account_id})
            raise AlreadyLinked(
                f"this {kind.value} identity is already linked to another account",
                owner_account_id=conflict.owner_account_id,
                matched_on=conflict.matched_on,
            )


__all__ = ["UniquenessGuard", "UniquenessConflict", "normalize_handle"]
