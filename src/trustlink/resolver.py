"""
trustlink.resolver — Map verified identities to accounts.

An IdentityLink row is the primary mapping. The deterministic placeholder
handle (``<kind>_<provider id>@<domain>``) is only a backstop key: it lets a
retried login find the account a crashed earlier attempt created before its
link was written.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import DEFAULT_PLACEHOLDER_DOMAIN
from .errors import AccountExists, AlreadyLinked, NotFound, UniqueViolation
from .models import Account, IdentityLink, ProviderKind, VerifiedIdentity, utcnow_iso
from .storage import IDENTITY_LINKS, AccountDirectory, RecordStore

logger = logging.getLogger(__name__)


class AccountResolver:
    """Find or provision the account behind a verified identity."""

    SCAN_PAGE_SIZE = 50
    MAX_SCAN_PAGES = 200

    def __init__(self, store: RecordStore, directory: AccountDirectory,
                 placeholder_domain: str = DEFAULT_PLACEHOLDER_DOMAIN):
        self._store = store
        self.directory = directory
        self.placeholder_domain = placeholder_domain

    # ── Placeholder handles ──

    def placeholder_handle(self, kind: ProviderKind, provider_id: str) -> str:
        return f"{kind.value}_{provider_id}@{self.placeholder_domain}"

    def parse_placeholder_handle(self, handle: str) -> Optional[tuple[ProviderKind, str]]:
        local, _, domain = handle.rpartition("@")
        if domain != self.placeholder_domain:
            return None
        kind, sep, provider_id = local.partition("_")
        if not sep or not provider_id:
            return None
        try:
            return ProviderKind(kind), provider_id
        except ValueError:
            return None

    def find_account_by_handle(self, handle: str) -> Optional[Account]:
        """Bounded paginated scan of the directory for ``handle``."""
        for page in range(1, self.MAX_SCAN_PAGES + 1):
            accounts = self.directory.list_accounts(page=page, per_page=self.SCAN_PAGE_SIZE)
            for account in accounts:
                if account.handle == handle:
                    return account
            if len(accounts) < self.SCAN_PAGE_SIZE:
                return None
        logger.warning("handle scan hit page limit", extra={"handle": handle})
        return None

    # ── Links ──

    def lookup(self, kind: ProviderKind, provider_id: str) -> Optional[IdentityLink]:
        row = self._store.select_one(IDENTITY_LINKS, {"provider_kind": kind.value,
                                                      "provider_id": provider_id})
        return IdentityLink.from_row(row) if row else None

    def links_for(self, account_id: str) -> list[IdentityLink]:
        return [IdentityLink.from_row(r)
                for r in self._store.select(IDENTITY_LINKS, {"account_id": account_id})]

    def is_placeholder(self, account_id: str) -> bool:
        """True when the account holds no durable (wallet or social) proof."""
        return not any(link.provider_kind.durable for link in self.links_for(account_id))

    def link(self, identity: VerifiedIdentity, account_id: str) -> IdentityLink:
        """Create the link for ``identity`` on ``account_id``, or refresh it if it is already there.

        Raises AlreadyLinked when the storage constraint shows another owner.
        """
        link = IdentityLink(
            provider_kind=identity.provider_kind,
            provider_id=identity.provider_id,
            account_id=account_id,
            handle=identity.claims.get("handle"),
        )
        try:
            row = self._store.insert(IDENTITY_LINKS, link.to_row())
            return IdentityLink.from_row(row)
        except UniqueViolation:
            existing = self.lookup(identity.provider_kind, identity.provider_id)
            if existing is None:
                raise
            if existing.account_id != account_id:
                raise AlreadyLinked(
                    f"{identity.provider_kind.value} identity belongs to another account",
                    owner_account_id=existing.account_id,
                    provider_kind=identity.provider_kind.value,
                )
            self._refresh(existing, identity)
            return existing

    def unlink(self, kind: ProviderKind, account_id: str) -> int:
        return self._store.delete(IDENTITY_LINKS, {"provider_kind": kind.value,
                                                   "account_id": account_id})

    def _refresh(self, link: IdentityLink, identity: VerifiedIdentity) -> None:
        handle = identity.claims.get("handle")
        values = {"refreshed_at": utcnow_iso()}
        if handle:
            values["handle"] = handle
        self._store.update(IDENTITY_LINKS, {"id": link.id}, values)

    # ── Resolve ──

    def resolve(self, identity: VerifiedIdentity) -> tuple[str, bool]:
        """Return (account_id, is_new_account) for ``identity``. Idempotent."""
        link = self.lookup(identity.provider_kind, identity.provider_id)
        if link is not None:
            if self.directory.get_account(link.account_id) is not None:
                self._refresh(link, identity)
                return link.account_id, False
            logger.warning("identity link points at a missing account, re-provisioning",
                           extra={"account_id": link.account_id,
                                  "provider_kind": identity.provider_kind.value})
            self._store.delete(IDENTITY_LINKS, {"id": link.id})

        handle = self.placeholder_handle(identity.provider_kind, identity.provider_id)
        is_new = True
        try:
            account = self.directory.create_account(handle)
        except AccountExists:
            # Earlier attempt created the account but crashed before linking
            account = self.find_account_by_handle(handle)
            if account is None:
                raise NotFound(f"account {handle!r} reported as existing but not found")
            is_new = False

        try:
            self.link(identity, account.id)
        except AlreadyLinked as e:
            # A concurrent resolve linked it first
            logger.info("lost identity link race", extra={"handle": handle})
            return e.owner_account_id, False

        logger.info("identity resolved", extra={"account_id": account.id, "new_account": is_new,
                                                "provider_kind": identity.provider_kind.value})
        return account.id, is_new


__all__ = ["AccountResolver"]
