"""
trustlink.errors — Error taxonomy for verification, resolution and merge.

Cryptographic and freshness failures are terminal for a request.
ProviderUnavailable is retryable by the caller; the core never retries.
PartialMergeFailure is recovered by re-running the merge.
"""

from typing import Optional


class TrustLinkError(Exception):
    """Base class for all trustlink errors."""

    retryable = False

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            **{k: str(v) for k, v in self.details.items()},
        }


class InvalidProof(TrustLinkError):
    """Signature, HMAC or proof structure did not check out."""


class ExpiredProof(TrustLinkError):
    """Proof timestamp is outside its freshness window."""


class AlreadyLinked(TrustLinkError):
    """The wallet, handle or provider id already belongs to another account."""

    def __init__(self, message: str = "", owner_account_id: Optional[str] = None, **details):
        super().__init__(message, **details)
        self.owner_account_id = owner_account_id


class ProviderUnavailable(TrustLinkError):
    """Upstream provider was unreachable or could not serve the request."""

    retryable = True


class NotFound(TrustLinkError):
    """Referenced account or record does not exist."""


class PartialMergeFailure(TrustLinkError):
    """A merge step failed; the merge can be resumed by re-running it."""

    def __init__(self, source: str, target: str, step: str,
                 completed: Optional[list[str]] = None, message: str = ""):
        super().__init__(message or f"merge {source} -> {target} failed at step {step}",
                         source=source, target=target, step=step)
        self.source = source
        self.target = target
        self.step = step
        self.completed = list(completed or [])


# ─── Storage ───────────────────────────────────────────────────────

class StorageError(TrustLinkError):
    """Backend read/write failure."""


class UniqueViolation(StorageError):
    """A write would break a declared unique constraint."""

    def __init__(self, table: str, columns: tuple, values: tuple = ()):
        super().__init__(f"unique constraint on {table}({', '.join(columns)}) violated",
                         table=table, columns=",".join(columns))
        self.table = table
        self.columns = columns
        self.values = values


class AccountExists(StorageError):
    """An account with this login handle already exists."""

    def __init__(self, handle: str):
        super().__init__(f"account with handle {handle!r} already exists", handle=handle)
        self.handle = handle


__all__ = [
    "TrustLinkError",
    "InvalidProof",
    "ExpiredProof",
    "AlreadyLinked",
    "ProviderUnavailable",
    "NotFound",
    "PartialMergeFailure",
    "StorageError",
    "UniqueViolation",
    "AccountExists",
]
