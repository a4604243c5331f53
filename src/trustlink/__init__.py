"""trustlink — Identity verification, account linking, merging and trust scoring."""

from trustlink.config import ScoreCaps, Settings
from trustlink.errors import (
    AccountExists, AlreadyLinked, ExpiredProof, InvalidProof, NotFound,
    PartialMergeFailure, ProviderUnavailable, StorageError, TrustLinkError,
    UniqueViolation,
)
from trustlink.models import (
    Account, IdentityLink, LoginResult, Profile, ProviderKind, ScoreResult,
    TrustSignals, VerifiedIdentity,
)
from trustlink.signatures import SignatureVerifier
from trustlink.storage import (
    AccountDirectory, MemoryStore, RecordStore, SQLiteStore, StoreAccountDirectory,
    UniqueConstraint,
)
from trustlink.providers import (
    MiniAppVerifier, SocialOAuthVerifier, WalletProof, WalletVerifier,
    estimate_account_age_days,
)
from trustlink.resolver import AccountResolver
from trustlink.uniqueness import UniquenessGuard
from trustlink.scoring import TrustScoreEngine, score
from trustlink.signals import SignalLedger
from trustlink.merge import (
    BulkReassign, EntitySpec, FillBlank, MergeEngine, MergePolicy, MergeReport,
    MergeTakeBest, PreferTargetElseMove, ReassignOrDeleteDuplicate, ReassignOrDrop,
)
from trustlink.enrichment import WalletEnricher, WalletEnrichment
from trustlink.flows import IdentityFlows
from trustlink.log import setup_structured_logging

__version__ = "0.1.0"
