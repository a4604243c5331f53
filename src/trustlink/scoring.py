"""
Trust score engine — five capped, saturating categories.

Categories (default caps, configurable through ScoreCaps):
  Handshakes  30  — completed handshakes
  Wallet      20  — verified wallet, wallet age, tx count, token holdings
  Social      20  — messaging premium / username / account age, social verified / premium
  Events      20  — events attended
  Community   10  — community points

Each category is cap × saturation(signals), rounded to an integer, so the
composite is exactly the sum of the categories and never exceeds 100.
score() is pure; TrustScoreEngine.recompute() persists its result next to
the raw signals.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Union

from .config import ScoreCaps
from .models import ScoreResult, TrustSignals, utcnow_iso
from .storage import TRUST_SIGNALS, RecordStore

logger = logging.getLogger(__name__)

# Counter value at which a saturating signal reaches ~63% of its share
HANDSHAKE_SCALE = 15
WALLET_AGE_SCALE_DAYS = 90
WALLET_TX_SCALE = 20
MESSAGING_AGE_SCALE_DAYS = 365
EVENTS_SCALE = 5
COMMUNITY_SCALE = 50


def saturation(value: Optional[float], scale: float) -> float:
    """1 - e^(-value/scale): 0 at 0, diminishing returns, approaches 1."""
    if not value or value <= 0:
        return 0.0
    return 1.0 - math.exp(-value / scale)


def trust_level(composite: int) -> int:
    """Legacy 1-5 level for the 0-100 composite."""
    if composite >= 60:
        return 5
    if composite >= 40:
        return 4
    if composite >= 25:
        return 3
    if composite >= 10:
        return 2
    return 1


def _capped(cap: int, fraction: float) -> int:
    return max(0, min(cap, int(round(cap * fraction))))


def score(signals: Union[TrustSignals, dict], caps: Optional[ScoreCaps] = None) -> ScoreResult:
    """Compute the category scores for one signals row. Pure and order-independent."""
    caps = caps or ScoreCaps()
    if isinstance(signals, dict):
        signals = TrustSignals.from_row({"account_id": "", **signals})
    s = signals

    handshakes = _capped(caps.handshakes, saturation(s.total_handshakes, HANDSHAKE_SCALE))

    wallet = _capped(caps.wallet, 0.25 * (
        float(bool(s.wallet_connected))
        + saturation(s.wallet_age_days, WALLET_AGE_SCALE_DAYS)
        + saturation(s.wallet_tx_count, WALLET_TX_SCALE)
        + float(bool(s.wallet_has_tokens))
    ))

    social = _capped(caps.social, 0.2 * (
        float(bool(s.messaging_premium))
        + float(bool(s.has_username))
        + saturation(s.messaging_account_age_days, MESSAGING_AGE_SCALE_DAYS)
        + float(bool(s.social_verified))
        + float(bool(s.social_premium))
    ))

    events = _capped(caps.events, saturation(s.events_attended, EVENTS_SCALE))
    community = _capped(caps.community, saturation(s.community_points, COMMUNITY_SCALE))

    composite = handshakes + wallet + social + events + community
    return ScoreResult(
        handshakes=handshakes,
        wallet=wallet,
        social=social,
        events=events,
        community=community,
        trust_level=trust_level(composite),
    )


class TrustScoreEngine:
    """Recompute and persist an account's composite from its stored signals."""

    def __init__(self, store: RecordStore, caps: Optional[ScoreCaps] = None):
        self._store = store
        self.caps = caps or ScoreCaps()

    def score(self, signals: Union[TrustSignals, dict]) -> ScoreResult:
        return score(signals, self.caps)

    def recompute(self, account_id: str) -> ScoreResult:
        row = self._store.select_one(TRUST_SIGNALS, {"account_id": account_id})
        if row is None:
            # Nothing recorded yet: report the empty score, write nothing
            return self.score(TrustSignals(account_id=account_id))

        result = self.score(row)
        self._store.update(
            TRUST_SIGNALS,
            {"account_id": account_id},
            {**result.as_columns(), "updated_at": utcnow_iso()},
        )
        logger.info("trust score recomputed",
                    extra={"account_id": account_id, "trust_score": result.composite})
        return result


__all__ = ["score", "saturation", "trust_level", "TrustScoreEngine"]
