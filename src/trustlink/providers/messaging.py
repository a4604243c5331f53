"""
trustlink.providers.messaging — Messaging-platform mini-app payload verification.

The mini-app hands the client an URL-encoded payload (``init_data``) with a
``hash`` field. Verification:

    secret   = HMAC-SHA256(key="WebAppData", msg=bot_token)
    expected = hex(HMAC-SHA256(key=secret, msg=data_check_string))

where data_check_string is every other field as ``key=value``, sorted by key
and joined with ``\\n``.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qsl

from pydantic import BaseModel, ValidationError

from ..config import MESSAGING_MAX_AGE_S, Settings
from ..errors import ExpiredProof, InvalidProof
from ..models import ProviderKind, VerifiedIdentity
from ..signatures import SignatureVerifier, hmac_sha256

logger = logging.getLogger(__name__)

DOMAIN_LABEL = b"WebAppData"


class MiniAppUser(BaseModel):
    """The ``user`` claims embedded in the payload."""
    id: int
    first_name: str
    last_name: str = ""
    username: Optional[str] = None
    language_code: Optional[str] = None
    is_premium: bool = False
    photo_url: Optional[str] = None

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class MiniAppVerifier:
    """Verifies signed mini-app payloads against the bot's long-term secret."""

    def __init__(self, bot_token: str, max_age_s: int = MESSAGING_MAX_AGE_S):
        if not bot_token:
            raise ValueError("bot token is required for mini-app verification")
        self._secret = hmac_sha256(DOMAIN_LABEL, bot_token.encode())
        self.max_age_s = max_age_s

    @classmethod
    def from_settings(cls, settings: Settings) -> "MiniAppVerifier":
        return cls(settings.bot_token, max_age_s=settings.messaging_max_age_s)

    @staticmethod
    def data_check_string(fields: dict[str, str]) -> str:
        return "\n".join(f"{k}={fields[k]}" for k in sorted(fields) if k != "hash")

    def sign(self, fields: dict[str, str]) -> str:
        """Hex signature the platform would attach to ``fields``."""
        return hmac_sha256(self._secret, self.data_check_string(fields).encode()).hex()

    def verify(self, init_data: str, now: Optional[float] = None) -> VerifiedIdentity:
        """Verify ``init_data``; raises InvalidProof or ExpiredProof."""
        if not init_data or not isinstance(init_data, str):
            raise InvalidProof("missing init data")

        fields = dict(parse_qsl(init_data, keep_blank_values=True))
        supplied = fields.pop("hash", "")
        if not supplied:
            raise InvalidProof("init data has no hash")

        if not SignatureVerifier.constant_time_equal(self.sign(fields), supplied):
            raise InvalidProof("init data hash mismatch")

        try:
            auth_date = int(fields.get("auth_date", ""))
        except ValueError as e:
            raise InvalidProof("auth_date missing or not an integer") from e

        now = time.time() if now is None else now
        if now - auth_date > self.max_age_s:
            raise ExpiredProof("init data is older than allowed", auth_date=auth_date)

        raw_user = fields.get("user")
        if not raw_user:
            raise InvalidProof("init data has no user field")
        try:
            user = MiniAppUser.model_validate_json(raw_user)
        except ValidationError as e:
            raise InvalidProof("user field is not valid structured data") from e

        logger.debug("mini-app payload verified", extra={"messaging_user_id": user.id})
        return VerifiedIdentity(
            provider_kind=ProviderKind.MESSAGING,
            provider_id=str(user.id),
            claims={
                "display_name": user.display_name,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "handle": user.username,
                "is_premium": user.is_premium,
                "photo_url": user.photo_url,
                "auth_date": auth_date,
            },
        )


# ─── Account age estimate ──────────────────────────────────────────

def _ts(day: str) -> float:
    return datetime.fromisoformat(day).replace(tzinfo=timezone.utc).timestamp()


# (user id, approximate registration date). Ids are roughly sequential.
ID_DATE_ANCHORS = [
    (1, _ts("2013-08-01")),
    (100_000_000, _ts("2014-11-01")),
    (200_000_000, _ts("2016-04-01")),
    (300_000_000, _ts("2017-01-01")),
    (400_000_000, _ts("2017-12-01")),
    (500_000_000, _ts("2018-06-01")),
    (600_000_000, _ts("2019-01-01")),
    (700_000_000, _ts("2019-06-01")),
    (800_000_000, _ts("2019-10-01")),
    (900_000_000, _ts("2020-02-01")),
    (1_000_000_000, _ts("2020-06-01")),
    (1_100_000_000, _ts("2020-09-01")),
    (1_200_000_000, _ts("2020-12-01")),
    (1_300_000_000, _ts("2021-03-01")),
    (1_500_000_000, _ts("2021-08-01")),
    (1_700_000_000, _ts("2021-12-01")),
    (2_000_000_000, _ts("2022-06-01")),
    (5_000_000_000, _ts("2022-12-01")),
    (5_500_000_000, _ts("2023-03-01")),
    (6_000_000_000, _ts("2023-07-01")),
    (6_500_000_000, _ts("2023-12-01")),
    (7_000_000_000, _ts("2024-04-01")),
    (7_500_000_000, _ts("2024-09-01")),
]


def estimate_account_age_days(user_id: int, now: Optional[float] = None) -> Optional[int]:
    """Estimate account age in days by interpolating between id anchors.

    Returns None for ids below 1 or far beyond the last known anchor.
    """
    if not user_id or user_id < 1:
        return None
    last_id = ID_DATE_ANCHORS[-1][0]
    if user_id > last_id * 1.3:
        return None

    if user_id >= last_id:
        lower, upper = ID_DATE_ANCHORS[-2], ID_DATE_ANCHORS[-1]
    else:
        lower, upper = ID_DATE_ANCHORS[0], ID_DATE_ANCHORS[-1]
        for a, b in zip(ID_DATE_ANCHORS, ID_DATE_ANCHORS[1:]):
            if a[0] <= user_id < b[0]:
                lower, upper = a, b
                break

    fraction = (user_id - lower[0]) / (upper[0] - lower[0])
    created = lower[1] + fraction * (upper[1] - lower[1])
    now = time.time() if now is None else now
    return max(0, int((now - created) // 86400))
