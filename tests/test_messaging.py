"""Tests for the messaging mini-app payload verifier."""

import time

import pytest

from conftest import BOT_TOKEN, make_init_data
from trustlink.errors import ExpiredProof, InvalidProof
from trustlink.models import ProviderKind
from trustlink.providers.messaging import MiniAppVerifier, estimate_account_age_days

USER = {"id": 424242, "first_name": "Ada", "last_name": "L", "username": "ada", "is_premium": True}


@pytest.fixture
def verifier():
    return MiniAppVerifier(BOT_TOKEN)


def test_valid_payload(verifier):
    identity = verifier.verify(make_init_data(USER))
    assert identity.provider_kind is ProviderKind.MESSAGING
    assert identity.provider_id == "424242"
    assert identity.claims["display_name"] == "Ada L"
    assert identity.claims["handle"] == "ada"
    assert identity.claims["is_premium"] is True


def test_minimal_user(verifier):
    identity = verifier.verify(make_init_data({"id": 7, "first_name": "Bo"}))
    assert identity.claims["handle"] is None
    assert identity.claims["is_premium"] is False


def test_wrong_bot_token(verifier):
    with pytest.raises(InvalidProof, match="mismatch"):
        verifier.verify(make_init_data(USER, bot_token="999:OTHER"))


def test_tampered_field(verifier):
    with pytest.raises(InvalidProof):
        verifier.verify(make_init_data(USER, tamper=True))


def test_missing_hash(verifier):
    with pytest.raises(InvalidProof, match="no hash"):
        verifier.verify("auth_date=1&user=%7B%7D")


def test_expired(verifier):
    old = int(time.time()) - 3601
    with pytest.raises(ExpiredProof):
        verifier.verify(make_init_data(USER, auth_date=old))


def test_just_inside_window(verifier):
    now = 1_700_000_000
    identity = verifier.verify(make_init_data(USER, auth_date=now - 3600), now=now)
    assert identity.provider_id == "424242"


def test_non_integer_auth_date(verifier):
    with pytest.raises(InvalidProof, match="auth_date"):
        verifier.verify(make_init_data(USER, auth_date="yesterday"))


def test_unparseable_user(verifier):
    payload = make_init_data(USER, extra={"user": "{not json"})
    with pytest.raises(InvalidProof, match="user field"):
        verifier.verify(payload)


def test_user_without_id(verifier):
    payload = make_init_data(USER, extra={"user": '{"first_name":"x"}'})
    with pytest.raises(InvalidProof):
        verifier.verify(payload)


def test_empty_input(verifier):
    with pytest.raises(InvalidProof):
        verifier.verify("")


def test_requires_bot_token():
    with pytest.raises(ValueError):
        MiniAppVerifier("")


def test_sign_matches_platform(verifier):
    fields = {"auth_date": "1", "user": "{}", "query_id": "q"}
    init = make_init_data({}, auth_date=1, extra={"user": "{}", "query_id": "q"})
    assert init.endswith("hash=" + verifier.sign(fields))


# ── Account age estimate ──

def test_age_estimate_monotonic():
    now = time.time()
    old = estimate_account_age_days(150_000_000, now=now)
    new = estimate_account_age_days(6_200_000_000, now=now)
    assert old > new > 0


def test_age_estimate_out_of_range():
    assert estimate_account_age_days(0) is None
    assert estimate_account_age_days(-5) is None
    assert estimate_account_age_days(7_500_000_000 * 2) is None


def test_age_estimate_anchor():
    from trustlink.providers.messaging import ID_DATE_ANCHORS
    anchor_id, anchor_ts = ID_DATE_ANCHORS[5]
    assert estimate_account_age_days(anchor_id, now=anchor_ts + 10 * 86400) == 10


def test_age_estimate_never_negative():
    from trustlink.providers.messaging import ID_DATE_ANCHORS
    assert estimate_account_age_days(7_400_000_000, now=ID_DATE_ANCHORS[0][1]) == 0
