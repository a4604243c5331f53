"""Tests for MergeEngine — policies, full merge, idempotent re-runs, resumption."""

from dataclasses import dataclass

import pytest

from trustlink.errors import NotFound, PartialMergeFailure
from trustlink.merge import (
    DEFAULT_ENTITIES,
    BulkReassign,
    EntitySpec,
    FieldRule,
    FillBlank,
    MergeEngine,
    MergePolicy,
    MergeTakeBest,
    PreferTargetElseMove,
    ReassignOrDeleteDuplicate,
    ReassignOrDrop,
    StepOutcome,
    apply_field_rule,
)
from trustlink.models import ProviderKind, VerifiedIdentity
from trustlink.resolver import AccountResolver
from trustlink.scoring import TrustScoreEngine
from trustlink.storage import IDENTITY_LINKS, PENDING_MERGES, PROFILES, TRUST_SIGNALS


@dataclass
class Exploding(MergePolicy):
    armed: bool = True
    name = "exploding"

    def apply(self, store, table, source, target):
        if self.armed:
            raise RuntimeError("storage went away")
        return StepOutcome(f"{self.name}:{table}")


@pytest.fixture
def engine(store):
    return TrustScoreEngine(store)


@pytest.fixture
def merger(store, directory, engine):
    return MergeEngine(store, directory, engine)


@pytest.fixture
def accounts(store, directory):
    """A: messaging-only placeholder. B: wallet-verified."""
    resolver = AccountResolver(store, directory)
    a, _ = resolver.resolve(VerifiedIdentity(ProviderKind.MESSAGING, "1001"))
    b, _ = resolver.resolve(VerifiedIdentity(ProviderKind.WALLET, "WalletB"))
    return a, b


# ─── Field rules ───────────────────────────────────────────────────

@pytest.mark.parametrize("rule,source,target,expected", [
    (FieldRule.OR, True, False, True),
    (FieldRule.OR, False, False, False),
    (FieldRule.OR, None, True, True),
    (FieldRule.MAX, 3, 7, 7),
    (FieldRule.MAX, None, 2, 2),
    (FieldRule.MAX, None, None, None),
    (FieldRule.PREFER_SET, "src", "tgt", "tgt"),
    (FieldRule.PREFER_SET, "src", None, "src"),
    (FieldRule.PREFER_SET, "src", "", "src"),
    (FieldRule.PREFER_SET, None, None, None),
])
def test_field_rules(rule, source, target, expected):
    assert apply_field_rule(rule, source, target) == expected


# ─── Individual policies ───────────────────────────────────────────

def test_bulk_reassign_multiple_columns(store):
    store.insert("handshakes", {"initiator_account_id": "A", "receiver_account_id": "C"})
    store.insert("handshakes", {"initiator_account_id": "C", "receiver_account_id": "A"})
    out = BulkReassign(columns=("initiator_account_id", "receiver_account_id")).apply(
        store, "handshakes", "A", "B")
    assert out.moved == 2
    rows = store.select("handshakes")
    assert {r["initiator_account_id"] for r in rows} == {"B", "C"}
    assert {r["receiver_account_id"] for r in rows} == {"B", "C"}


def test_reassign_or_drop(store):
    store.insert("user_tags", {"account_id": "A", "name": "vip"})
    store.insert("user_tags", {"account_id": "A", "name": "speaker"})
    store.insert("user_tags", {"account_id": "B", "name": "vip"})
    out = ReassignOrDrop(natural_key=("name",)).apply(store, "user_tags", "A", "B")
    assert (out.moved, out.dropped) == (1, 1)
    assert sorted(r["name"] for r in store.select("user_tags", {"account_id": "B"})) == ["speaker", "vip"]
    assert store.select("user_tags", {"account_id": "A"}) == []


def test_reassign_or_delete_duplicate(store):
    store.insert("user_points", {"account_id": "A", "handshake_id": "h1", "points": 5})
    store.insert("user_points", {"account_id": "A", "handshake_id": "h2", "points": 5})
    store.insert("user_points", {"account_id": "A", "handshake_id": None, "points": 1})
    store.insert("user_points", {"account_id": "B", "handshake_id": "h1", "points": 5})
    out = ReassignOrDeleteDuplicate(foreign_key="handshake_id").apply(store, "user_points", "A", "B")
    assert (out.moved, out.dropped) == (2, 1)
    mine = store.select("user_points", {"account_id": "B"})
    assert sorted(str(r["handshake_id"]) for r in mine) == ["None", "h1", "h2"]


def test_take_best_copies_when_target_missing(store):
    store.insert(TRUST_SIGNALS, {"account_id": "A", "total_handshakes": 4, "has_username": True})
    out = MergeTakeBest(field_rules={"total_handshakes": FieldRule.MAX}).apply(store, TRUST_SIGNALS, "A", "B")
    assert out.moved == 1
    row = store.select_one(TRUST_SIGNALS, {"account_id": "B"})
    assert row["total_handshakes"] == 4 and row["has_username"] is True
    assert store.select_one(TRUST_SIGNALS, {"account_id": "A"}) is None


def test_take_best_after_crash_between_copy_and_delete(store):
    store.insert(TRUST_SIGNALS, {"account_id": "A", "total_handshakes": 4})
    store.insert(TRUST_SIGNALS, {"account_id": "B", "total_handshakes": 4})
    policy = MergeTakeBest(field_rules={"total_handshakes": FieldRule.MAX})
    out = policy.apply(store, TRUST_SIGNALS, "A", "B")
    assert out.merged == 1
    assert [r["total_handshakes"] for r in store.select(TRUST_SIGNALS)] == [4]


def test_fill_blank_never_overwrites(store):
    store.insert(PROFILES, {"account_id": "A", "first_name": "Ada", "company": "OldCo", "bio": ""})
    store.insert(PROFILES, {"account_id": "B", "first_name": "", "company": "Acme", "bio": "hi"})
    FillBlank(fields=("first_name", "company", "bio")).apply(store, PROFILES, "A", "B")
    row = store.select_one(PROFILES, {"account_id": "B"})
    assert (row["first_name"], row["company"], row["bio"]) == ("Ada", "Acme", "hi")
    assert store.select_one(PROFILES, {"account_id": "A"}) is None


def test_prefer_target(store):
    store.insert("subscriptions", {"account_id": "A", "plan": "pro"})
    store.insert("subscriptions", {"account_id": "B", "plan": "basic"})
    out = PreferTargetElseMove().apply(store, "subscriptions", "A", "B")
    assert out.dropped == 1
    assert [r["plan"] for r in store.select("subscriptions")] == ["basic"]


def test_else_move(store):
    store.insert("subscriptions", {"account_id": "A", "plan": "pro"})
    out = PreferTargetElseMove().apply(store, "subscriptions", "A", "B")
    assert out.moved == 1
    assert store.select_one("subscriptions", {"account_id": "B"})["plan"] == "pro"


def test_policies_noop_without_source_rows(store):
    for entity in DEFAULT_ENTITIES:
        out = entity.policy.apply(store, entity.table, "A", "B")
        assert (out.moved, out.dropped, out.merged) == (0, 0, 0)


# ─── Full merge ────────────────────────────────────────────────────

def _seed(store, a, b):
    store.insert(TRUST_SIGNALS, {"account_id": a, "messaging_premium": True, "has_username": True,
                                 "total_handshakes": 3})
    store.insert(TRUST_SIGNALS, {"account_id": b, "wallet_connected": True, "wallet_address": "WalletB",
                                 "total_handshakes": 1})
    store.insert(PROFILES, {"account_id": a, "first_name": "Ada", "last_name": "L", "company": "OldCo"})
    store.insert(PROFILES, {"account_id": b, "first_name": "", "last_name": "", "company": "Acme"})
    store.insert("contacts", {"account_id": a, "name": "Grace"})
    store.insert("itineraries", {"account_id": a, "event": "conf"})
    store.insert("handshakes", {"initiator_account_id": a, "receiver_account_id": "someone"})
    store.insert("user_tags", {"account_id": a, "name": "vip"})
    store.insert("user_tags", {"account_id": b, "name": "vip"})
    store.insert("user_points", {"account_id": a, "handshake_id": "h1", "points": 10})
    store.insert("subscriptions", {"account_id": a, "plan": "pro"})
    store.insert("link_codes", {"account_id": a, "code": "ABC123"})
    store.insert("bot_conversations", {"account_id": a, "state": "awaiting_name"})


def test_merge_scenario(store, directory, merger, accounts):
    a, b = accounts
    _seed(store, a, b)

    report = merger.merge(a, b)

    assert report.source_deleted
    assert directory.get_account(a) is None

    signals = store.select_one(TRUST_SIGNALS, {"account_id": b})
    assert signals["messaging_premium"] is True
    assert signals["has_username"] is True
    assert signals["wallet_connected"] is True
    assert signals["wallet_address"] == "WalletB"
    assert signals["total_handshakes"] == 3
    assert signals["trust_score"] == report.score.composite

    profile = store.select_one(PROFILES, {"account_id": b})
    assert profile["first_name"] == "Ada"
    assert profile["last_name"] == "L"
    assert profile["company"] == "Acme"

    # Nothing left on the source
    for table in (TRUST_SIGNALS, PROFILES, IDENTITY_LINKS, "contacts", "itineraries", "user_tags",
                  "user_points", "subscriptions", "link_codes", "bot_conversations"):
        assert store.select(table, {"account_id": a}) == [], table
    assert store.select("handshakes", {"initiator_account_id": a}) == []

    # Everything moved to the target
    assert store.select_one("contacts", {"account_id": b})["name"] == "Grace"
    assert len(store.select("user_tags", {"account_id": b})) == 1
    assert store.select_one("subscriptions", {"account_id": b})["plan"] == "pro"
    kinds = {r["provider_kind"] for r in store.select(IDENTITY_LINKS, {"account_id": b})}
    assert kinds == {"messaging", "wallet"}


def test_merge_rerun_is_noop(store, directory, merger, accounts):
    a, b = accounts
    _seed(store, a, b)
    merger.merge(a, b)
    snapshot = {t: store.select(t) for t in (TRUST_SIGNALS, PROFILES, IDENTITY_LINKS, "contacts")}

    again = merger.merge(a, b)

    assert again.source_deleted is False
    assert all((s.moved, s.dropped, s.merged) == (0, 0, 0) for s in again.steps)
    for table, rows in snapshot.items():
        current = store.select(table)
        if table == TRUST_SIGNALS:
            for row in current + rows:
                row.pop("updated_at", None)
        assert current == rows


def test_merge_drops_conflicting_identity_kind(store, directory, merger):
    resolver = AccountResolver(store, directory)
    a, _ = resolver.resolve(VerifiedIdentity(ProviderKind.MESSAGING, "1"))
    b, _ = resolver.resolve(VerifiedIdentity(ProviderKind.MESSAGING, "2"))
    resolver.link(VerifiedIdentity(ProviderKind.WALLET, "W"), b)
    merger.merge(a, b)
    links = store.select(IDENTITY_LINKS, {"account_id": b, "provider_kind": "messaging"})
    assert [link["provider_id"] for link in links] == ["2"]
    assert resolver.lookup(ProviderKind.MESSAGING, "1") is None


def test_merge_into_self_rejected(merger, accounts):
    a, _ = accounts
    with pytest.raises(ValueError):
        merger.merge(a, a)


def test_merge_into_missing_target(merger, accounts):
    a, _ = accounts
    with pytest.raises(NotFound):
        merger.merge(a, "no-such-account")


def test_step_order(store, directory, engine):
    entities = [EntitySpec("s", PreferTargetElseMove()), EntitySpec("t", BulkReassign()),
                EntitySpec("p", FillBlank(fields=("x",)))]
    names = [name for name, _ in MergeEngine(store, directory, engine, entities=entities).steps()]
    assert names == ["bulk_reassign:t", "fill_blank:p", "prefer_target_else_move:s", "cleanup_artifacts"]


# ─── Failure and resumption ────────────────────────────────────────

def test_failed_step_raises_and_resumes(store, directory, engine, accounts):
    a, b = accounts
    _seed(store, a, b)
    bomb = Exploding()
    merger = MergeEngine(store, directory, engine,
                         entities=DEFAULT_ENTITIES + (EntitySpec("boom", bomb),))

    with pytest.raises(PartialMergeFailure) as exc:
        merger.merge(a, b)
    failure = exc.value
    assert failure.step == "exploding:boom"
    assert "merge_take_best:trust_signals" in failure.completed
    assert isinstance(failure.__cause__, RuntimeError)

    # Data already moved; the source still exists and is still usable
    assert directory.get_account(a) is not None
    assert store.select_one("contacts", {"account_id": b})["name"] == "Grace"

    merger.record_pending(failure)
    merger.record_pending(failure)
    pending = merger.pending()
    assert len(pending) == 1
    assert pending[0]["failed_step"] == "exploding:boom"

    # Still failing: entry stays
    assert merger.resume_pending() == []
    assert len(merger.pending()) == 1

    bomb.armed = False
    reports = merger.resume_pending()
    assert [r.source for r in reports] == [a]
    assert merger.pending() == []
    assert directory.get_account(a) is None
    assert store.select(PENDING_MERGES) == []
