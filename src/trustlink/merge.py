"""
trustlink.merge — Fuse a placeholder account into a durable one.

Every entity type declares one MergePolicy; the engine applies them in a
fixed order, each entity as its own step:

  1. BulkReassign               owning column source -> target, no uniqueness
  2. ReassignOrDrop             unique per (account, natural key): drop on clash
  3. ReassignOrDeleteDuplicate  unique per (account, foreign key): delete true duplicates
  4. MergeTakeBest              singleton, merged field by field (OR / MAX / prefer set)
  5. FillBlank                  singleton, copy only fields blank on the target
  6. PreferTargetElseMove       exactly-one-of, target's wins

then the source's messaging artifacts are removed, the source account is
deleted and the target is rescored.

The store has no multi-statement transactions, so this is a forward-only
saga: each step is idempotent once applied, a failure stops the run with
PartialMergeFailure, and re-running merge(source, target) finishes the job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from .errors import NotFound, PartialMergeFailure, UniqueViolation
from .log import flow_id_var
from .models import PROFILE_FIELDS, ScoreResult, utcnow_iso
from .scoring import TrustScoreEngine
from .storage import (
    IDENTITY_LINKS,
    PENDING_MERGES,
    PROFILES,
    TRUST_SIGNALS,
    AccountDirectory,
    RecordStore,
)

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    name: str
    moved: int = 0
    dropped: int = 0
    merged: int = 0

    def to_dict(self) -> dict:
        return {"step": self.name, "moved": self.moved, "dropped": self.dropped, "merged": self.merged}


# ─── Field rules ───────────────────────────────────────────────────

class FieldRule(Enum):
    OR = "or"                  # booleans
    MAX = "max"                # counters
    PREFER_SET = "prefer_set"  # "first observed" values: target's if set, else source's


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def apply_field_rule(rule: FieldRule, source: Any, target: Any) -> Any:
    if rule is FieldRule.OR:
        return bool(source) or bool(target)
    if rule is FieldRule.MAX:
        present = [v for v in (source, target) if v is not None]
        return max(present) if present else None
    if rule is FieldRule.PREFER_SET:
        return source if _is_blank(target) else target
    raise ValueError(f"unknown field rule {rule}")


SIGNAL_FIELD_RULES = {
    "total_handshakes": FieldRule.MAX,
    "wallet_connected": FieldRule.OR,
    "wallet_address": FieldRule.PREFER_SET,
    "wallet_age_days": FieldRule.PREFER_SET,
    "wallet_tx_count": FieldRule.MAX,
    "wallet_has_tokens": FieldRule.OR,
    "messaging_premium": FieldRule.OR,
    "has_username": FieldRule.OR,
    "messaging_account_age_days": FieldRule.PREFER_SET,
    "social_verified": FieldRule.OR,
    "social_premium": FieldRule.OR,
    "social_user_id": FieldRule.PREFER_SET,
    "social_handle": FieldRule.PREFER_SET,
    "social_refresh_token": FieldRule.PREFER_SET,
    "events_attended": FieldRule.MAX,
    "community_points": FieldRule.MAX,
}


# ─── Policies ──────────────────────────────────────────────────────

class MergePolicy:
    """How one entity type moves from the source account to the target."""

    name = "policy"
    account_column = "account_id"

    def apply(self, store: RecordStore, table: str, source: str, target: str) -> StepOutcome:
        raise NotImplementedError

    def _copy_for(self, row: dict, target: str) -> dict:
        copied = {k: v for k, v in row.items() if k != "id"}
        copied[self.account_column] = target
        return copied


@dataclass
class BulkReassign(MergePolicy):
    columns: tuple = ("account_id",)
    name = "bulk_reassign"

    def apply(self, store, table, source, target):
        out = StepOutcome(f"{self.name}:{table}")
        for column in self.columns:
            out.moved += store.update(table, {column: source}, {column: target})
        return out


@dataclass
class ReassignOrDrop(MergePolicy):
    natural_key: tuple = ()
    account_column: str = "account_id"
    name = "reassign_or_drop"

    def _key(self, row: dict) -> Optional[tuple]:
        return tuple(row.get(k) for k in self.natural_key)

    def apply(self, store, table, source, target):
        out = StepOutcome(f"{self.name}:{table}")
        taken = {self._key(r) for r in store.select(table, {self.account_column: target})}
        for row in store.select(table, {self.account_column: source}):
            key = self._key(row)
            if key is not None and key in taken:
                out.dropped += store.delete(table, {"id": row["id"]})
                continue
            try:
                out.moved += store.update(table, {"id": row["id"]}, {self.account_column: target})
            except UniqueViolation:
                # Target gained the same key concurrently
                out.dropped += store.delete(table, {"id": row["id"]})
                continue
            if key is not None:
                taken.add(key)
        return out


@dataclass
class ReassignOrDeleteDuplicate(ReassignOrDrop):
    """Rows keyed by an external id: a clash is the same fact recorded twice."""
    foreign_key: str = ""
    account_column: str = "account_id"
    name = "reassign_or_delete_duplicate"

    def _key(self, row: dict) -> Optional[tuple]:
        value = row.get(self.foreign_key)
        return None if value is None else (value,)


@dataclass
class MergeTakeBest(MergePolicy):
    field_rules: dict = field(default_factory=dict)
    account_column: str = "account_id"
    name = "merge_take_best"

    def apply(self, store, table, source, target):
        out = StepOutcome(f"{self.name}:{table}")
        src = store.select_one(table, {self.account_column: source})
        if src is None:
            return out
        tgt = store.select_one(table, {self.account_column: target})
        if tgt is None:
            store.insert(table, {**self._copy_for(src, target), "updated_at": utcnow_iso()})
            out.moved += 1
        else:
            merged = {name: apply_field_rule(rule, src.get(name), tgt.get(name))
                      for name, rule in self.field_rules.items()}
            merged["updated_at"] = utcnow_iso()
            store.update(table, {"id": tgt["id"]}, merged)
            out.merged += 1
        store.delete(table, {"id": src["id"]})
        return out


@dataclass
class FillBlank(MergePolicy):
    fields: tuple = ()
    account_column: str = "account_id"
    name = "fill_blank"

    def apply(self, store, table, source, target):
        out = StepOutcome(f"{self.name}:{table}")
        src = store.select_one(table, {self.account_column: source})
        if src is None:
            return out
        tgt = store.select_one(table, {self.account_column: target})
        if tgt is None:
            store.insert(table, {**self._copy_for(src, target), "updated_at": utcnow_iso()})
            out.moved += 1
        else:
            updates = {f: src[f] for f in self.fields
                       if _is_blank(tgt.get(f)) and not _is_blank(src.get(f))}
            if updates:
                updates["updated_at"] = utcnow_iso()
                store.update(table, {"id": tgt["id"]}, updates)
                out.merged += 1
        store.delete(table, {"id": src["id"]})
        return out


@dataclass
class PreferTargetElseMove(MergePolicy):
    account_column: str = "account_id"
    name = "prefer_target_else_move"

    def apply(self, store, table, source, target):
        out = StepOutcome(f"{self.name}:{table}")
        rows = store.select(table, {self.account_column: source})
        if not rows:
            return out
        if store.select_one(table, {self.account_column: target}) is None:
            first, rows = rows[0], rows[1:]
            out.moved += store.update(table, {"id": first["id"]}, {self.account_column: target})
        for row in rows:
            out.dropped += store.delete(table, {"id": row["id"]})
        return out


STEP_ORDER = (
    BulkReassign,
    ReassignOrDrop,
    ReassignOrDeleteDuplicate,
    MergeTakeBest,
    FillBlank,
    PreferTargetElseMove,
)


@dataclass
class EntitySpec:
    table: str
    policy: MergePolicy


DEFAULT_ENTITIES = (
    EntitySpec("itineraries", BulkReassign()),
    EntitySpec("contacts", BulkReassign()),
    EntitySpec("contact_notes", BulkReassign()),
    EntitySpec("ai_usage", BulkReassign()),
    EntitySpec("ai_conversations", BulkReassign()),
    EntitySpec("handshakes", BulkReassign(columns=("initiator_account_id", "receiver_account_id"))),
    EntitySpec(IDENTITY_LINKS, ReassignOrDrop(natural_key=("provider_kind",))),
    EntitySpec("user_tags", ReassignOrDrop(natural_key=("name",))),
    EntitySpec("user_wallets", ReassignOrDrop(natural_key=("wallet_address",))),
    EntitySpec("user_points", ReassignOrDeleteDuplicate(foreign_key="handshake_id")),
    EntitySpec(TRUST_SIGNALS, MergeTakeBest(field_rules=SIGNAL_FIELD_RULES)),
    EntitySpec(PROFILES, FillBlank(fields=PROFILE_FIELDS)),
    EntitySpec("subscriptions", PreferTargetElseMove()),
)

# Messaging-side leftovers of the placeholder (link codes, bot conversation state)
DEFAULT_CLEANUP_TABLES = ("link_codes", "bot_conversations")


# ─── Engine ────────────────────────────────────────────────────────

@dataclass
class MergeReport:
    source: str
    target: str
    steps: list[StepOutcome] = field(default_factory=list)
    source_deleted: bool = False
    score: Optional[ScoreResult] = None

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "target": self.target,
            "steps": [s.to_dict() for s in self.steps],
            "source_deleted": self.source_deleted,
            "score": self.score.to_dict() if self.score else None,
        }


class MergeEngine:
    def __init__(self, store: RecordStore, directory: AccountDirectory, engine: TrustScoreEngine,
                 entities: Iterable[EntitySpec] = DEFAULT_ENTITIES,
                 cleanup_tables: Iterable[str] = DEFAULT_CLEANUP_TABLES):
        self._store = store
        self.directory = directory
        self.engine = engine
        order = {cls: i for i, cls in enumerate(STEP_ORDER)}
        self.entities = sorted(entities, key=lambda e: order.get(type(e.policy), len(order)))
        self.cleanup_tables = tuple(cleanup_tables)

    def steps(self) -> list[tuple[str, Callable[[str, str], StepOutcome]]]:
        plan: list[tuple[str, Callable[[str, str], StepOutcome]]] = []
        for entity in self.entities:
            plan.append((
                f"{entity.policy.name}:{entity.table}",
                lambda s, t, e=entity: e.policy.apply(self._store, e.table, s, t),
            ))
        plan.append(("cleanup_artifacts", self._cleanup))
        return plan

    def _cleanup(self, source: str, target: str) -> StepOutcome:
        out = StepOutcome("cleanup_artifacts")
        for table in self.cleanup_tables:
            out.dropped += self._store.delete(table, {"account_id": source})
        return out

    def merge(self, source: str, target: str) -> MergeReport:
        """Move everything owned by ``source`` onto ``target`` and delete ``source``.

        Safe to re-run: once a step's data has moved, the step is a no-op.
        """
        if source == target:
            raise ValueError("cannot merge an account into itself")
        if self.directory.get_account(target) is None:
            raise NotFound(f"merge target {target} does not exist", account_id=target)

        extra = {"source": source, "target": target, "flow_id": flow_id_var.get("")}
        logger.info("merge started", extra=extra)
        report = MergeReport(source=source, target=target)
        completed: list[str] = []

        for name, run in self.steps():
            try:
                outcome = run(source, target)
            except Exception as e:
                logger.error("merge step failed", exc_info=True, extra={**extra, "step": name})
                raise PartialMergeFailure(source, target, name, completed) from e
            completed.append(name)
            report.steps.append(outcome)
            if outcome.moved or outcome.dropped or outcome.merged:
                logger.info("merge step applied", extra={**extra, **outcome.to_dict()})

        try:
            report.source_deleted = self.directory.delete_account(source)
            report.score = self.engine.recompute(target)
        except Exception as e:
            step = "score_target" if report.source_deleted else "delete_source"
            logger.error("merge step failed", exc_info=True, extra={**extra, "step": step})
            raise PartialMergeFailure(source, target, step, completed) from e

        logger.info("merge complete", extra={**extra, "source_deleted": report.source_deleted})
        return report

    # ── Pending merges ──

    def record_pending(self, failure: PartialMergeFailure) -> None:
        """Remember a failed merge so resume_pending() can finish it."""
        self._store.upsert(PENDING_MERGES, {
            "source": failure.source,
            "target": failure.target,
            "failed_step": failure.step,
            "error": str(failure.__cause__ or failure),
            "recorded_at": utcnow_iso(),
        }, on=("source", "target"))
        logger.warning("merge recorded for resumption",
                       extra={"source": failure.source, "target": failure.target, "step": failure.step})

    def pending(self) -> list[dict]:
        return self._store.select(PENDING_MERGES)

    def resume_pending(self) -> list[MergeReport]:
        """Re-run every recorded merge; entries that complete are cleared."""
        reports = []
        for row in self.pending():
            try:
                reports.append(self.merge(row["source"], row["target"]))
            except PartialMergeFailure as e:
                self.record_pending(e)
                continue
            except NotFound:
                logger.error("pending merge target is gone",
                             extra={"source": row["source"], "target": row["target"]})
                continue
            self._store.delete(PENDING_MERGES, {"id": row["id"]})
        return reports


__all__ = [
    "FieldRule",
    "apply_field_rule",
    "SIGNAL_FIELD_RULES",
    "MergePolicy",
    "BulkReassign",
    "ReassignOrDrop",
    "ReassignOrDeleteDuplicate",
    "MergeTakeBest",
    "FillBlank",
    "PreferTargetElseMove",
    "EntitySpec",
    "DEFAULT_ENTITIES",
    "DEFAULT_CLEANUP_TABLES",
    "StepOutcome",
    "MergeReport",
    "MergeEngine",
]
