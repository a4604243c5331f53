"""
trustlink.storage — Pluggable record stores and the account directory.

Backends: MemoryStore, SQLiteStore
Both enforce the declared unique constraints on every write, so the storage
layer (not the in-process pre-checks) is the authoritative uniqueness guard.
No multi-statement transactions are exposed: every call is one atomic write.
"""

import json
import re
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import AccountExists, StorageError, UniqueViolation
from .models import Account, utcnow_iso

# ─── Tables ────────────────────────────────────────────────────────

ACCOUNTS = "accounts"
IDENTITY_LINKS = "identity_links"
TRUST_SIGNALS = "trust_signals"
PROFILES = "profiles"
PENDING_MERGES = "pending_merges"


@dataclass(frozen=True)
class UniqueConstraint:
    """Unique over ``columns``; rows with a NULL in any column are exempt."""
    table: str
    columns: tuple

    @property
    def name(self) -> str:
        return ",".join(self.columns)

    def key(self, row: dict) -> Optional[tuple]:
        values = tuple(row.get(c) for c in self.columns)
        if any(v is None for v in values):
            return None
        return values


DEFAULT_CONSTRAINTS = (
    UniqueConstraint(ACCOUNTS, ("handle",)),
    UniqueConstraint(IDENTITY_LINKS, ("provider_kind", "provider_id")),
    UniqueConstraint(TRUST_SIGNALS, ("account_id",)),
    UniqueConstraint(PROFILES, ("account_id",)),
    UniqueConstraint(PENDING_MERGES, ("source", "target")),
    UniqueConstraint("subscriptions", ("account_id",)),
    UniqueConstraint("user_tags", ("account_id", "name")),
    UniqueConstraint("user_wallets", ("account_id", "wallet_address")),
    UniqueConstraint("user_points", ("account_id", "handshake_id")),
)


def _matches(row: dict, where: Optional[dict]) -> bool:
    if not where:
        return True
    return all(row.get(k) == v for k, v in where.items())


# ─── Abstract Store ────────────────────────────────────────────────

class RecordStore(ABC):
    """Table-of-dicts persistence interface. Every row has a string ``id``."""

    def __init__(self, constraints: Iterable[UniqueConstraint] = DEFAULT_CONSTRAINTS):
        self._constraints: dict[str, list[UniqueConstraint]] = {}
        for c in constraints:
            self._constraints.setdefault(c.table, []).append(c)

    def constraints_for(self, table: str) -> list[UniqueConstraint]:
        return self._constraints.get(table, [])

    @abstractmethod
    def insert(self, table: str, row: dict) -> dict: ...

    @abstractmethod
    def select(self, table: str, where: Optional[dict] = None,
               limit: Optional[int] = None, offset: int = 0) -> list[dict]: ...

    @abstractmethod
    def update(self, table: str, where: dict, values: dict) -> int: ...

    @abstractmethod
    def delete(self, table: str, where: dict) -> int: ...

    def select_one(self, table: str, where: dict) -> Optional[dict]:
        rows = self.select(table, where, limit=1)
        return rows[0] if rows else None

    def upsert(self, table: str, row: dict, on: tuple) -> dict:
        """Update the row matching ``on`` columns or insert a new one."""
        key = {c: row[c] for c in on}
        existing = self.select_one(table, key)
        if existing is None:
            try:
                return self.insert(table, row)
            except UniqueViolation as e:
                # Lost a race with a concurrent insert of the same key
                if tuple(e.columns) != tuple(on):
                    raise
                existing = self.select_one(table, key)
                if existing is None:
                    raise
        values = {k: v for k, v in row.items() if k != "id"}
        self.update(table, {"id": existing["id"]}, values)
        return {**existing, **values}

    @staticmethod
    def _prepare(row: dict) -> dict:
        new = dict(row)
        if not new.get("id"):
            new["id"] = uuid.uuid4().hex
        return new


# ─── Memory Store ──────────────────────────────────────────────────

class MemoryStore(RecordStore):
    """In-memory dict storage (default, for testing)."""

    def __init__(self, constraints: Iterable[UniqueConstraint] = DEFAULT_CONSTRAINTS):
        super().__init__(constraints)
        self._tables: dict[str, dict[str, dict]] = {}
        self._lock = threading.RLock()

    def _check_unique(self, table: str, changed: list[dict]) -> None:
        rows = dict(self._tables.get(table, {}))
        for row in changed:
            rows[row["id"]] = row
        for constraint in self.constraints_for(table):
            seen: dict[tuple, str] = {}
            for rid, row in rows.items():
                key = constraint.key(row)
                if key is None:
                    continue
                if key in seen and seen[key] != rid:
                    raise UniqueViolation(table, constraint.columns, key)
                seen[key] = rid

    def insert(self, table: str, row: dict) -> dict:
        with self._lock:
            rows = self._tables.setdefault(table, {})
            new = self._prepare(row)
            if new["id"] in rows:
                raise UniqueViolation(table, ("id",), (new["id"],))
            self._check_unique(table, [new])
            rows[new["id"]] = new
            return dict(new)

    def select(self, table: str, where: Optional[dict] = None,
               limit: Optional[int] = None, offset: int = 0) -> list[dict]:
        with self._lock:
            found = [dict(r) for r in self._tables.get(table, {}).values() if _matches(r, where)]
        end = None if limit is None else offset + limit
        return found[offset:end]

    def update(self, table: str, where: dict, values: dict) -> int:
        with self._lock:
            rows = self._tables.get(table, {})
            changed = [{**r, **values, "id": r["id"]} for r in rows.values() if _matches(r, where)]
            if not changed:
                return 0
            self._check_unique(table, changed)
            for row in changed:
                rows[row["id"]] = row
            return len(changed)

    def delete(self, table: str, where: dict) -> int:
        with self._lock:
            rows = self._tables.get(table, {})
            doomed = [rid for rid, r in rows.items() if _matches(r, where)]
            for rid in doomed:
                del rows[rid]
            return len(doomed)


# ─── SQLite Store ──────────────────────────────────────────────────

_COLUMN_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _column(name: str) -> str:
    if not _COLUMN_RE.match(name):
        raise StorageError(f"invalid column name: {name!r}")
    return name


def _sql_value(value):
    return int(value) if isinstance(value, bool) else value


class SQLiteStore(RecordStore):
    """File-based SQLite with WAL mode, thread-safe.

    Rows are JSON documents; unique constraints are materialized into a
    ``unique_keys`` table whose primary key makes SQLite reject duplicates.
    """

    def __init__(self, db_path: str = "trustlink.db",
                 constraints: Iterable[UniqueConstraint] = DEFAULT_CONSTRAINTS):
        super().__init__(constraints)
        self._db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    tbl TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (tbl, id)
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS unique_keys (
                    tbl TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    PRIMARY KEY (tbl, name, value)
                )
            """)
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_unique_record ON unique_keys(tbl, record_id)")

    def _where(self, table: str, where: Optional[dict]) -> tuple[str, list]:
        clauses, params = ["tbl = ?"], [table]
        for k, v in (where or {}).items():
            path = f"'$.{_column(k)}'"
            if v is None:
                clauses.append(f"json_extract(data, {path}) IS NULL")
            else:
                clauses.append(f"json_extract(data, {path}) = ?")
                params.append(_sql_value(v))
        return " AND ".join(clauses), params

    def _write_keys(self, table: str, row: dict) -> None:
        for constraint in self.constraints_for(table):
            key = constraint.key(row)
            if key is None:
                continue
            try:
                self._conn.execute(
                    "INSERT INTO unique_keys (tbl, name, value, record_id) VALUES (?, ?, ?, ?)",
                    (table, constraint.name, json.dumps(list(key)), row["id"]),
                )
            except sqlite3.IntegrityError as e:
                raise UniqueViolation(table, constraint.columns, key) from e

    def insert(self, table: str, row: dict) -> dict:
        new = self._prepare(row)
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO records (tbl, id, data) VALUES (?, ?, ?)",
                        (table, new["id"], json.dumps(new)),
                    )
                    self._write_keys(table, new)
            except sqlite3.IntegrityError as e:
                raise UniqueViolation(table, ("id",), (new["id"],)) from e
            except sqlite3.Error as e:
                raise StorageError(f"insert into {table} failed: {e}") from e
        return new

    def select(self, table: str, where: Optional[dict] = None,
               limit: Optional[int] = None, offset: int = 0) -> list[dict]:
        clause, params = self._where(table, where)
        sql = f"SELECT data FROM records WHERE {clause} ORDER BY rowid"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params += [limit, offset]
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(offset)
        with self._lock:
            try:
                rows = self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"select from {table} failed: {e}") from e
        return [json.loads(r[0]) for r in rows]

    def update(self, table: str, where: dict, values: dict) -> int:
        with self._lock:
            rows = self.select(table, where)
            if not rows:
                return 0
            try:
                with self._conn:
                    for row in rows:
                        new = {**row, **values, "id": row["id"]}
                        self._conn.execute(
                            "UPDATE records SET data = ? WHERE tbl = ? AND id = ?",
                            (json.dumps(new), table, new["id"]),
                        )
                        self._conn.execute(
                            "DELETE FROM unique_keys WHERE tbl = ? AND record_id = ?",
                            (table, new["id"]),
                        )
                        self._write_keys(table, new)
            except sqlite3.Error as e:
                raise StorageError(f"update of {table} failed: {e}") from e
            return len(rows)

    def delete(self, table: str, where: dict) -> int:
        with self._lock:
            ids = [r["id"] for r in self.select(table, where)]
            if not ids:
                return 0
            try:
                with self._conn:
                    for rid in ids:
                        self._conn.execute("DELETE FROM records WHERE tbl = ? AND id = ?", (table, rid))
                        self._conn.execute(
                            "DELETE FROM unique_keys WHERE tbl = ? AND record_id = ?", (table, rid)
                        )
            except sqlite3.Error as e:
                raise StorageError(f"delete from {table} failed: {e}") from e
            return len(ids)

    def close(self):
        self._conn.close()


# ─── Account Directory ─────────────────────────────────────────────

class AccountDirectory(ABC):
    """External identity store: account id -> login handle."""

    @abstractmethod
    def create_account(self, handle: str) -> Account:
        """Create an account; raises AccountExists if the handle is taken."""

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    def list_accounts(self, page: int = 1, per_page: int = 50) -> list[Account]: ...

    @abstractmethod
    def delete_account(self, account_id: str) -> bool: ...


class StoreAccountDirectory(AccountDirectory):
    """AccountDirectory kept in the ``accounts`` table of a RecordStore."""

    def __init__(self, store: RecordStore):
        self._store = store

    def create_account(self, handle: str) -> Account:
        row = {"id": str(uuid.uuid4()), "handle": handle, "created_at": utcnow_iso()}
        try:
            self._store.insert(ACCOUNTS, row)
        except UniqueViolation as e:
            if "handle" in e.columns:
                raise AccountExists(handle) from e
            raise
        return Account.from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        row = self._store.select_one(ACCOUNTS, {"id": account_id})
        return Account.from_row(row) if row else None

    def list_accounts(self, page: int = 1, per_page: int = 50) -> list[Account]:
        if page < 1 or per_page < 1:
            raise ValueError("page and per_page must be >= 1")
        rows = self._store.select(ACCOUNTS, limit=per_page, offset=(page - 1) * per_page)
        return [Account.from_row(r) for r in rows]

    def delete_account(self, account_id: str) -> bool:
        return self._store.delete(ACCOUNTS, {"id": account_id}) > 0


__all__ = [
    "ACCOUNTS",
    "IDENTITY_LINKS",
    "TRUST_SIGNALS",
    "PROFILES",
    "PENDING_MERGES",
    "UniqueConstraint",
    "DEFAULT_CONSTRAINTS",
    "RecordStore",
    "MemoryStore",
    "SQLiteStore",
    "AccountDirectory",
    "StoreAccountDirectory",
]
