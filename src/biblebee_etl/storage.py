"""biblebee_etl.storage

Storage port consumed by the Bible Bee engine, plus its two backends.

The engine only ever calls four verbs:

    get(collection, key)                      -> record | None
    add(collection, record)                   -> stored record
    update(collection, key, patch)            -> stored record
    where(collection, predicate=None, **eq)   -> list of records

Records are plain dicts keyed by column name.  Collections map 1:1 to the
tables in migrations/0001_bible_bee_core.sql.

Backends:
  - MemoryStore    demo mode; dicts in process, optionally persisted to a
                   JSON file with dump()/load()
  - PostgresStore  live mode; psycopg connection, caller manages the
                   transaction (commit/rollback), as in the CLI runners
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

COLLECTIONS = (
    "competition_years",
    "scriptures",
    "grade_rules",
    "divisions",
    "essay_prompts",
    "student_scriptures",
    "student_essays",
    "enrollments",
    "enrollment_overrides",
    "children",
)

# Primary-key column per collection; everything else uses "id".
KEY_COLUMNS: dict[str, str] = {
    "children": "child_id",
}

Record = dict[str, Any]
Predicate = Callable[[Record], bool]

log = logging.getLogger(__name__)


def key_column(collection: str) -> str:
    return KEY_COLUMNS.get(collection, "id")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StorageError(Exception):
    """Base class for errors raised by a storage backend."""


class UnknownCollectionError(StorageError):
    """Raised when a collection name is not part of the schema."""


class RecordNotFoundError(StorageError):
    """Raised by update() when no record has the given key."""


class DuplicateKeyError(StorageError):
    """Raised by add() when the record collides with an existing key or
    idempotency constraint."""


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------

class Store(Protocol):
    def get(self, collection: str, key: str) -> Record | None: ...

    def add(self, collection: str, record: Record) -> Record: ...

    def update(self, collection: str, key: str, patch: Record) -> Record: ...

    def where(
        self,
        collection: str,
        predicate: Predicate | None = None,
        **equals: Any,
    ) -> list[Record]: ...


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise UnknownCollectionError(
            f"Unknown collection '{collection}'. Must be one of {sorted(COLLECTIONS)}."
        )


# ---------------------------------------------------------------------------
# MemoryStore (demo mode)
# ---------------------------------------------------------------------------

# Secondary uniqueness enforced by MemoryStore, mirroring the UNIQUE
# constraints in the PostgreSQL schema.
_UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    "student_scriptures": ("child_id", "competition_year_id", "scripture_id"),
    "student_essays": ("child_id", "competition_year_id"),
    "enrollments": ("child_id", "competition_year_id"),
    "enrollment_overrides": ("child_id", "competition_year_id"),
}


class MemoryStore:
    """In-process store with insertion-ordered collections.

    Records are deep-copied on the way in and out so callers never hold a
    reference into the store.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Record]] = {c: {} for c in COLLECTIONS}

    # -- port ---------------------------------------------------------------

    def get(self, collection: str, key: str) -> Record | None:
        _check_collection(collection)
        rec = self._data[collection].get(str(key))
        return copy.deepcopy(rec) if rec is not None else None

    def add(self, collection: str, record: Record) -> Record:
        _check_collection(collection)
        kc = key_column(collection)
        rec = copy.deepcopy(record)
        if not rec.get(kc):
            rec[kc] = str(uuid.uuid4())
        key = str(rec[kc])
        rows = self._data[collection]
        if key in rows:
            raise DuplicateKeyError(f"{collection}: duplicate {kc}={key!r}")
        unique = _UNIQUE_KEYS.get(collection)
        if unique:
            probe = tuple(rec.get(c) for c in unique)
            for existing in rows.values():
                if tuple(existing.get(c) for c in unique) == probe:
                    raise DuplicateKeyError(
                        f"{collection}: duplicate ({', '.join(unique)})={probe!r}"
                    )
        now = utcnow()
        if collection != "children":
            rec.setdefault("created_at", now)
            rec.setdefault("updated_at", now)
        rows[key] = rec
        return copy.deepcopy(rec)

    def update(self, collection: str, key: str, patch: Record) -> Record:
        _check_collection(collection)
        rows = self._data[collection]
        key = str(key)
        if key not in rows:
            raise RecordNotFoundError(f"{collection}: no record with {key_column(collection)}={key!r}")
        rec = rows[key]
        rec.update(copy.deepcopy(patch))
        if collection != "children":
            rec["updated_at"] = utcnow()
        return copy.deepcopy(rec)

    def where(
        self,
        collection: str,
        predicate: Predicate | None = None,
        **equals: Any,
    ) -> list[Record]:
        _check_collection(collection)
        out: list[Record] = []
        for rec in self._data[collection].values():
            if any(rec.get(col) != val for col, val in equals.items()):
                continue
            if predicate is not None and not predicate(rec):
                continue
            out.append(copy.deepcopy(rec))
        return out

    # -- persistence --------------------------------------------------------

    def dump(self, path: Path) -> None:
        """Write all collections to a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {c: list(rows.values()) for c, rows in self._data.items()}
        path.write_text(json.dumps(payload, indent=2, default=_json_default), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> "MemoryStore":
        """Load a store previously written by dump(); a missing file gives an
        empty store."""
        store = cls()
        if not path.exists():
            log.warning("Demo store %s not found; starting empty.", path)
            return store
        payload = json.loads(path.read_text(encoding="utf-8"))
        for collection, rows in payload.items():
            _check_collection(collection)
            kc = key_column(collection)
            for rec in rows:
                store._data[collection][str(rec[kc])] = rec
        return store


def _json_default(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


# ---------------------------------------------------------------------------
# PostgresStore (live mode)
# ---------------------------------------------------------------------------

class PostgresStore:
    """Store backed by the Bible Bee PostgreSQL schema.

    Does not commit.  Unique violations on add() are isolated with a
    SAVEPOINT so the caller's transaction stays usable, then surfaced as
    DuplicateKeyError.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    @property
    def conn(self) -> psycopg.Connection:
        return self._conn

    def get(self, collection: str, key: str) -> Record | None:
        _check_collection(collection)
        query = sql.SQL("SELECT * FROM {} WHERE {} = %s").format(
            sql.Identifier(collection), sql.Identifier(key_column(collection)),
        )
        with self._conn.cursor(row_factory=dict_row) as cur:
            row = cur.execute(query, (key,)).fetchone()
        return _from_db(row) if row else None

    def add(self, collection: str, record: Record) -> Record:
        _check_collection(collection)
        cols = list(record.keys())
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(collection),
            sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            sql.SQL(", ").join(sql.Placeholder() for _ in cols),
        )
        params = [_to_db(record[c]) for c in cols]
        use_savepoint = not self._conn.autocommit
        if use_savepoint:
            self._conn.execute("SAVEPOINT store_add")
        try:
            with self._conn.cursor(row_factory=dict_row) as cur:
                row = cur.execute(query, params).fetchone()
        except psycopg.errors.UniqueViolation as exc:
            if use_savepoint:
                self._conn.execute("ROLLBACK TO SAVEPOINT store_add")
            log.debug("Unique violation on %s insert: %s", collection, exc)
            raise DuplicateKeyError(f"{collection}: {exc}") from exc
        if use_savepoint:
            self._conn.execute("RELEASE SAVEPOINT store_add")
        return _from_db(row)

    def update(self, collection: str, key: str, patch: Record) -> Record:
        _check_collection(collection)
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in patch
        ]
        params = [_to_db(v) for v in patch.values()]
        if collection != "children":
            assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL("UPDATE {} SET {} WHERE {} = %s RETURNING *").format(
            sql.Identifier(collection),
            sql.SQL(", ").join(assignments),
            sql.Identifier(key_column(collection)),
        )
        with self._conn.cursor(row_factory=dict_row) as cur:
            row = cur.execute(query, [*params, key]).fetchone()
        if row is None:
            raise RecordNotFoundError(
                f"{collection}: no record with {key_column(collection)}={key!r}"
            )
        return _from_db(row)

    def where(
        self,
        collection: str,
        predicate: Predicate | None = None,
        **equals: Any,
    ) -> list[Record]:
        _check_collection(collection)
        clauses = []
        params = []
        for col, val in equals.items():
            if val is None:
                clauses.append(sql.SQL("{} IS NULL").format(sql.Identifier(col)))
            else:
                clauses.append(sql.SQL("{} = %s").format(sql.Identifier(col)))
                params.append(_to_db(val))
        query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(collection))
        if clauses:
            query += sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses)
        query += sql.SQL(" ORDER BY {}").format(sql.Identifier(key_column(collection)))
        with self._conn.cursor(row_factory=dict_row) as cur:
            rows = cur.execute(query, params).fetchall()
        out = [_from_db(r) for r in rows]
        if predicate is not None:
            out = [r for r in out if predicate(r)]
        return out


def _to_db(value: Any) -> Any:
    if isinstance(value, dict):
        return Jsonb(value)
    return value


def _from_db(row: dict[str, Any]) -> Record:
    return {k: str(v) if isinstance(v, uuid.UUID) else v for k, v in row.items()}
