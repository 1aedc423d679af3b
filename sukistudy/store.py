"""
SukiStudy - Local Entity Store

SQLite-backed mirror of the four remote resource kinds. Each kind lives in
its own table: the full record as JSON plus the handful of columns queries
filter and sort on. Collections notify subscribers after every committed
change so derived views can refresh.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, Iterator, Optional, TypeVar, Union

from .models import Assignment, Entity, StudyMaterial, Subject, User, format_timestamp, utc_now

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)

CREDENTIAL_KEY = "wk_token"

CURSOR_KEYS = {
    "subjects": "wk_last_sync_subjects",
    "assignments": "wk_last_sync_assignments",
    "study_materials": "wk_last_sync_materials",
}

_OPERATORS = {
    "exact": "=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
}


@dataclass(frozen=True)
class ChangeEvent:
    """Emitted by a collection after a committed change."""
    collection: str
    action: str  # "insert", "upsert", "remove" or "batch"
    ids: tuple = ()


Listener = Callable[[ChangeEvent], None]


# =============================================================================
# Collections
# =============================================================================

class EntityCollection(Generic[E]):
    """One persistent, indexed, observable collection of entities."""

    def __init__(
        self,
        store: "LocalStore",
        name: str,
        model: type[E],
        indexes: tuple[str, ...] = (),
    ):
        self.store = store
        self.name = name
        self.model = model
        self.indexes = indexes
        self.columns = ("id",) + indexes
        self._listeners: list[Listener] = []
        self._batch_depth = 0
        self._pending_ids: list[Any] = []
        self._pending_actions: set[str] = set()

    def __repr__(self) -> str:
        return f"<EntityCollection {self.name}>"

    # === Change Notification ===

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Coalesce all changes made inside the block into one notification."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._pending_actions:
                actions = self._pending_actions
                action = actions.pop() if len(actions) == 1 else "batch"
                event = ChangeEvent(self.name, action, tuple(self._pending_ids))
                self._pending_ids = []
                self._pending_actions = set()
                self._emit(event)

    def _notify(self, action: str, ids: Iterable[Any]) -> None:
        if self._batch_depth:
            self._pending_actions.add(action)
            self._pending_ids.extend(ids)
            return
        self._emit(ChangeEvent(self.name, action, tuple(ids)))

    def _emit(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener failed on {self.name} change: {e}")

    # === Reads ===

    def get(self, entity_id: Any) -> Optional[E]:
        """Point lookup by primary key."""
        with self.store._get_connection() as conn:
            row = conn.execute(
                f"SELECT data FROM {self.name} WHERE id = ?",
                (entity_id,),
            ).fetchone()
        return self._load(row) if row else None

    def find(self, order_by: Union[str, Iterable[str], None] = None, **filters: Any) -> list[E]:
        """
        Query by indexed fields.

        Filters use ``field`` or ``field__lookup`` keys where lookup is one of
        exact, ne, gt, gte, lt, lte, in, isnull. ``order_by`` takes field
        names, ``-field`` for descending; nulls always sort last.
        """
        where, params = self._build_where(filters)
        sql = f"SELECT data FROM {self.name}{where}{self._build_order(order_by)}"
        with self.store._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._load(row) for row in rows]

    def find_one(self, **filters: Any) -> Optional[E]:
        results = self.find(**filters)
        return results[0] if results else None

    def count(self, **filters: Any) -> int:
        where, params = self._build_where(filters)
        with self.store._get_connection() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {self.name}{where}", params).fetchone()[0]

    # === Writes ===

    def insert(self, entity: Union[E, dict]) -> E:
        """Insert a new record; fails if the id already exists."""
        entity = self._coerce(entity)
        with self.store._lock, self.store._get_connection() as conn:
            self._insert_row(conn, entity)
            conn.commit()
        self._notify("insert", [entity.id])
        return entity

    def upsert(self, entity: Union[E, dict]) -> E:
        return self.upsert_many([entity])[0]

    def upsert_many(self, entities: Iterable[Union[E, dict]]) -> list[E]:
        """
        Replace records by id: delete any existing row, then insert.

        All records are written in one transaction, so readers never see a
        record that mixes old and new fields.
        """
        entities = [self._coerce(e) for e in entities]
        if not entities:
            return []

        with self.store._lock, self.store._get_connection() as conn:
            for entity in entities:
                conn.execute(f"DELETE FROM {self.name} WHERE id = ?", (entity.id,))
                self._insert_row(conn, entity)
            conn.commit()

        logger.debug(f"Upserted {len(entities)} {self.name}")
        self._notify("upsert", [e.id for e in entities])
        return entities

    def remove(self, **filters: Any) -> int:
        """Remove records matching the filters. Returns rows removed."""
        where, params = self._build_where(filters)
        with self.store._lock, self.store._get_connection() as conn:
            ids = [row[0] for row in conn.execute(f"SELECT id FROM {self.name}{where}", params)]
            if ids:
                conn.execute(f"DELETE FROM {self.name}{where}", params)
                conn.commit()
        if ids:
            self._notify("remove", ids)
        return len(ids)

    def remove_all(self) -> int:
        return self.remove()

    # === Internals ===

    def _coerce(self, entity: Union[E, dict]) -> E:
        if isinstance(entity, self.model):
            return entity
        if isinstance(entity, Entity):
            entity = entity.to_record()
        return self.model.model_validate(entity)

    def _load(self, row: sqlite3.Row) -> E:
        return self.model.model_validate(json.loads(row["data"]))

    def _insert_row(self, conn: sqlite3.Connection, entity: E) -> None:
        values = [_index_value(getattr(entity, column, None)) for column in self.columns]
        placeholders = ", ".join("?" * (len(values) + 1))
        conn.execute(
            f"INSERT INTO {self.name} ({', '.join(self.columns)}, data) VALUES ({placeholders})",
            (*values, json.dumps(entity.to_record())),
        )

    def _build_where(self, filters: dict[str, Any]) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []

        for key, value in filters.items():
            field, _, lookup = key.partition("__")
            lookup = lookup or "exact"
            if field not in self.columns:
                raise ValueError(f"Cannot filter {self.name} on unindexed field '{field}'")

            if lookup == "in":
                values = [_index_value(v) for v in value]
                if not values:
                    clauses.append("0")
                    continue
                clauses.append(f"{field} IN ({', '.join('?' * len(values))})")
                params.extend(values)
            elif lookup == "isnull" or (lookup == "exact" and value is None):
                is_null = value if lookup == "isnull" else True
                clauses.append(f"{field} IS NULL" if is_null else f"{field} IS NOT NULL")
            elif lookup == "ne":
                clauses.append(f"({field} != ? OR {field} IS NULL)")
                params.append(_index_value(value))
            elif lookup in _OPERATORS:
                clauses.append(f"{field} {_OPERATORS[lookup]} ?")
                params.append(_index_value(value))
            else:
                raise ValueError(f"Unsupported lookup '{lookup}' on {self.name}.{field}")

        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def _build_order(self, order_by: Union[str, Iterable[str], None]) -> str:
        if order_by is None:
            return " ORDER BY id"
        if isinstance(order_by, str):
            order_by = [order_by]

        terms = []
        for term in order_by:
            descending = term.startswith("-")
            field = term.lstrip("-")
            if field not in self.columns:
                raise ValueError(f"Cannot order {self.name} by unindexed field '{field}'")
            terms.append(f"{field} IS NULL")
            terms.append(f"{field} {'DESC' if descending else 'ASC'}")
        terms.append("id")
        return " ORDER BY " + ", ".join(terms)


def _index_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    return value


# =============================================================================
# Store
# =============================================================================

class LocalStore:
    """SQLite-based local mirror plus sync metadata (cursors, credential)."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS subjects (
        id INTEGER PRIMARY KEY,
        level INTEGER,
        object TEXT,
        data TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS assignments (
        id INTEGER PRIMARY KEY,
        subject_id INTEGER,
        srs_stage INTEGER,
        available_at TEXT,
        unlocked_at TEXT,
        data TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS study_materials (
        id INTEGER PRIMARY KEY,
        subject_id INTEGER,
        data TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        data TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS sync_metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_subjects_level ON subjects(level);
    CREATE INDEX IF NOT EXISTS idx_subjects_object ON subjects(object);
    CREATE INDEX IF NOT EXISTS idx_assignments_subject_id ON assignments(subject_id);
    CREATE INDEX IF NOT EXISTS idx_assignments_srs_stage ON assignments(srs_stage);
    CREATE INDEX IF NOT EXISTS idx_assignments_available_at ON assignments(available_at);
    CREATE INDEX IF NOT EXISTS idx_study_materials_subject_id ON study_materials(subject_id);
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        # Bumped by clear_all so in-flight sync cycles can tell they are stale
        self.generation = 0
        self._init_db()

        self.subjects: EntityCollection[Subject] = EntityCollection(
            self, "subjects", Subject, ("level", "object"),
        )
        self.assignments: EntityCollection[Assignment] = EntityCollection(
            self, "assignments", Assignment,
            ("subject_id", "srs_stage", "available_at", "unlocked_at"),
        )
        self.study_materials: EntityCollection[StudyMaterial] = EntityCollection(
            self, "study_materials", StudyMaterial, ("subject_id",),
        )
        self.users: EntityCollection[User] = EntityCollection(self, "users", User)

    @property
    def collections(self) -> tuple[EntityCollection, ...]:
        return (self.subjects, self.assignments, self.study_materials, self.users)

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup and retry for SQLITE_BUSY."""
        conn = None
        for attempt in range(5):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
                conn.row_factory = sqlite3.Row
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < 4:
                    time.sleep(0.1 * (2 ** attempt))
                else:
                    raise
        try:
            yield conn
        finally:
            if conn:
                conn.close()

    # === Metadata Operations ===

    def set_metadata(self, key: str, value: str) -> None:
        """Set a metadata value."""
        with self._lock, self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_metadata (key, value, updated_at)
                VALUES (?, ?, ?)
                """,
                (key, value, format_timestamp(utc_now())),
            )
            conn.commit()

    def get_metadata(self, key: str) -> Optional[str]:
        """Get a metadata value."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM sync_metadata WHERE key = ?",
                (key,),
            ).fetchone()
            return row["value"] if row else None

    def delete_metadata(self, *keys: str) -> None:
        with self._lock, self._get_connection() as conn:
            conn.executemany("DELETE FROM sync_metadata WHERE key = ?", [(k,) for k in keys])
            conn.commit()

    # === Cursors ===

    def get_cursor(self, collection: str) -> Optional[str]:
        return self.get_metadata(CURSOR_KEYS[collection])

    def set_cursor(self, collection: str, value: str) -> None:
        self.set_metadata(CURSOR_KEYS[collection], value)

    def reset_cursors(self) -> None:
        self.delete_metadata(*CURSOR_KEYS.values())

    # === Credential ===

    def get_credential(self) -> Optional[str]:
        return self.get_metadata(CREDENTIAL_KEY)

    def save_credential(self, token: str) -> None:
        self.set_metadata(CREDENTIAL_KEY, token)

    def clear_credential(self) -> None:
        self.delete_metadata(CREDENTIAL_KEY)

    # === Lifecycle ===

    def clear_all(self) -> None:
        """Empty every collection and forget all sync cursors."""
        with self._lock:
            self.generation += 1
            for collection in self.collections:
                collection.remove_all()
            self.reset_cursors()
        logger.info("Cleared all local data")
