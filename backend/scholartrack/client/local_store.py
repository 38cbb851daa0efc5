"""
Local Transactional Store

Client-side embedded database for the local-first dataset. Each collection is
an object store: records are JSON documents keyed by a key path, and every
declared index is backed by an extracted column so that unique indexes are
enforced by SQLite itself.

The schema is versioned. ``open(version)`` applies every numbered upgrade step
between the stored version (``PRAGMA user_version``) and the requested one.
Steps only ever create what is missing, so re-running them is harmless.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple, Callable

from sqlalchemy import (
    MetaData, Table, Column, Integer, String, Text,
    select, delete, func, text, inspect
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncConnection

from scholartrack.utils.codec import encode_classes, decode_classes

logger = logging.getLogger(__name__)


STUDENTS = "students"
CLASSES = "classes"
TRANSACTIONS = "transactions"
STYLE_SETTINGS = "styleSettings"
CUSTOM_STATUS_TYPES = "customStatusTypes"
CUSTOM_TEACHER_EVENT_TYPES = "customTeacherEventTypes"

REQUIRED_COLLECTIONS = (
    STUDENTS,
    CLASSES,
    TRANSACTIONS,
    STYLE_SETTINGS,
    CUSTOM_STATUS_TYPES,
    CUSTOM_TEACHER_EVENT_TYPES,
)

DATA_COLUMN = "data"


class StoreError(Exception):
    """Base error for local store operations."""
    pass


class StoreNotOpenError(StoreError):
    pass


class SchemaError(StoreError):
    pass


class ConstraintError(StoreError):
    """A write violated a unique index (or an existing primary key)."""

    def __init__(self, message: str, collection: str, index: Optional[str] = None):
        super().__init__(message)
        self.collection = collection
        self.index = index


@dataclass
class IndexSpec:
    name: str
    fields: List[str]
    unique: bool = False


@dataclass
class CollectionSpec:
    name: str
    key_path: str = "id"
    auto_increment: bool = False


@dataclass
class SchemaStep:
    """One numbered schema version: collections and indexes it introduces."""
    version: int
    description: str
    collections: List[CollectionSpec] = field(default_factory=list)
    indexes: List[Tuple[str, IndexSpec]] = field(default_factory=list)


SCHEMA_STEPS: List[SchemaStep] = [
    SchemaStep(
        version=1,
        description="students, classes and transactions",
        collections=[
            CollectionSpec(STUDENTS),
            CollectionSpec(CLASSES),
            CollectionSpec(TRANSACTIONS, auto_increment=True),
        ],
        indexes=[
            (STUDENTS, IndexSpec("label", ["label"])),
            (STUDENTS, IndexSpec("code", ["code"], unique=True)),
            (CLASSES, IndexSpec("name", ["name"], unique=True)),
            (TRANSACTIONS, IndexSpec("studentLabel", ["studentLabel"])),
            (TRANSACTIONS, IndexSpec("timestamp", ["timestamp"])),
            (TRANSACTIONS, IndexSpec("className", ["className"])),
        ],
    ),
    SchemaStep(
        version=2,
        description="style settings",
        collections=[CollectionSpec(STYLE_SETTINGS)],
    ),
    SchemaStep(
        version=3,
        description="precise student references on transactions",
        indexes=[(TRANSACTIONS, IndexSpec("studentCode", ["studentCode"]))],
    ),
    SchemaStep(
        version=4,
        description="label+emoji uniqueness for students",
        indexes=[(STUDENTS, IndexSpec("labelEmoji", ["label", "emoji"], unique=True))],
    ),
    SchemaStep(
        version=5,
        description="custom status and teacher event types",
        collections=[
            CollectionSpec(CUSTOM_STATUS_TYPES),
            CollectionSpec(CUSTOM_TEACHER_EVENT_TYPES),
        ],
        indexes=[
            (CUSTOM_STATUS_TYPES, IndexSpec("name", ["name"], unique=True)),
            (CUSTOM_TEACHER_EVENT_TYPES, IndexSpec("name", ["name"], unique=True)),
        ],
    ),
]

LATEST_VERSION = SCHEMA_STEPS[-1].version

# Field codecs applied on write / read, per collection
FIELD_CODECS: Dict[str, Dict[str, Tuple[Callable, Callable]]] = {
    STUDENTS: {"classes": (encode_classes, decode_classes)},
}

_UNIQUE_FAILED = re.compile(r"UNIQUE constraint failed: ([\w\.\s,]+)")


class LocalStore:
    """
    Async handle on one local database file.

    The handle is created closed; ``open`` connects and upgrades. It is passed
    explicitly to every component that needs the store.
    """

    def __init__(self, path: str, name: str = "scholartrack"):
        self.path = path
        self.name = name
        self.version: int = 0
        self._engine: Optional[AsyncEngine] = None
        self._tables: Dict[str, Table] = {}
        self._indexes: Dict[str, List[IndexSpec]] = {}

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    async def open(self, version: int = LATEST_VERSION) -> "LocalStore":
        """Open (creating if absent) the store and upgrade it to ``version``."""
        if version < 1 or version > LATEST_VERSION:
            raise SchemaError(f"Unknown schema version {version}")
        if self._engine is None:
            self._engine = create_async_engine(f"sqlite+aiosqlite:///{self.path}")

        async with self._engine.begin() as conn:
            stored = (await conn.execute(text("PRAGMA user_version"))).scalar() or 0
            if stored > version:
                raise SchemaError(
                    f"Store {self.name} is at version {stored}, cannot open at older version {version}"
                )
            if stored < version:
                logger.info(f"Upgrading local store {self.name} from version {stored} to {version}")
                for step in SCHEMA_STEPS:
                    if stored < step.version <= version:
                        await self._apply_step(conn, step)
                await conn.execute(text(f"PRAGMA user_version = {int(version)}"))

        self.version = version
        await self._load_tables()
        logger.info(f"Local store {self.name} open at version {self.version}")
        return self

    async def close(self):
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        self._tables = {}

    async def delete_database(self):
        """Close the handle and remove the underlying database file."""
        await self.close()
        for suffix in ("", "-journal", "-wal", "-shm"):
            candidate = f"{self.path}{suffix}"
            if os.path.exists(candidate):
                os.remove(candidate)
        self.version = 0
        logger.info(f"Deleted local store {self.name} at {self.path}")

    def collection_names(self) -> List[str]:
        self._require_open()
        return sorted(self._tables)

    def index_names(self, collection: str) -> List[str]:
        return [spec.name for spec in self._indexes.get(collection, [])]

    def missing_unique_indexes(self) -> List[Tuple[str, str]]:
        """
        Unique indexes the schema declares up to the current version that the
        store does not have, as (collection, index) pairs. An upgrade skips a
        unique index when stored rows already violate it.
        """
        self._require_open()
        missing = []
        for step in SCHEMA_STEPS:
            if step.version > self.version:
                break
            for collection, index_spec in step.indexes:
                if (index_spec.unique and collection in self._tables
                        and index_spec.name not in self.index_names(collection)):
                    missing.append((collection, index_spec.name))
        return missing

    async def drop_index(self, collection: str, index_name: str):
        self._require_open()
        async with self._engine.begin() as conn:
            await conn.execute(text(f'DROP INDEX IF EXISTS "{collection}__{index_name}"'))
        await self._load_tables()

    async def drop_collection(self, collection: str):
        """Remove a collection outright. Used to repair or downgrade a store."""
        self._require_open()
        table = self._table(collection)
        async with self._engine.begin() as conn:
            await conn.run_sync(table.drop)
        await self._load_tables()

    # --- Record operations ---

    async def get_all(self, collection: str) -> List[Dict[str, Any]]:
        table = self._table(collection)
        key = table.c[self._key_path(collection)]
        async with self._engine.connect() as conn:
            rows = (await conn.execute(select(table).order_by(key))).mappings().all()
        return [self._decode_row(collection, row) for row in rows]

    async def get(self, collection: str, key: Any) -> Optional[Dict[str, Any]]:
        table = self._table(collection)
        key_column = table.c[self._key_path(collection)]
        async with self._engine.connect() as conn:
            row = (await conn.execute(select(table).where(key_column == key))).mappings().first()
        return self._decode_row(collection, row) if row is not None else None

    async def get_all_by_index(self, collection: str, field_name: str, value: Any) -> List[Dict[str, Any]]:
        table = self._table(collection)
        if field_name in table.c and field_name != DATA_COLUMN:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(select(table).where(table.c[field_name] == value))).mappings().all()
            return [self._decode_row(collection, row) for row in rows]
        return [r for r in await self.get_all(collection) if r.get(field_name) == value]

    async def count(self, collection: str) -> int:
        table = self._table(collection)
        async with self._engine.connect() as conn:
            return (await conn.execute(select(func.count()).select_from(table))).scalar() or 0

    async def add(self, collection: str, record: Dict[str, Any]) -> Any:
        """Insert a new record. Returns its key; raises ``ConstraintError`` on collision."""
        table = self._table(collection)
        values = self._encode_record(collection, record)
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(table.insert().values(**values))
                key = result.inserted_primary_key[0]
        except IntegrityError as e:
            raise self._constraint_error(collection, e) from e
        return key

    async def put(self, collection: str, record: Dict[str, Any]) -> Any:
        """Insert or replace a record by key."""
        table = self._table(collection)
        key_path = self._key_path(collection)
        values = self._encode_record(collection, record)
        if values.get(key_path) is None:
            return await self.add(collection, record)

        stmt = sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[key_path],
            set_={name: stmt.excluded[name] for name in values if name != key_path},
        )
        try:
            async with self._engine.begin() as conn:
                await conn.execute(stmt)
        except IntegrityError as e:
            raise self._constraint_error(collection, e) from e
        return values[key_path]

    async def delete(self, collection: str, key: Any):
        table = self._table(collection)
        key_column = table.c[self._key_path(collection)]
        async with self._engine.begin() as conn:
            await conn.execute(delete(table).where(key_column == key))

    async def clear(self, collection: str):
        table = self._table(collection)
        async with self._engine.begin() as conn:
            await conn.execute(delete(table))

    # --- Internals ---

    def _require_open(self):
        if self._engine is None:
            raise StoreNotOpenError(f"Local store {self.name} is not open")

    def _table(self, collection: str) -> Table:
        self._require_open()
        table = self._tables.get(collection)
        if table is None:
            raise StoreError(f"Collection {collection} not found in store {self.name}")
        return table

    def _key_path(self, collection: str) -> str:
        table = self._tables[collection]
        return list(table.primary_key.columns)[0].name

    def _encode_record(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        table = self._tables[collection]
        key_path = self._key_path(collection)
        document = dict(record)
        for field_name, (encode, _) in FIELD_CODECS.get(collection, {}).items():
            if field_name in document:
                document[field_name] = encode(document[field_name])

        values: Dict[str, Any] = {}
        if document.get(key_path) is not None:
            values[key_path] = document[key_path]
        for column in table.columns:
            if column.name in (key_path, DATA_COLUMN):
                continue
            values[column.name] = document.get(column.name)
        document.pop(key_path, None)
        values[DATA_COLUMN] = json.dumps(document, ensure_ascii=False)
        return values

    def _decode_row(self, collection: str, row) -> Dict[str, Any]:
        key_path = self._key_path(collection)
        record = json.loads(row[DATA_COLUMN]) if row[DATA_COLUMN] else {}
        record[key_path] = row[key_path]
        for field_name, (_, decode) in FIELD_CODECS.get(collection, {}).items():
            if field_name in record:
                record[field_name] = decode(record[field_name])
        return record

    def _constraint_error(self, collection: str, error: IntegrityError) -> ConstraintError:
        message = str(error.orig)
        index_name = None
        match = _UNIQUE_FAILED.search(message)
        if match:
            failed = sorted(part.strip().split(".")[-1] for part in match.group(1).split(","))
            for spec in self._indexes.get(collection, []):
                if sorted(spec.fields) == failed:
                    index_name = spec.name
                    break
            else:
                if failed == [self._key_path(collection)]:
                    index_name = failed[0]
        return ConstraintError(
            f"Unique constraint violated in {collection}" + (f" on index {index_name}" if index_name else ""),
            collection=collection,
            index=index_name,
        )

    async def _load_tables(self):
        metadata = MetaData()
        async with self._engine.connect() as conn:
            await conn.run_sync(lambda sync_conn: metadata.reflect(sync_conn))
            index_info = await conn.run_sync(self._read_indexes)
        self._tables = {name: table for name, table in metadata.tables.items() if name in REQUIRED_COLLECTIONS}
        self._indexes = {name: index_info.get(name, []) for name in self._tables}

    def _read_indexes(self, sync_conn) -> Dict[str, List[IndexSpec]]:
        inspector = inspect(sync_conn)
        result: Dict[str, List[IndexSpec]] = {}
        for table_name in inspector.get_table_names():
            specs = []
            for index in inspector.get_indexes(table_name):
                # Index names are "<collection>__<index>"
                short_name = index["name"].split("__", 1)[-1]
                specs.append(IndexSpec(short_name, list(index["column_names"]), bool(index["unique"])))
            result[table_name] = specs
        return result

    async def _apply_step(self, conn: AsyncConnection, step: SchemaStep):
        logger.info(f"Applying schema step {step.version}: {step.description}")
        existing = set(await conn.run_sync(lambda c: inspect(c).get_table_names()))

        for spec in step.collections:
            if spec.name in existing:
                continue
            metadata = MetaData()
            key_type = Integer if spec.auto_increment else String(255)
            Table(
                spec.name, metadata,
                Column(spec.key_path, key_type, primary_key=True, autoincrement=spec.auto_increment),
                Column(DATA_COLUMN, Text, nullable=False),
                sqlite_autoincrement=spec.auto_increment,
            )
            await conn.run_sync(metadata.create_all)
            existing.add(spec.name)

        for collection, index_spec in step.indexes:
            if collection not in existing:
                logger.warning(f"Skipping index {index_spec.name}: collection {collection} is missing")
                continue
            await self._create_index(conn, collection, index_spec)

    async def _create_index(self, conn: AsyncConnection, collection: str, index_spec: IndexSpec):
        columns = await conn.run_sync(lambda c: [col["name"] for col in inspect(c).get_columns(collection)])
        for field_name in index_spec.fields:
            if field_name not in columns:
                await conn.execute(text(f'ALTER TABLE "{collection}" ADD COLUMN "{field_name}" TEXT'))
                await conn.execute(text(
                    f'UPDATE "{collection}" SET "{field_name}" = json_extract({DATA_COLUMN}, :path)'
                ), {"path": f"$.{field_name}"})
                columns.append(field_name)

        if index_spec.unique:
            column_list = ", ".join(f'"{f}"' for f in index_spec.fields)
            duplicates = (await conn.execute(text(
                f'SELECT {column_list}, COUNT(*) AS n FROM "{collection}" '
                f'GROUP BY {column_list} HAVING COUNT(*) > 1'
            ))).all()
            if duplicates:
                logger.warning(
                    f"Cannot add unique index {index_spec.name} to {collection}: "
                    f"{len(duplicates)} duplicate value(s) already stored; export and re-import to repair"
                )
                return

        index_name = f"{collection}__{index_spec.name}"
        column_list = ", ".join(f'"{f}"' for f in index_spec.fields)
        unique = "UNIQUE " if index_spec.unique else ""
        try:
            await conn.execute(text(
                f'CREATE {unique}INDEX IF NOT EXISTS "{index_name}" ON "{collection}" ({column_list})'
            ))
        except OperationalError as e:
            raise SchemaError(f"Failed to create index {index_name}: {e.orig}") from e
