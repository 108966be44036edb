from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Iterator, Sequence
from urllib.parse import urlparse

import aiosqlite

from ips_service.config import StoreSettings
from ips_service.errors import ConstraintViolation, StoreError, StoreTimeout, StoreUnavailable

try:  # Optional: only required when the store is Postgres
    import asyncpg  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    asyncpg = None

logger = logging.getLogger(__name__)


class DatabaseAdapter:
    engine: str

    async def execute(self, query: str, params: Sequence | None = None) -> int:  # pragma: no cover - interface
        """Run a statement and return the number of affected rows."""
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def insert(self, query: str, params: Sequence | None = None) -> int:  # pragma: no cover - interface
        """Run an INSERT into a table with an integer ``id`` and return the new id."""
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def rollback(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executescript(self, script: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def json_path(self, column: str, path: Sequence[str]) -> str:  # pragma: no cover - interface
        """SQL expression extracting ``path`` from a JSON column as text."""
        raise NotImplementedError

    def json_timestamp(self, column: str, path: Sequence[str]) -> str:  # pragma: no cover - interface
        """SQL expression for a JSON string at ``path`` as a sortable timestamp, NULL otherwise."""
        raise NotImplementedError

    def encode_datetime(self, value: datetime | None):  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"

    @contextmanager
    def _wrap_errors(self) -> Iterator[None]:
        try:
            yield
        except StoreError:
            raise
        except aiosqlite.IntegrityError as exc:
            raise ConstraintViolation(f"SQLite constraint failed: {exc}") from exc
        except aiosqlite.OperationalError as exc:
            if "locked" in str(exc) or "busy" in str(exc):
                raise StoreTimeout(f"SQLite busy: {exc}") from exc
            raise StoreUnavailable(f"SQLite error: {exc}") from exc
        except (aiosqlite.Error, ValueError) as exc:
            # aiosqlite raises ValueError once the connection is closed
            raise StoreUnavailable(f"SQLite error: {exc}") from exc

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        with self._wrap_errors():
            cursor = await self.conn.execute(query, params or ())
            return cursor.rowcount

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        with self._wrap_errors():
            await self.conn.executemany(query, seq_params)

    async def insert(self, query: str, params: Sequence | None = None) -> int:
        with self._wrap_errors():
            cursor = await self.conn.execute(query, params or ())
            return cursor.lastrowid

    async def fetch_one(self, query: str, params: Sequence | None = None):
        with self._wrap_errors():
            cursor = await self.conn.execute(query, params or ())
            return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        with self._wrap_errors():
            cursor = await self.conn.execute(query, params or ())
            return await cursor.fetchall()

    async def commit(self) -> None:
        with self._wrap_errors():
            await self.conn.commit()

    async def rollback(self) -> None:
        with self._wrap_errors():
            await self.conn.rollback()

    async def close(self) -> None:
        await self.conn.close()

    async def executescript(self, script: str) -> None:
        with self._wrap_errors():
            await self.conn.executescript(script)

    @staticmethod
    def _path(path: Sequence[str]) -> str:
        # Keys such as "$date" must be quoted in an SQLite JSON path
        return "$." + ".".join(key if key.isidentifier() else f'"{key}"' for key in path)

    @staticmethod
    def _valid(column: str) -> str:
        # json_extract raises on malformed JSON; treat such rows as non-matching
        return f"CASE WHEN json_valid({column}) THEN {column} END"

    def json_path(self, column: str, path: Sequence[str]) -> str:
        return f"json_extract({self._valid(column)}, '{self._path(path)}')"

    def json_timestamp(self, column: str, path: Sequence[str]) -> str:
        # ISO strings sort chronologically as text
        return (
            f"CASE WHEN json_type({self._valid(column)}, '{self._path(path)}') = 'text' "
            f"THEN {self.json_path(column, path)} END"
        )

    def encode_datetime(self, value: datetime | None):
        return value.isoformat() if value is not None else None


@dataclass
class PostgresAdapter(DatabaseAdapter):
    pool: "asyncpg.Pool"  # type: ignore[name-defined]
    acquire_timeout: float = 10.0
    engine: str = "postgres"

    @staticmethod
    def _translate_query(query: str) -> str:
        # Convert SQLite-style ? placeholders to asyncpg-style $1, $2, ...
        if "$1" in query:
            return query
        idx = 1
        out = []
        for ch in query:
            if ch == "?":
                out.append(f"${idx}")
                idx += 1
            else:
                out.append(ch)
        return "".join(out)

    @staticmethod
    def _rowcount(status: str) -> int:
        # asyncpg returns the command tag, e.g. "DELETE 2" or "INSERT 0 1"
        try:
            return int(status.rsplit(" ", 1)[-1])
        except (AttributeError, ValueError):
            return 0

    @contextmanager
    def _wrap_errors(self) -> Iterator[None]:
        try:
            yield
        except StoreError:
            raise
        except asyncio.TimeoutError as exc:
            raise StoreTimeout("Timed out waiting for a database connection") from exc
        except Exception as exc:
            if asyncpg is not None and isinstance(exc, asyncpg.exceptions.QueryCanceledError):
                raise StoreTimeout(f"Postgres statement timed out: {exc}") from exc
            if asyncpg is not None and isinstance(exc, asyncpg.exceptions.IntegrityConstraintViolationError):
                raise ConstraintViolation(f"Postgres constraint failed: {exc}") from exc
            if asyncpg is not None and isinstance(exc, (asyncpg.PostgresError, asyncpg.InterfaceError)):
                raise StoreUnavailable(f"Postgres error: {exc}") from exc
            if isinstance(exc, OSError):
                raise StoreUnavailable(f"Postgres connection failed: {exc}") from exc
            raise

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        q = self._translate_query(query)
        with self._wrap_errors():
            async with self.pool.acquire(timeout=self.acquire_timeout) as conn:
                status = await conn.execute(q, *(params or ()))
        return self._rowcount(status)

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        q = self._translate_query(query)
        with self._wrap_errors():
            async with self.pool.acquire(timeout=self.acquire_timeout) as conn:
                await conn.executemany(q, seq_params)

    async def insert(self, query: str, params: Sequence | None = None) -> int:
        q = self._translate_query(query) + " RETURNING id"
        with self._wrap_errors():
            async with self.pool.acquire(timeout=self.acquire_timeout) as conn:
                return await conn.fetchval(q, *(params or ()))

    async def fetch_one(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        with self._wrap_errors():
            async with self.pool.acquire(timeout=self.acquire_timeout) as conn:
                return await conn.fetchrow(q, *(params or ()))

    async def fetch_all(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        with self._wrap_errors():
            async with self.pool.acquire(timeout=self.acquire_timeout) as conn:
                return await conn.fetch(q, *(params or ()))

    async def commit(self) -> None:
        # asyncpg autocommits per statement unless an explicit transaction is used.
        return

    async def rollback(self) -> None:
        # Nothing pending: every statement has already committed.
        return

    async def close(self) -> None:
        await self.pool.close()

    async def executescript(self, script: str) -> None:
        # Not supported for Postgres; callers should split statements.
        raise NotImplementedError

    def json_path(self, column: str, path: Sequence[str]) -> str:
        return f"({column} #>> '{{{','.join(path)}}}')"

    def json_timestamp(self, column: str, path: Sequence[str]) -> str:
        pg_path = "{" + ",".join(path) + "}"
        return (
            f"(CASE WHEN jsonb_typeof({column} #> '{pg_path}') = 'string' "
            f"THEN ({column} #>> '{pg_path}')::timestamptz AT TIME ZONE 'UTC' END)"
        )

    def encode_datetime(self, value: datetime | None):
        # TIMESTAMP columns hold naive UTC values
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


async def connect_store(settings: StoreSettings) -> DatabaseAdapter:
    """Open a store handle for ``settings`` and make sure its schema exists.

    The caller owns the returned adapter and must ``close()`` it.
    """
    url = settings.database_url
    if url and not url.startswith("sqlite"):
        if asyncpg is None:
            raise RuntimeError(
                "DATABASE_URL is set but asyncpg is not installed. "
                "Install asyncpg or unset DATABASE_URL."
            )
        try:
            pool = await asyncpg.create_pool(
                dsn=url,
                min_size=1,
                max_size=settings.max_connections,
                timeout=settings.acquire_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise StoreTimeout("Timed out connecting to Postgres") from exc
        except (OSError, asyncpg.PostgresError) as exc:
            raise StoreUnavailable(f"Could not connect to Postgres: {exc}") from exc
        db: DatabaseAdapter = PostgresAdapter(pool, acquire_timeout=settings.acquire_timeout)
        logger.info("Connected to Postgres database (pool size %d)", settings.max_connections)
    else:
        sqlite_path = (_sqlite_path_from_url(url) if url else "") or settings.database_path
        try:
            conn = await aiosqlite.connect(sqlite_path, timeout=settings.acquire_timeout)
        except aiosqlite.Error as exc:
            raise StoreUnavailable(f"Could not open SQLite database {sqlite_path}: {exc}") from exc
        conn.row_factory = aiosqlite.Row
        # Child rows rely on ON DELETE CASCADE
        await conn.execute("PRAGMA foreign_keys = ON")
        db = SQLiteAdapter(conn)
        logger.info("Connected to SQLite database at %s", sqlite_path)

    await init_schema(db)
    return db


def _sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or ""
    if not path or path == "/":
        return ""
    # sqlite:////absolute/path.db -> keep absolute path
    if url.startswith("sqlite:////"):
        return "/" + path.lstrip("/")
    # sqlite:///relative.db -> strip leading slash
    if path.startswith("/"):
        return path[1:]
    return path


SQLITE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS "ipsAlt" (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        "packageUUID" TEXT NOT NULL UNIQUE,
        "timeStamp" TEXT NOT NULL,
        "patientName" TEXT,
        "patientGiven" TEXT,
        "patientDob" TEXT,
        "patientGender" TEXT,
        "patientNation" TEXT,
        "patientPractitioner" TEXT,
        "patientOrganization" TEXT,
        "patientIdentifier" TEXT,
        "patientIdentifier2" TEXT
    );

    CREATE INDEX IF NOT EXISTS "ipsAlt_practitioner" ON "ipsAlt" ("patientPractitioner");

    CREATE TABLE IF NOT EXISTS "Medications" (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        date TEXT,
        dosage TEXT,
        system TEXT,
        code TEXT,
        status TEXT,
        "IPSModelId" INTEGER NOT NULL REFERENCES "ipsAlt"(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS "Allergies" (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        criticality TEXT,
        date TEXT,
        system TEXT,
        code TEXT,
        "IPSModelId" INTEGER NOT NULL REFERENCES "ipsAlt"(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS "Conditions" (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        date TEXT,
        system TEXT,
        code TEXT,
        "IPSModelId" INTEGER NOT NULL REFERENCES "ipsAlt"(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS "Observations" (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        date TEXT,
        value TEXT,
        system TEXT,
        code TEXT,
        "valueCode" TEXT,
        "bodySite" TEXT,
        status TEXT,
        "IPSModelId" INTEGER NOT NULL REFERENCES "ipsAlt"(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS "Immunizations" (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        system TEXT,
        date TEXT,
        code TEXT,
        status TEXT,
        "IPSModelId" INTEGER NOT NULL REFERENCES "ipsAlt"(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS "Medications_ips" ON "Medications" ("IPSModelId");
    CREATE INDEX IF NOT EXISTS "Allergies_ips" ON "Allergies" ("IPSModelId");
    CREATE INDEX IF NOT EXISTS "Conditions_ips" ON "Conditions" ("IPSModelId");
    CREATE INDEX IF NOT EXISTS "Observations_ips" ON "Observations" ("IPSModelId");
    CREATE INDEX IF NOT EXISTS "Immunizations_ips" ON "Immunizations" ("IPSModelId");

    CREATE TABLE IF NOT EXISTS ips_documents (
        id TEXT PRIMARY KEY,
        body TEXT NOT NULL,
        created_at TEXT NOT NULL
    );
"""

POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS "ipsAlt" (
        id BIGSERIAL PRIMARY KEY,
        "packageUUID" TEXT NOT NULL UNIQUE,
        "timeStamp" TIMESTAMP NOT NULL,
        "patientName" TEXT,
        "patientGiven" TEXT,
        "patientDob" TIMESTAMP,
        "patientGender" TEXT,
        "patientNation" TEXT,
        "patientPractitioner" TEXT,
        "patientOrganization" TEXT,
        "patientIdentifier" TEXT,
        "patientIdentifier2" TEXT
    );
    """,
    'CREATE INDEX IF NOT EXISTS "ipsAlt_practitioner" ON "ipsAlt" ("patientPractitioner");',
    """
    CREATE TABLE IF NOT EXISTS "Medications" (
        id BIGSERIAL PRIMARY KEY,
        name TEXT,
        date TIMESTAMP,
        dosage TEXT,
        system TEXT,
        code TEXT,
        status TEXT,
        "IPSModelId" BIGINT NOT NULL REFERENCES "ipsAlt"(id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS "Allergies" (
        id BIGSERIAL PRIMARY KEY,
        name TEXT,
        criticality TEXT,
        date TIMESTAMP,
        system TEXT,
        code TEXT,
        "IPSModelId" BIGINT NOT NULL REFERENCES "ipsAlt"(id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS "Conditions" (
        id BIGSERIAL PRIMARY KEY,
        name TEXT,
        date TIMESTAMP,
        system TEXT,
        code TEXT,
        "IPSModelId" BIGINT NOT NULL REFERENCES "ipsAlt"(id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS "Observations" (
        id BIGSERIAL PRIMARY KEY,
        name TEXT,
        date TIMESTAMP,
        value TEXT,
        system TEXT,
        code TEXT,
        "valueCode" TEXT,
        "bodySite" TEXT,
        status TEXT,
        "IPSModelId" BIGINT NOT NULL REFERENCES "ipsAlt"(id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS "Immunizations" (
        id BIGSERIAL PRIMARY KEY,
        name TEXT,
        system TEXT,
        date TIMESTAMP,
        code TEXT,
        status TEXT,
        "IPSModelId" BIGINT NOT NULL REFERENCES "ipsAlt"(id) ON DELETE CASCADE
    );
    """,
    'CREATE INDEX IF NOT EXISTS "Medications_ips" ON "Medications" ("IPSModelId");',
    'CREATE INDEX IF NOT EXISTS "Allergies_ips" ON "Allergies" ("IPSModelId");',
    'CREATE INDEX IF NOT EXISTS "Conditions_ips" ON "Conditions" ("IPSModelId");',
    'CREATE INDEX IF NOT EXISTS "Observations_ips" ON "Observations" ("IPSModelId");',
    'CREATE INDEX IF NOT EXISTS "Immunizations_ips" ON "Immunizations" ("IPSModelId");',
    """
    CREATE TABLE IF NOT EXISTS ips_documents (
        id TEXT PRIMARY KEY,
        body JSONB NOT NULL,
        created_at TIMESTAMP NOT NULL
    );
    """,
]


async def init_schema(db: DatabaseAdapter) -> None:
    if db.engine == "sqlite":
        await db.executescript(SQLITE_SCHEMA)
    else:
        for stmt in POSTGRES_SCHEMA:
            await db.execute(stmt)
    await db.commit()
