"""
Relational store handle and SQLAlchemy driver.

The handle owns the engine and session factory and is constructed once at
startup; ``connect()`` must be awaited before it is handed to the catalog
or the driver. Blocking SQLAlchemy calls run in worker threads.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional, Sequence

from sqlalchemy import MetaData, Table, create_engine, func, select, text  # type: ignore
from sqlalchemy.exc import NoSuchTableError, OperationalError, SQLAlchemyError  # type: ignore
from sqlalchemy.orm import Session, sessionmaker  # type: ignore
from sqlalchemy.pool import QueuePool, StaticPool  # type: ignore

from polystore.common.exceptions import InputError, StoreReadError, StoreWriteError
from polystore.common.metrics import track_store_operation
from polystore.common.resilience import retry_connect
from polystore.config.settings import Settings, get_settings
from polystore.ingest.schema_generator import ID_COLUMN, GeneratedSchema, build_table
from polystore.storage.adapter import RelationalDriver, Row

logger = logging.getLogger(__name__)

STORE_NAME = "relational"


class RelationalStoreHandle:
    """
    Explicit handle on the relational database.

    Usage:
        handle = RelationalStoreHandle(settings)
        await handle.connect()
        with handle.session() as db:
            ...
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.engine = self._create_engine(self.settings)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            future=True,
            expire_on_commit=False,
        )
        self.connected = False

    @staticmethod
    def _create_engine(settings: Settings):
        url = settings.database_url
        if url.startswith("sqlite"):
            # One shared connection so in-memory databases survive across threads
            return create_engine(
                url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=settings.db_echo,
                future=True,
            )

        # pool_pre_ping: verify connections before use
        # pool_recycle: drop connections older than an hour
        return create_engine(
            url,
            poolclass=QueuePool,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
            echo=settings.db_echo,
            future=True,
        )

    def _ping(self) -> None:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except OperationalError as e:
            raise ConnectionError(f"Relational store unreachable: {e}") from e

    async def connect(self) -> "RelationalStoreHandle":
        """
        Wait until the database answers ``SELECT 1``.

        Raises:
            ConnectionError: After ``connect_attempts`` failed attempts
        """
        ping = retry_connect(self.settings.connect_attempts)(self._ping)
        await asyncio.to_thread(ping)
        self.connected = True
        logger.info(f"Relational store ready ({self.engine.url.get_backend_name()})")
        return self

    def create_all(self, metadata: MetaData) -> None:
        """Create every table in ``metadata``. Migrations do this in production."""
        metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Context manager for ORM sessions. Commits on success, rolls back on error.

        Usage:
            with handle.session() as db:
                db.add(record)
        """
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def check_connection(self) -> bool:
        """
        Check if the database connection is healthy.

        Returns:
            True if connection is successful, False otherwise
        """
        try:
            self._ping()
            return True
        except ConnectionError:
            return False

    async def dispose(self) -> None:
        await asyncio.to_thread(self.engine.dispose)
        self.connected = False


class SqlAlchemyRelationalDriver(RelationalDriver):
    """
    Relational driver over a SQLAlchemy engine.

    Tables created through ``create_entity`` are kept in a private
    ``MetaData``; other tables are reflected on first use.
    """

    def __init__(self, handle: RelationalStoreHandle):
        self.handle = handle
        self.metadata = MetaData()

    @property
    def engine(self):
        return self.handle.engine

    def _table(self, entity: str) -> Table:
        table = self.metadata.tables.get(entity)
        if table is None:
            table = Table(entity, self.metadata, autoload_with=self.engine)
        return table

    def _forget(self, entity: str) -> None:
        table = self.metadata.tables.get(entity)
        if table is not None:
            self.metadata.remove(table)

    @staticmethod
    def _column(table: Table, name: str):
        if name not in table.c:
            raise InputError(f"Unknown column '{name}' on {table.name}")
        return table.c[name]

    @track_store_operation(STORE_NAME, "execute")
    async def execute(self, statement: str, params: Optional[Dict[str, Any]] = None) -> List[Row]:
        def _run():
            with self.engine.begin() as conn:
                result = conn.execute(text(statement), params or {})
                if result.returns_rows:
                    return [dict(row._mapping) for row in result]
                return []

        try:
            return await asyncio.to_thread(_run)
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Statement failed: {e}", store=STORE_NAME) from e

    @track_store_operation(STORE_NAME, "create")
    async def create_entity(self, schema: GeneratedSchema) -> None:
        def _create():
            self._forget(schema.entity_name)
            table = build_table(schema, self.metadata)
            table.create(self.engine, checkfirst=True)

        try:
            await asyncio.to_thread(_create)
        except SQLAlchemyError as e:
            self._forget(schema.entity_name)
            raise StoreWriteError(
                f"Failed to create table {schema.entity_name}: {e}",
                store=STORE_NAME, entity=schema.entity_name) from e
        logger.info(f"Created table {schema.entity_name} ({len(schema.columns)} columns)")

    @track_store_operation(STORE_NAME, "insert")
    async def insert(self, entity: str, rows: List[Row]) -> int:
        if not rows:
            return 0

        def _insert():
            table = self._table(entity)
            keys = []
            for row in rows:
                for key in row:
                    if key not in keys:
                        keys.append(key)
            unknown = [key for key in keys if key not in table.c]
            if unknown:
                raise StoreWriteError(
                    f"Columns not in {entity}: {', '.join(unknown)}",
                    store=STORE_NAME, entity=entity)

            # executemany needs every row to bind the same parameters
            params = [{key: row.get(key) for key in keys} for row in rows]
            with self.engine.begin() as conn:
                conn.execute(table.insert(), params)
            return len(params)

        try:
            return await asyncio.to_thread(_insert)
        except NoSuchTableError as e:
            raise StoreWriteError(f"Table {entity} does not exist", store=STORE_NAME, entity=entity) from e
        except SQLAlchemyError as e:
            raise StoreWriteError(
                f"Insert into {entity} failed: {e}", store=STORE_NAME, entity=entity) from e

    @track_store_operation(STORE_NAME, "query")
    async def query(
        self,
        entity: str,
        filter: Optional[Dict[str, Any]] = None,
        order: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Row]:
        def _query():
            table = self._table(entity)
            stmt = select(table)
            for name, value in (filter or {}).items():
                stmt = stmt.where(self._column(table, name) == value)

            for key in order or ([ID_COLUMN] if ID_COLUMN in table.c else []):
                descending = key.startswith("-")
                column = self._column(table, key.lstrip("-"))
                stmt = stmt.order_by(column.desc() if descending else column.asc())

            if limit is not None:
                stmt = stmt.limit(limit)
            if offset:
                stmt = stmt.offset(offset)

            with self.engine.connect() as conn:
                return [dict(row._mapping) for row in conn.execute(stmt)]

        try:
            return await asyncio.to_thread(_query)
        except NoSuchTableError as e:
            raise StoreReadError(f"Table {entity} does not exist", store=STORE_NAME) from e
        except SQLAlchemyError as e:
            raise StoreReadError(f"Query on {entity} failed: {e}", store=STORE_NAME) from e

    @track_store_operation(STORE_NAME, "count")
    async def count(self, entity: str, filter: Optional[Dict[str, Any]] = None) -> int:
        def _count():
            table = self._table(entity)
            stmt = select(func.count()).select_from(table)
            for name, value in (filter or {}).items():
                stmt = stmt.where(self._column(table, name) == value)
            with self.engine.connect() as conn:
                return conn.execute(stmt).scalar_one()

        try:
            return await asyncio.to_thread(_count)
        except NoSuchTableError as e:
            raise StoreReadError(f"Table {entity} does not exist", store=STORE_NAME) from e
        except SQLAlchemyError as e:
            raise StoreReadError(f"Count on {entity} failed: {e}", store=STORE_NAME) from e

    @track_store_operation(STORE_NAME, "drop")
    async def drop_entity(self, entity: str) -> None:
        def _drop():
            # Dropping only needs the name
            Table(entity, MetaData()).drop(self.engine, checkfirst=True)
            self._forget(entity)

        try:
            await asyncio.to_thread(_drop)
        except SQLAlchemyError as e:
            raise StoreWriteError(
                f"Failed to drop table {entity}: {e}", store=STORE_NAME, entity=entity) from e
        logger.info(f"Dropped table {entity}")
