"""Async backing-store connection manager with SQLModel and SQLAlchemy 2.0.

One ``Database`` instance per process owns the engine. Every store call goes
through ``execute``, which connects lazily, applies a per-class deadline and
retries connection-class failures exactly once.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy import func, text
from sqlalchemy.exc import DBAPIError, DisconnectionError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel, select

from constants import OperationClass
from core.config import Settings
from core.exceptions import (
    ApplicationError,
    ConnectionFailed,
    ConnectTimeout,
    OperationFailed,
    OperationTimeout,
    RecordNotFoundError,
    UnknownModelError,
    WorklogError,
)
from core.logging import get_logger
from models.database import MODEL_REGISTRY

logger = get_logger(__name__)

Operation = Callable[[AsyncSession], Awaitable[Any]]

# Postgres SQLSTATE: class 08 (connection exception) and admin shutdown
CONNECTION_SQLSTATE_PREFIXES = ("08",)
CONNECTION_SQLSTATE_CODES = frozenset(["57P01"])

CONNECTION_ERROR_FRAGMENTS = (
    "connection terminated",
    "database server",
    "prepared statement",
    "timeout",
    "could not connect",
)

WHERE_OPERATORS = frozenset(["gte", "lte", "gt", "lt", "in", "not"])


class Database:
    """Async database service with SQLModel.

    Attributes mirrored for health reporting:
        connected: last ping or operation succeeded on the current engine
        connecting: a connect attempt is in flight
        retry_count: connect-level retries used by the current attempt
        last_health_check: memoized ``health_check`` result and when it was taken
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None
        self.connected = False
        self.connecting = False
        self.retry_count = 0
        self.last_health_check: Optional[Dict[str, Any]] = None
        self.timeouts = {
            OperationClass.SHORT: settings.database_short_timeout,
            OperationClass.MEDIUM: settings.database_medium_timeout,
            OperationClass.LONG: settings.database_long_timeout,
        }

    def _initialize_engine(self) -> None:
        """Create engine and session factory; the previous engine must already be disposed."""
        engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo}
        if not self.settings.database_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=self.settings.database_pool_size,
                max_overflow=self.settings.database_max_overflow,
                pool_pre_ping=True,
            )

        self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)
        self.async_session = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        self.connected = False

    async def _reinitialize(self) -> None:
        if self.engine is not None:
            try:
                await self.engine.dispose()
            except Exception as e:
                logger.warning("Engine dispose failed during reinitialization", error=str(e))
        self._initialize_engine()
        logger.info("Database engine reinitialized")

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            self._initialize_engine()

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            self.connected = True
            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")
        self.connected = False

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Connection management
    # ============================================================================

    async def _ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def connect(self):
        """Return the live engine, establishing connectivity if needed."""
        if self.connected and self.engine is not None:
            return self.engine

        if self.connecting:
            for _ in range(self.settings.database_connect_wait_polls):
                await asyncio.sleep(self.settings.database_connect_wait_interval)
                if self.connected and self.engine is not None:
                    return self.engine
            raise ConnectTimeout("Timeout waiting for existing connection")

        if self.engine is None:
            self._initialize_engine()

        self.connecting = True
        try:
            while True:
                try:
                    await self._ping()
                    self.retry_count = 0
                    self.connected = True
                    logger.info("Database connected successfully")
                    return self.engine
                except Exception as e:
                    self.connected = False
                    logger.error("Database connection failed", error=str(e),
                                 retry_count=self.retry_count)

                    if self.retry_count < self.settings.database_max_retries:
                        self.retry_count += 1
                        logger.info("Retrying connection", attempt=self.retry_count,
                                    max_retries=self.settings.database_max_retries)
                        await asyncio.sleep(self.settings.database_retry_delay)
                        continue

                    attempts = self.retry_count + 1
                    self.retry_count = 0
                    await self._reinitialize()
                    raise ConnectionFailed(attempts, str(e)) from e
        finally:
            self.connecting = False

    @staticmethod
    def _is_connection_error(error: BaseException) -> bool:
        """Whether an error stems from connectivity rather than application logic."""
        if isinstance(error, (ConnectionFailed, ConnectTimeout)):
            return True
        if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
            return True
        if isinstance(error, IntegrityError):
            return False
        if isinstance(error, (OperationalError, InterfaceError, DisconnectionError)):
            return True
        if isinstance(error, DBAPIError) and error.connection_invalidated:
            return True

        orig = getattr(error, "orig", None)
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if code and (code.startswith(CONNECTION_SQLSTATE_PREFIXES) or code in CONNECTION_SQLSTATE_CODES):
            return True

        # str() of a wrapped DBAPI error embeds the SQL and bound parameters
        message = str(orig if isinstance(error, DBAPIError) else error).lower()
        return any(fragment in message for fragment in CONNECTION_ERROR_FRAGMENTS)

    async def _run(self, operation: Operation) -> Any:
        async with self.get_session() as session:
            result = await operation(session)
            await session.commit()
            return result

    async def execute(self, operation: Operation, label: str = "database operation",
                      op_class: OperationClass = OperationClass.SHORT) -> Any:
        """Run ``operation(session)`` under the deadline for ``op_class``.

        Connection-class failures are retried once after marking the connection
        lost. Driver and constraint errors are wrapped in ``OperationFailed``
        carrying ``label``; errors raised by this service (not-found, unknown
        model) propagate unchanged.
        """
        timeout = self.timeouts[op_class]
        last_error: Optional[BaseException] = None

        for attempt in (1, 2):
            try:
                await self.connect()
                return await asyncio.wait_for(self._run(operation), timeout=timeout)
            except Exception as e:
                last_error = e
                if isinstance(e, ApplicationError):
                    raise
                if attempt == 1 and self._is_connection_error(e):
                    logger.warning("Retrying operation after connection error",
                                   label=label, error=str(e) or type(e).__name__)
                    self.connected = False
                    await asyncio.sleep(self.settings.database_operation_retry_delay)
                    continue
                break

        if isinstance(last_error, (asyncio.TimeoutError, TimeoutError)):
            raise OperationTimeout(label, timeout) from last_error
        if isinstance(last_error, WorklogError):
            raise last_error
        raise OperationFailed(label, last_error) from last_error

    # ============================================================================
    # Query building
    # ============================================================================

    @staticmethod
    def _resolve(model: str):
        table = MODEL_REGISTRY.get(model)
        if table is None:
            raise UnknownModelError(model)
        return table

    @staticmethod
    def _column(table, field: str):
        if field not in table.model_fields:
            raise ApplicationError(f"Unknown field {field} on {table.__tablename__}")
        return getattr(table, field)

    def _conditions(self, table, where: Optional[Dict[str, Any]]) -> List[Any]:
        """Translate a ``where`` mapping into SQL expressions.

        Values are compared for equality; a dict value applies operators
        (``gte``, ``lte``, ``gt``, ``lt``, ``in``, ``not``).
        """
        conditions = []
        for field, value in (where or {}).items():
            column = self._column(table, field)
            if not isinstance(value, dict):
                conditions.append(column.is_(None) if value is None else column == value)
                continue

            unknown = set(value) - WHERE_OPERATORS
            if unknown:
                raise ApplicationError(f"Unsupported operators for {field}: {sorted(unknown)}")
            for op, operand in value.items():
                if op == "gte":
                    conditions.append(column >= operand)
                elif op == "lte":
                    conditions.append(column <= operand)
                elif op == "gt":
                    conditions.append(column > operand)
                elif op == "lt":
                    conditions.append(column < operand)
                elif op == "in":
                    conditions.append(column.in_(list(operand)))
                elif op == "not":
                    conditions.append(column.is_not(None) if operand is None else column != operand)
        return conditions

    def _ordering(self, table, order_by: Union[str, Sequence[str], None]) -> List[Any]:
        if not order_by:
            return []
        fields = [order_by] if isinstance(order_by, str) else list(order_by)
        ordering = []
        for field in fields:
            descending = field.startswith("-")
            column = self._column(table, field.lstrip("-"))
            ordering.append(column.desc() if descending else column.asc())
        return ordering

    def _apply(self, table, record, data: Dict[str, Any]) -> None:
        """Assign ``data`` onto ``record``; ``{"increment": n}`` adds to the current value."""
        for field, value in data.items():
            self._column(table, field)
            if isinstance(value, dict) and set(value) == {"increment"}:
                value = (getattr(record, field) or 0) + value["increment"]
            setattr(record, field, value)
        if "updated_at" in table.model_fields:
            record.updated_at = datetime.now(timezone.utc)

    @staticmethod
    def _dump(record) -> Dict[str, Any]:
        return record.model_dump(mode="json")

    async def _first(self, session: AsyncSession, table, conditions: List[Any]):
        stmt = select(table)
        if conditions:
            stmt = stmt.where(*conditions)
        return (await session.execute(stmt.limit(1))).scalars().first()

    # ============================================================================
    # Generic store operations (by model name)
    # ============================================================================

    async def count(self, model: str, where: Optional[Dict[str, Any]] = None,
                    op_class: OperationClass = OperationClass.SHORT) -> int:
        """Count records matching ``where``."""
        table = self._resolve(model)
        conditions = self._conditions(table, where)

        async def operation(session: AsyncSession) -> int:
            stmt = select(func.count()).select_from(table)
            if conditions:
                stmt = stmt.where(*conditions)
            return (await session.execute(stmt)).scalar_one()

        return await self.execute(operation, f"count {model}", op_class)

    async def find_many(self, model: str, where: Optional[Dict[str, Any]] = None,
                        order_by: Union[str, Sequence[str], None] = None,
                        limit: Optional[int] = None, offset: Optional[int] = None,
                        op_class: OperationClass = OperationClass.SHORT) -> List[Dict[str, Any]]:
        """Fetch records; ``order_by`` takes field names, ``-field`` for descending."""
        table = self._resolve(model)
        conditions = self._conditions(table, where)
        ordering = self._ordering(table, order_by)

        async def operation(session: AsyncSession) -> List[Dict[str, Any]]:
            stmt = select(table)
            if conditions:
                stmt = stmt.where(*conditions)
            if ordering:
                stmt = stmt.order_by(*ordering)
            if offset:
                stmt = stmt.offset(offset)
            if limit is not None:
                stmt = stmt.limit(limit)
            records = (await session.execute(stmt)).scalars().all()
            return [self._dump(record) for record in records]

        return await self.execute(operation, f"findMany {model}", op_class)

    async def find_unique(self, model: str, where: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Fetch one record by a unique (possibly compound) key."""
        table = self._resolve(model)
        conditions = self._conditions(table, where)

        async def operation(session: AsyncSession) -> Optional[Dict[str, Any]]:
            record = await self._first(session, table, conditions)
            return self._dump(record) if record is not None else None

        return await self.execute(operation, f"findUnique {model}")

    async def create(self, model: str, data: Dict[str, Any]) -> Dict[str, Any]:
        table = self._resolve(model)
        for field in data:
            self._column(table, field)

        async def operation(session: AsyncSession) -> Dict[str, Any]:
            record = table.model_validate(data)
            session.add(record)
            await session.flush()
            await session.refresh(record)
            return self._dump(record)

        return await self.execute(operation, f"create {model}")

    async def update(self, model: str, where: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        """Update the record matching ``where``; raises RecordNotFoundError if none."""
        table = self._resolve(model)
        conditions = self._conditions(table, where)

        async def operation(session: AsyncSession) -> Dict[str, Any]:
            record = await self._first(session, table, conditions)
            if record is None:
                raise RecordNotFoundError(model, where)
            self._apply(table, record, data)
            await session.flush()
            await session.refresh(record)
            return self._dump(record)

        return await self.execute(operation, f"update {model}")

    async def upsert(self, model: str, where: Dict[str, Any], create: Dict[str, Any],
                     update: Dict[str, Any]) -> Dict[str, Any]:
        """Update the record matching ``where`` or create it from ``create``."""
        table = self._resolve(model)
        conditions = self._conditions(table, where)

        async def operation(session: AsyncSession) -> Dict[str, Any]:
            record = await self._first(session, table, conditions)
            if record is None:
                record = table.model_validate(create)
                session.add(record)
            else:
                self._apply(table, record, update)
            await session.flush()
            await session.refresh(record)
            return self._dump(record)

        return await self.execute(operation, f"upsert {model}")

    async def delete(self, model: str, where: Dict[str, Any]) -> Dict[str, Any]:
        """Delete the record matching ``where`` and return it."""
        table = self._resolve(model)
        conditions = self._conditions(table, where)

        async def operation(session: AsyncSession) -> Dict[str, Any]:
            record = await self._first(session, table, conditions)
            if record is None:
                raise RecordNotFoundError(model, where)
            snapshot = self._dump(record)
            await session.delete(record)
            return snapshot

        return await self.execute(operation, f"delete {model}")

    async def transaction(self, operations: Sequence[Operation],
                          op_class: OperationClass = OperationClass.SHORT) -> List[Any]:
        """Run several operations in one session, committed together."""

        async def operation(session: AsyncSession) -> List[Any]:
            return [await op(session) for op in operations]

        return await self.execute(operation, "transaction", op_class)

    # ============================================================================
    # Health
    # ============================================================================

    async def health_check(self) -> Dict[str, Any]:
        """Connectivity probe, memoized for ``database_health_check_ttl`` seconds."""
        now = time.monotonic()
        if self.last_health_check and \
                now - self.last_health_check["checked_at"] < self.settings.database_health_check_ttl:
            return self.last_health_check["result"]

        try:
            await self.connect()
            await asyncio.wait_for(self._ping(), timeout=self.timeouts[OperationClass.SHORT])
            result = {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}
        except Exception as e:
            self.connected = False
            result = {
                "status": "unhealthy",
                "error": str(e) or type(e).__name__,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            logger.warning("Database health check failed", error=result["error"])

        self.last_health_check = {"result": result, "checked_at": time.monotonic()}
        return result
