"""Connection pool manager for the email API database.

Wraps a SQLAlchemy async engine whose pool is bounded at ``max_connections``
(no overflow). Callers borrow one connection per logical operation through
``connection()``, ``execute_query()`` or ``transaction()`` and always give it
back, even on error. Acquisitions beyond the bound wait up to
``connection_timeout_seconds`` and then fail with
``sqlalchemy.exc.TimeoutError``.

The manager never swallows database errors: it logs them with a truncated
copy of the statement and the elapsed time, then re-raises.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from app.models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

_QUERY_LOG_CHARS = 100


class PoolConfigurationError(RuntimeError):
    """Raised when the pool cannot be built from the given configuration."""


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time view of the pool. Only the driver lifecycle mutates it."""

    max_connections: int
    total: int
    idle: int
    active: int
    waiting: int

    @property
    def utilization(self) -> float:
        if self.max_connections <= 0:
            return 0.0
        return self.active / self.max_connections

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["utilization"] = round(self.utilization, 3)
        return data


def _describe(query: Any) -> str:
    return " ".join(str(query).split())[:_QUERY_LOG_CHARS]


class ConnectionPoolManager:
    """Owns the process-wide connection pool for one application instance."""

    def __init__(
        self,
        database_url: str,
        *,
        max_connections: int = 20,
        idle_timeout_seconds: float = 30.0,
        connection_timeout_seconds: float = 5.0,
        statement_timeout_seconds: float = 30.0,
        monitor_interval_seconds: float = 60.0,
        high_water_ratio: float = 0.8,
        echo: bool = False,
    ) -> None:
        self._database_url = database_url
        self._max_connections = max_connections
        self._idle_timeout = idle_timeout_seconds
        self._connection_timeout = connection_timeout_seconds
        self._statement_timeout = statement_timeout_seconds
        self._monitor_interval = monitor_interval_seconds
        self._high_water_ratio = high_water_ratio
        self._echo = echo

        self._engine: AsyncEngine | None = None
        self._waiting = 0
        self._monitor_task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings) -> "ConnectionPoolManager":
        return cls(
            settings.database_url,
            max_connections=settings.db_max_connections,
            idle_timeout_seconds=settings.db_idle_timeout_seconds,
            connection_timeout_seconds=settings.db_connection_timeout_seconds,
            statement_timeout_seconds=settings.db_statement_timeout_seconds,
            monitor_interval_seconds=settings.db_monitor_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def engine(self) -> AsyncEngine | None:
        return self._engine

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    @property
    def max_connections(self) -> int:
        return self._max_connections

    def _max_age(self) -> float:
        # SQLAlchemy has no idle reaper; the idle timeout bounds connection age.
        return self._idle_timeout if self._idle_timeout > 0 else -1

    def _connect_args(self) -> dict[str, Any]:
        url = make_url(self._database_url)
        if url.get_backend_name() == "postgresql" and url.get_driver_name() == "asyncpg":
            # asyncpg: connect timeout and per-statement timeout, both seconds
            return {
                "timeout": self._connection_timeout,
                "command_timeout": self._statement_timeout,
            }
        return {}

    async def initialize(self) -> None:
        """Build the pool and prove it works with one round-trip.

        Raises:
            PoolConfigurationError: if no database URL is configured.
            Exception: any driver error from the probe; the engine is
                disposed and the manager stays uninitialised so a retry is
                possible.
        """
        if self._engine is not None:
            return
        if not self._database_url:
            raise PoolConfigurationError("DATABASE_URL is not configured")

        engine = create_async_engine(
            self._database_url,
            echo=self._echo,
            poolclass=AsyncAdaptedQueuePool,
            pool_size=self._max_connections,
            max_overflow=0,
            pool_timeout=self._connection_timeout,
            pool_recycle=self._max_age(),
            pool_pre_ping=True,
            connect_args=self._connect_args(),
        )

        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception:
            logger.error(
                "Connection pool initialisation failed",
                extra={"database": make_url(self._database_url).render_as_string(hide_password=True)},
                exc_info=True,
            )
            await engine.dispose()
            raise

        self._engine = engine
        logger.info(
            "Connection pool initialised",
            extra={
                "max_connections": self._max_connections,
                "connection_timeout_s": self._connection_timeout,
                "statement_timeout_s": self._statement_timeout,
            },
        )

    async def create_all(self) -> None:
        """Create every ORM table that does not exist yet."""
        engine = self._require_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def shutdown(self) -> None:
        """Stop the monitor and close every pooled connection."""
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._monitor_task
            self._monitor_task = None

        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            logger.info("Connection pool closed")

    def _require_engine(self) -> AsyncEngine:
        if self._engine is None:
            raise PoolConfigurationError("Connection pool is not initialised")
        return self._engine

    # ------------------------------------------------------------------
    # Borrowing connections
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AsyncConnection]:
        """Borrow a pooled connection; it is released when the block exits."""
        engine = self._require_engine()

        # Only borrows that find every pooled connection checked out queue.
        queued = engine.pool.checkedout() >= self._max_connections
        if queued:
            self._waiting += 1
        try:
            conn = await engine.connect()
        finally:
            if queued:
                self._waiting -= 1

        try:
            yield conn
        finally:
            await conn.close()

    async def execute_query(self, query: Any, params: dict[str, Any] | None = None) -> list[dict]:
        """Run one statement on its own connection and commit.

        ``query`` is either a SQL string (bound with ``:name`` parameters) or
        a SQLAlchemy executable. Returns the result rows as dicts (empty for
        statements that return nothing).
        """
        statement = text(query) if isinstance(query, str) else query
        start = time.perf_counter()
        try:
            async with self.connection() as conn:
                result = await conn.execute(statement, params or {})
                rows = [dict(row) for row in result.mappings().all()] if result.returns_rows else []
                await conn.commit()
        except Exception:
            logger.error(
                "Query failed",
                extra={
                    "query": _describe(query),
                    "duration_ms": round((time.perf_counter() - start) * 1000, 1),
                },
                exc_info=True,
            )
            raise

        logger.debug(
            "Query executed",
            extra={
                "query": _describe(query),
                "duration_ms": round((time.perf_counter() - start) * 1000, 1),
                "row_count": len(rows),
            },
        )
        return rows

    async def transaction(self, callback: Callable[[AsyncConnection], Awaitable[T]]) -> T:
        """Run ``callback(conn)`` between BEGIN and COMMIT on one connection.

        Any exception from the callback (or from COMMIT) triggers a ROLLBACK
        before the original exception is re-raised.
        """
        start = time.perf_counter()
        async with self.connection() as conn:
            trans = await conn.begin()
            try:
                result = await callback(conn)
                await trans.commit()
            except Exception:
                try:
                    await trans.rollback()
                except Exception:
                    logger.error("Transaction rollback failed", exc_info=True)
                logger.error(
                    "Transaction rolled back",
                    extra={
                        "callback": getattr(callback, "__name__", repr(callback)),
                        "duration_ms": round((time.perf_counter() - start) * 1000, 1),
                    },
                    exc_info=True,
                )
                raise
        return result

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def get_connection_stats(self) -> PoolStats:
        if self._engine is None:
            return PoolStats(self._max_connections, 0, 0, 0, self._waiting)

        pool = self._engine.pool
        idle = pool.checkedin()
        active = pool.checkedout()
        return PoolStats(
            max_connections=self._max_connections,
            total=idle + active,
            idle=idle,
            active=active,
            waiting=self._waiting,
        )

    async def health_check(self) -> bool:
        """Return True when a trivial round-trip succeeds."""
        if self._engine is None:
            return False
        try:
            async with self.connection() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("Database health check failed: %s", exc)
            return False

    def check_utilization(self) -> PoolStats:
        """Sample the pool once and warn above the high-water mark."""
        stats = self.get_connection_stats()
        if stats.utilization >= self._high_water_ratio:
            logger.warning("Connection pool utilisation high", extra=stats.as_dict())
        else:
            logger.debug("Connection pool sample", extra=stats.as_dict())
        return stats

    def start_monitor(self) -> None:
        """Start the periodic utilisation sampler (idempotent)."""
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.create_task(self._monitor_loop())

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self._monitor_interval)
            self.check_utilization()
