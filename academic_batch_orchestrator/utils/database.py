"""
Database utilities for Academic Batch Orchestrator

Provides one pooled accessor per independently owned store. There is no way to
open a transaction spanning two accessors; cross-store consistency is handled by
predicate-guarded single-store writes instead.

Driver errors are translated into the store exception family so that the fault
tolerance policies can classify them by type.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from ..core.exceptions import StoreError, TransientStoreError, DeadlockError
from .logger import get_logger


_TRANSIENT_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.QueryCanceledError,
    ConnectionError,
    asyncio.TimeoutError,
)


def translate_error(store: str, operation: str, error: BaseException) -> StoreError:
    """Map a driver exception onto the store exception family."""
    if isinstance(error, StoreError):
        return error
    if isinstance(error, asyncpg.exceptions.DeadlockDetectedError):
        return DeadlockError(store, operation, str(error))
    if isinstance(error, _TRANSIENT_ERRORS):
        return TransientStoreError(store, operation, str(error))
    return StoreError(store, operation, str(error))


class StoreAccessor:
    """
    Pooled access to one owned PostgreSQL store.

    The pool is safe for concurrent use by several job executions.
    """

    def __init__(self, name: str, connection_string: str, min_size: int = 2,
                 max_size: int = 10, command_timeout: float = 60.0):
        """
        Initialize store accessor.

        Args:
            name: Logical store name (enrollment, defense, ...)
            connection_string: PostgreSQL connection string
            min_size: Minimum pool size
            max_size: Maximum pool size
            command_timeout: Default statement timeout in seconds
        """
        self.name = name
        self.connection_string = connection_string
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.pool: Optional[asyncpg.Pool] = None
        self.logger = get_logger(__name__)

    async def initialize(self) -> None:
        """Initialize database connection pool."""
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
        except Exception as e:
            raise translate_error(self.name, "initialization", e) from e
        self.logger.info("Store pool ready", extra={"store": self.name, "max_size": self.max_size})

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.get_connection() as connection:
                await connection.execute("SELECT 1")
                return True
        except (StoreError, asyncpg.PostgresError, OSError):
            return False

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise StoreError(self.name, "connection", "pool not initialized")

        try:
            async with self.pool.acquire() as connection:
                yield connection
        except StoreError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, ConnectionError) as e:
            raise translate_error(self.name, "connection", e) from e

    @asynccontextmanager
    async def transaction(self):
        """
        Open a transaction on a pooled connection.

        The transaction commits when the block exits normally and rolls back when
        it raises; the connection is yielded for use by writers.
        """
        async with self.get_connection() as connection:
            async with connection.transaction():
                yield connection

    async def fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        """Run a query and return every row as a dict."""
        async with self.get_connection() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]

    async def fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        """Run a query and return the first row as a dict, or None."""
        async with self.get_connection() as conn:
            row = await conn.fetchrow(query, *args)
            return dict(row) if row is not None else None

    async def fetchval(self, query: str, *args) -> Any:
        async with self.get_connection() as conn:
            return await conn.fetchval(query, *args)

    async def execute(self, query: str, *args) -> int:
        """
        Execute a statement and return the number of affected rows.

        Returns:
            Row count parsed from the command status tag
        """
        async with self.get_connection() as conn:
            status = await conn.execute(query, *args)
            return affected_rows(status)

    async def cursor(self, query: str, *args, prefetch: int = 100) -> AsyncIterator[Dict[str, Any]]:
        """Stream rows of a query through a server-side cursor."""
        async with self.transaction() as conn:
            async for row in conn.cursor(query, *args, prefetch=prefetch):
                yield dict(row)


def affected_rows(status: str) -> int:
    """Parse the row count out of a status tag such as 'UPDATE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError, IndexError):
        return 0


class StoreRegistry:
    """Owns the accessors of every configured store and manages their lifecycle."""

    def __init__(self, accessors: Optional[Dict[str, StoreAccessor]] = None):
        self._accessors: Dict[str, StoreAccessor] = dict(accessors or {})
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(cls, settings) -> "StoreRegistry":
        """Build accessors from BatchSettings.stores."""
        return cls({
            name: StoreAccessor(
                name,
                store.dsn,
                min_size=store.min_size,
                max_size=store.max_size,
                command_timeout=store.command_timeout
            )
            for name, store in settings.stores.items()
        })

    def __getitem__(self, name: str) -> StoreAccessor:
        try:
            return self._accessors[name]
        except KeyError:
            raise StoreError(name, "lookup", "store is not configured") from None

    def __contains__(self, name: str) -> bool:
        return name in self._accessors

    def names(self) -> List[str]:
        return sorted(self._accessors)

    async def initialize(self) -> None:
        """Open every pool; pools opened before a failure are closed again."""
        opened = []
        try:
            for accessor in self._accessors.values():
                await accessor.initialize()
                opened.append(accessor)
        except StoreError:
            for accessor in opened:
                await accessor.close()
            raise

    async def close(self) -> None:
        for accessor in self._accessors.values():
            await accessor.close()

    async def health(self) -> Dict[str, bool]:
        return {name: await accessor.is_healthy() for name, accessor in self._accessors.items()}
