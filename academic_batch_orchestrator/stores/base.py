"""
Shared pieces of the domain store repositories.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncContextManager, List

from ..utils.database import StoreAccessor


class Transactional(ABC):
    """Store able to wrap a chunk write in one of its own transactions."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[Any]:
        """Async context manager yielding the connection of a new transaction."""


class PathReferenceSource(ABC):
    """Store that records paths of uploaded files."""

    name: str = "unknown"

    @abstractmethod
    async def document_paths(self) -> List[str]:
        """Every file path referenced by this store; entries may be partial paths."""


class PostgresRepository(Transactional):
    """Base of the asyncpg-backed repositories."""

    def __init__(self, accessor: StoreAccessor):
        self.accessor = accessor
        self.name = accessor.name

    def transaction(self) -> AsyncContextManager[Any]:
        return self.accessor.transaction()
