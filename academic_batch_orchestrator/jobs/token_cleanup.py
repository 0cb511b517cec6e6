"""
Expired token cleanup job.
"""

from datetime import datetime
from typing import Any, AsyncIterator, Callable, List

from ..models.execution import ExecutionContext, utc_now
from ..models.records import ExpiredToken
from ..services.chunk_engine import ItemWriter
from ..stores.account import TOKEN_TABLES, AccountStore
from ..utils.logger import get_logger


async def expired_tokens(accounts: AccountStore, now: datetime) -> AsyncIterator[ExpiredToken]:
    """Expired refresh tokens, then expired password reset tokens."""
    for kind in TOKEN_TABLES:
        async for token in accounts.expired_tokens(kind, now):
            yield token


def expired_token_source(accounts: AccountStore, clock: Callable[[], datetime] = utc_now):
    """Reader source factory evaluating the expiry cutoff when the step opens."""
    def source(context: ExecutionContext) -> AsyncIterator[ExpiredToken]:
        return expired_tokens(accounts, clock())
    return source


class TokenDeletionWriter(ItemWriter):
    """
    Deletes expired tokens.

    The delete is guarded by expires_at, so a token refreshed between the read
    and the write survives.
    """

    def __init__(self, accounts: AccountStore, clock: Callable[[], datetime] = utc_now):
        self.accounts = accounts
        self.clock = clock
        self.logger = get_logger(__name__)

    async def write(self, items: List[ExpiredToken], connection: Any) -> None:
        deleted = await self.accounts.delete_tokens(items, self.clock(), connection)
        self.logger.debug("Expired tokens deleted", extra={
            "submitted": len(items),
            "deleted": deleted
        })
