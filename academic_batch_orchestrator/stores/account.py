"""
Account store repository.
"""

from abc import abstractmethod
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

from ..models.records import Account, ExpiredToken, Role
from ..utils.database import affected_rows
from .base import PostgresRepository, Transactional


TOKEN_TABLES = {
    "refresh": "refresh_token",
    "password_reset": "password_reset_token",
}


class AccountStore(Transactional):
    """Operations the batch jobs need from the account store."""

    name = "account"

    @abstractmethod
    async def get_account(self, account_id: int) -> Optional[Account]:
        pass

    @abstractmethod
    async def roles_of(self, account_ids: Iterable[int]) -> Dict[int, Set[str]]:
        """Current role names of each account; accounts without roles map to an empty set."""

    @abstractmethod
    async def add_role(self, account_id: int, role: str) -> bool:
        """Grant a role; return False if the account already had it."""

    @abstractmethod
    async def remove_role(self, account_id: int, role: str) -> bool:
        """Revoke a role; return False if the account did not have it."""

    @abstractmethod
    def expired_tokens(self, kind: str, now: datetime) -> AsyncIterator[ExpiredToken]:
        """Tokens of one kind whose expiry is before now."""

    @abstractmethod
    async def delete_tokens(self, tokens: List[ExpiredToken], now: datetime, connection: Any) -> int:
        """Delete tokens that are still expired; return the number deleted."""

    @abstractmethod
    async def admin_emails(self) -> List[str]:
        """Email addresses of every account holding the admin role."""

    @abstractmethod
    async def monthly_stats(self, start: date, end: date) -> Dict[str, Any]:
        """
        Raw account counts for the period between start and end inclusive.

        Keys: total_accounts, active_accounts, new_accounts, by_role.
        """


class PostgresAccountStore(PostgresRepository, AccountStore):
    """AccountStore backed by the account PostgreSQL database."""

    async def get_account(self, account_id: int) -> Optional[Account]:
        row = await self.accessor.fetchrow(
            "SELECT id, email, full_name FROM account WHERE id = $1", account_id
        )
        if row is None:
            return None
        roles = await self.roles_of([account_id])
        return Account(id=row["id"], email=row["email"], full_name=row["full_name"],
                       roles=frozenset(roles.get(account_id, ())))

    async def roles_of(self, account_ids: Iterable[int]) -> Dict[int, Set[str]]:
        ids = list(account_ids)
        roles: Dict[int, Set[str]] = {account_id: set() for account_id in ids}
        if not ids:
            return roles
        rows = await self.accessor.fetch("""
            SELECT ar.account_id, r.name
            FROM account_role ar JOIN role r ON r.id = ar.role_id
            WHERE ar.account_id = ANY($1::bigint[])
        """, ids)
        for row in rows:
            roles[row["account_id"]].add(row["name"])
        return roles

    async def add_role(self, account_id: int, role: str) -> bool:
        inserted = await self.accessor.execute("""
            INSERT INTO account_role (account_id, role_id)
            SELECT $1, r.id FROM role r WHERE r.name = $2
            ON CONFLICT (account_id, role_id) DO NOTHING
        """, account_id, role)
        return inserted > 0

    async def remove_role(self, account_id: int, role: str) -> bool:
        deleted = await self.accessor.execute("""
            DELETE FROM account_role
            WHERE account_id = $1 AND role_id = (SELECT id FROM role WHERE name = $2)
        """, account_id, role)
        return deleted > 0

    async def expired_tokens(self, kind: str, now: datetime) -> AsyncIterator[ExpiredToken]:
        table = TOKEN_TABLES[kind]
        async for row in self.accessor.cursor(
            f"SELECT id, expires_at FROM {table} WHERE expires_at < $1 ORDER BY id", now
        ):
            yield ExpiredToken(id=row["id"], kind=kind, expires_at=row["expires_at"])

    async def delete_tokens(self, tokens: List[ExpiredToken], now: datetime, connection: Any) -> int:
        deleted = 0
        for kind, table in TOKEN_TABLES.items():
            ids = [token.id for token in tokens if token.kind == kind]
            if not ids:
                continue
            status = await connection.execute(
                f"DELETE FROM {table} WHERE id = ANY($1::bigint[]) AND expires_at < $2",
                ids, now
            )
            deleted += affected_rows(status)
        return deleted

    async def admin_emails(self) -> List[str]:
        rows = await self.accessor.fetch("""
            SELECT DISTINCT a.email
            FROM account a
            JOIN account_role ar ON ar.account_id = a.id
            JOIN role r ON r.id = ar.role_id
            WHERE r.name = $1 AND a.email IS NOT NULL
            ORDER BY a.email
        """, Role.ADMIN.value)
        return [row["email"] for row in rows]

    async def monthly_stats(self, start: date, end: date) -> Dict[str, Any]:
        totals = await self.accessor.fetchrow("""
            SELECT count(*) AS total_accounts,
                   count(*) FILTER (WHERE last_login_at::date BETWEEN $1 AND $2) AS active_accounts,
                   count(*) FILTER (WHERE created_at::date BETWEEN $1 AND $2) AS new_accounts
            FROM account
        """, start, end)
        by_role = await self.accessor.fetch("""
            SELECT r.name, count(*) AS count
            FROM account_role ar JOIN role r ON r.id = ar.role_id
            GROUP BY r.name
        """)
        return {
            "total_accounts": totals["total_accounts"],
            "active_accounts": totals["active_accounts"],
            "new_accounts": totals["new_accounts"],
            "by_role": {row["name"]: row["count"] for row in by_role},
        }
