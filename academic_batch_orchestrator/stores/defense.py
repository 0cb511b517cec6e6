"""
Defense store repository.
"""

import json
from abc import abstractmethod
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, List, Set

from ..models.records import Defense, DefenseRequest, DefenseRequestStatus, DefenseStatus, PASSING_MENTIONS
from ..utils.database import affected_rows
from .base import PathReferenceSource, PostgresRepository, Transactional


class DefenseStore(Transactional, PathReferenceSource):
    """Operations the batch jobs need from the defense store."""

    name = "defense"

    @abstractmethod
    async def open_requests(self) -> List[DefenseRequest]:
        """Defense requests whose status is neither BLOCKED nor REJECTED."""

    @abstractmethod
    async def transition_request_status(self, request_id: int, from_status: str, to_status: str) -> bool:
        """Move a request still in from_status to to_status; return whether it matched."""

    @abstractmethod
    async def successful_enrollment_ids(self) -> Set[int]:
        """Enrollments with a COMPLETED defense awarded a passing mention."""

    @abstractmethod
    def archive_candidates(self, defended_before: datetime) -> AsyncIterator[Defense]:
        """COMPLETED defenses held before the cutoff and not archived yet."""

    @abstractmethod
    async def archive(self, records: List[Dict[str, Any]], connection: Any) -> int:
        """Write archive rows and flag the defenses archived; return flagged count."""

    @abstractmethod
    async def monthly_stats(self, start: date, end: date) -> Dict[str, Any]:
        """
        Raw counts for the defense activity between start and end inclusive.

        Keys: requests, completed, by_mention, jury_members, reports,
        reports_favorable, average_days_to_defense.
        """


class PostgresDefenseStore(PostgresRepository, DefenseStore):
    """DefenseStore backed by the defense PostgreSQL database."""

    async def open_requests(self) -> List[DefenseRequest]:
        rows = await self.accessor.fetch(
            "SELECT id, enrollment_id, status, document_path FROM defense_request "
            "WHERE status <> ALL($1::text[]) ORDER BY id",
            [DefenseRequestStatus.BLOCKED.value, DefenseRequestStatus.REJECTED.value]
        )
        return [DefenseRequest(**row) for row in rows]

    async def transition_request_status(self, request_id: int, from_status: str, to_status: str) -> bool:
        updated = await self.accessor.execute(
            "UPDATE defense_request SET status = $3, updated_at = now() WHERE id = $1 AND status = $2",
            request_id, from_status, to_status
        )
        return updated > 0

    async def successful_enrollment_ids(self) -> Set[int]:
        rows = await self.accessor.fetch(
            "SELECT DISTINCT enrollment_id FROM defense WHERE status = $1 AND mention = ANY($2::text[])",
            DefenseStatus.COMPLETED.value, sorted(PASSING_MENTIONS)
        )
        return {row["enrollment_id"] for row in rows}

    async def document_paths(self) -> List[str]:
        rows = await self.accessor.fetch("""
            SELECT document_path AS path FROM defense WHERE document_path IS NOT NULL
            UNION
            SELECT minutes_path FROM defense WHERE minutes_path IS NOT NULL
            UNION
            SELECT document_path FROM defense_request WHERE document_path IS NOT NULL
            UNION
            SELECT file_path FROM document WHERE file_path IS NOT NULL
        """)
        return [row["path"] for row in rows if row["path"]]

    async def archive_candidates(self, defended_before: datetime) -> AsyncIterator[Defense]:
        query = """
            SELECT id, enrollment_id, status, mention, defended_at, archived,
                   document_path, minutes_path
            FROM defense
            WHERE status = $1 AND defended_at < $2 AND NOT COALESCE(archived, false)
            ORDER BY id
        """
        async for row in self.accessor.cursor(query, DefenseStatus.COMPLETED.value, defended_before):
            row["archived"] = bool(row.get("archived"))
            yield Defense(**row)

    async def archive(self, records: List[Dict[str, Any]], connection: Any) -> int:
        await connection.executemany(
            "INSERT INTO defense_archive (defense_id, payload, archived_at) "
            "VALUES ($1, $2::jsonb, now()) ON CONFLICT (defense_id) DO NOTHING",
            [(record["id"], json.dumps(record, default=str)) for record in records]
        )
        status = await connection.execute(
            "UPDATE defense SET archived = true, archived_at = now() "
            "WHERE id = ANY($1::bigint[]) AND NOT COALESCE(archived, false)",
            [record["id"] for record in records]
        )
        return affected_rows(status)

    async def monthly_stats(self, start: date, end: date) -> Dict[str, Any]:
        requests = await self.accessor.fetchval(
            "SELECT count(*) FROM defense_request WHERE created_at::date BETWEEN $1 AND $2", start, end
        )
        totals = await self.accessor.fetchrow("""
            SELECT count(*) AS completed,
                   avg(extract(epoch FROM d.defended_at - r.created_at) / 86400) AS average_days_to_defense
            FROM defense d LEFT JOIN defense_request r ON r.enrollment_id = d.enrollment_id
            WHERE d.status = $3 AND d.defended_at::date BETWEEN $1 AND $2
        """, start, end, DefenseStatus.COMPLETED.value)
        by_mention = await self.accessor.fetch(
            "SELECT COALESCE(mention, 'none') AS mention, count(*) AS count FROM defense "
            "WHERE status = $3 AND defended_at::date BETWEEN $1 AND $2 GROUP BY 1",
            start, end, DefenseStatus.COMPLETED.value
        )
        jury = await self.accessor.fetchval(
            "SELECT count(*) FROM jury_member WHERE created_at::date BETWEEN $1 AND $2", start, end
        )
        reports = await self.accessor.fetchrow("""
            SELECT count(*) AS reports, count(*) FILTER (WHERE favorable) AS reports_favorable
            FROM rapport WHERE created_at::date BETWEEN $1 AND $2
        """, start, end)
        average = totals["average_days_to_defense"]
        return {
            "requests": requests,
            "completed": totals["completed"],
            "by_mention": {row["mention"]: row["count"] for row in by_mention},
            "jury_members": jury,
            "reports": reports["reports"],
            "reports_favorable": reports["reports_favorable"],
            "average_days_to_defense": float(average) if average is not None else None,
        }
