"""
Enrollment store repository.
"""

import json
from abc import abstractmethod
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

from ..models.records import Enrollment, EnrollmentStatus
from ..utils.database import affected_rows
from .base import PathReferenceSource, PostgresRepository, Transactional


class EnrollmentStore(Transactional, PathReferenceSource):
    """Operations the batch jobs need from the enrollment store."""

    name = "enrollment"

    @abstractmethod
    async def active_enrollments(self) -> List[Enrollment]:
        """Enrollments whose status is neither SUSPENDED nor REJECTED."""

    @abstractmethod
    async def get(self, enrollment_id: int) -> Optional[Enrollment]:
        pass

    @abstractmethod
    async def transition_status(self, enrollment_id: int, from_status: str, to_status: str) -> bool:
        """Move an enrollment still in from_status to to_status; return whether it matched."""

    @abstractmethod
    async def validated_candidate_ids(self) -> Set[int]:
        """Accounts holding at least one VALIDATED enrollment."""

    @abstractmethod
    async def candidate_ids(self, enrollment_ids: Iterable[int]) -> Dict[int, int]:
        """Map enrollment id to the id of its candidate account."""

    @abstractmethod
    def archive_candidates(self, decided_before: datetime) -> AsyncIterator[Enrollment]:
        """VALIDATED or REJECTED enrollments decided before the cutoff and not archived."""

    @abstractmethod
    async def archive(self, records: List[Dict[str, Any]], connection: Any) -> int:
        """Write archive rows and flag the enrollments archived; return flagged count."""

    @abstractmethod
    def duration_alert_candidates(self) -> AsyncIterator[Enrollment]:
        """VALIDATED enrollments with a first enrollment date."""

    @abstractmethod
    async def monthly_stats(self, start: date, end: date) -> Dict[str, Any]:
        """
        Raw counts for enrollments created between start and end inclusive.

        Keys: total, by_status, reinscriptions, derogations_requested,
        derogations_granted, by_discipline, average_processing_days.
        """


class PostgresEnrollmentStore(PostgresRepository, EnrollmentStore):
    """EnrollmentStore backed by the enrollment PostgreSQL database."""

    SELECT = """
        SELECT e.id, e.candidate_id, e.supervisor_id, e.status, e.first_enrollment_date,
               e.validated_at, e.rejected_at, e.derogation_granted, e.exceptional_derogation,
               e.archived, e.document_path, e.candidate_email, e.candidate_name,
               e.supervisor_email
        FROM enrollment e
    """

    async def active_enrollments(self) -> List[Enrollment]:
        rows = await self.accessor.fetch(
            self.SELECT + " WHERE e.status <> ALL($1::text[]) ORDER BY e.id",
            [EnrollmentStatus.SUSPENDED.value, EnrollmentStatus.REJECTED.value]
        )
        return [Enrollment.from_row(row) for row in rows]

    async def get(self, enrollment_id: int) -> Optional[Enrollment]:
        row = await self.accessor.fetchrow(self.SELECT + " WHERE e.id = $1", enrollment_id)
        return Enrollment.from_row(row) if row else None

    async def transition_status(self, enrollment_id: int, from_status: str, to_status: str) -> bool:
        updated = await self.accessor.execute(
            "UPDATE enrollment SET status = $3, updated_at = now() WHERE id = $1 AND status = $2",
            enrollment_id, from_status, to_status
        )
        return updated > 0

    async def validated_candidate_ids(self) -> Set[int]:
        rows = await self.accessor.fetch(
            "SELECT DISTINCT candidate_id FROM enrollment WHERE status = $1 AND candidate_id IS NOT NULL",
            EnrollmentStatus.VALIDATED.value
        )
        return {row["candidate_id"] for row in rows}

    async def candidate_ids(self, enrollment_ids: Iterable[int]) -> Dict[int, int]:
        ids = list(enrollment_ids)
        if not ids:
            return {}
        rows = await self.accessor.fetch(
            "SELECT id, candidate_id FROM enrollment WHERE id = ANY($1::bigint[]) AND candidate_id IS NOT NULL",
            ids
        )
        return {row["id"]: row["candidate_id"] for row in rows}

    async def document_paths(self) -> List[str]:
        rows = await self.accessor.fetch(
            "SELECT document_path FROM enrollment WHERE document_path IS NOT NULL AND document_path <> ''"
        )
        return [row["document_path"] for row in rows]

    async def archive_candidates(self, decided_before: datetime) -> AsyncIterator[Enrollment]:
        query = self.SELECT + """
            WHERE NOT COALESCE(e.archived, false)
              AND ((e.status = $1 AND e.validated_at < $3)
                   OR (e.status = $2 AND e.rejected_at < $3))
            ORDER BY e.id
        """
        async for row in self.accessor.cursor(
            query, EnrollmentStatus.VALIDATED.value, EnrollmentStatus.REJECTED.value, decided_before
        ):
            yield Enrollment.from_row(row)

    async def archive(self, records: List[Dict[str, Any]], connection: Any) -> int:
        await connection.executemany(
            "INSERT INTO enrollment_archive (enrollment_id, payload, archived_at) "
            "VALUES ($1, $2::jsonb, now()) ON CONFLICT (enrollment_id) DO NOTHING",
            [(record["id"], json.dumps(record, default=_json_default)) for record in records]
        )
        status = await connection.execute(
            "UPDATE enrollment SET archived = true, archived_at = now() "
            "WHERE id = ANY($1::bigint[]) AND NOT COALESCE(archived, false)",
            [record["id"] for record in records]
        )
        return affected_rows(status)

    async def duration_alert_candidates(self) -> AsyncIterator[Enrollment]:
        query = self.SELECT + """
            WHERE e.status = $1 AND e.first_enrollment_date IS NOT NULL
            ORDER BY e.id
        """
        async for row in self.accessor.cursor(query, EnrollmentStatus.VALIDATED.value):
            yield Enrollment.from_row(row)

    async def monthly_stats(self, start: date, end: date) -> Dict[str, Any]:
        totals = await self.accessor.fetchrow("""
            SELECT count(*) AS total,
                   count(*) FILTER (WHERE is_reinscription) AS reinscriptions,
                   count(*) FILTER (WHERE derogation_requested) AS derogations_requested,
                   count(*) FILTER (WHERE derogation_granted) AS derogations_granted,
                   avg(extract(epoch FROM COALESCE(validated_at, rejected_at) - created_at) / 86400)
                       FILTER (WHERE COALESCE(validated_at, rejected_at) IS NOT NULL) AS average_processing_days
            FROM enrollment WHERE created_at::date BETWEEN $1 AND $2
        """, start, end)
        by_status = await self.accessor.fetch(
            "SELECT status, count(*) AS count FROM enrollment "
            "WHERE created_at::date BETWEEN $1 AND $2 GROUP BY status",
            start, end
        )
        by_discipline = await self.accessor.fetch(
            "SELECT COALESCE(discipline, 'unknown') AS discipline, count(*) AS count FROM enrollment "
            "WHERE created_at::date BETWEEN $1 AND $2 GROUP BY 1",
            start, end
        )
        average = totals["average_processing_days"]
        return {
            "total": totals["total"],
            "by_status": {row["status"]: row["count"] for row in by_status},
            "reinscriptions": totals["reinscriptions"],
            "derogations_requested": totals["derogations_requested"],
            "derogations_granted": totals["derogations_granted"],
            "by_discipline": {row["discipline"]: row["count"] for row in by_discipline},
            "average_processing_days": float(average) if average is not None else None,
        }


def _json_default(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)
