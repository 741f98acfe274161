"""
Data access layer for progress entries and class averages.

``ProgressStore`` is the interface the aggregator depends on; ``ProgressQueries``
implements it against PostgreSQL through the shared ``DatabasePool``.
"""

import logging
from typing import List, Optional, Protocol

from models.database import ClassAverage, ClassDescriptor, ProgressEntry, SubjectDescriptor
from .connection import DatabasePool


logger = logging.getLogger(__name__)


class ProgressStore(Protocol):
    """Entry Store reads and Average Store writes used by the aggregator."""

    async def list_classes(self, school_id: Optional[str] = None) -> List[ClassDescriptor]:
        ...

    async def list_subjects(self, school_id: Optional[str] = None) -> List[SubjectDescriptor]:
        ...

    async def fetch_grades(self, class_id: str, subject_id: str) -> List[float]:
        ...

    async def upsert_average(self, average: ClassAverage) -> None:
        ...


UPSERT_CLASS_AVERAGE = """
INSERT INTO public.class_averages (class_id, subject_id, average_grade, entry_count, calculation_date)
VALUES ($1, $2, $3, $4, $5)
ON CONFLICT (class_id, subject_id) DO UPDATE
SET average_grade = EXCLUDED.average_grade,
    entry_count = EXCLUDED.entry_count,
    calculation_date = EXCLUDED.calculation_date
"""


class ProgressQueries:
    """PostgreSQL implementation of ProgressStore."""

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    async def list_classes(self, school_id: Optional[str] = None) -> List[ClassDescriptor]:
        """All classes, optionally restricted to one school."""
        if school_id is None:
            rows = await self.pool.execute_query(
                "SELECT id::text AS id, school_id::text AS school_id FROM public.classes ORDER BY id"
            )
        else:
            rows = await self.pool.execute_query(
                "SELECT id::text AS id, school_id::text AS school_id FROM public.classes "
                "WHERE school_id::text = $1 ORDER BY id",
                school_id,
            )
        return [ClassDescriptor(id=row['id'], school_id=row['school_id']) for row in rows]

    async def list_subjects(self, school_id: Optional[str] = None) -> List[SubjectDescriptor]:
        """All subjects, optionally restricted to one school."""
        if school_id is None:
            rows = await self.pool.execute_query(
                "SELECT id::text AS id, school_id::text AS school_id FROM public.subjects ORDER BY id"
            )
        else:
            rows = await self.pool.execute_query(
                "SELECT id::text AS id, school_id::text AS school_id FROM public.subjects "
                "WHERE school_id::text = $1 ORDER BY id",
                school_id,
            )
        return [SubjectDescriptor(id=row['id'], school_id=row['school_id']) for row in rows]

    async def fetch_grades(self, class_id: str, subject_id: str) -> List[float]:
        """Grades of every entry recorded for one (class, subject) pair."""
        rows = await self.pool.execute_query(
            "SELECT grade FROM public.progress_entries "
            "WHERE class_id::text = $1 AND subject_id::text = $2",
            class_id,
            subject_id,
        )
        return [float(row['grade']) for row in rows]

    async def fetch_entries(self, class_id: str, subject_id: Optional[str] = None) -> List[ProgressEntry]:
        """Full entry rows for a class, newest first."""
        query = """
        SELECT id::text AS id, student_id::text AS student_id, subject_id::text AS subject_id,
               class_id::text AS class_id, grade, comments, entered_by::text AS entered_by, entry_date
        FROM public.progress_entries
        WHERE class_id::text = $1
        """
        args = [class_id]
        if subject_id is not None:
            query += " AND subject_id::text = $2"
            args.append(subject_id)
        query += " ORDER BY entry_date DESC"

        rows = await self.pool.execute_query(query, *args)
        return [ProgressEntry(**dict(row)) for row in rows]

    async def upsert_average(self, average: ClassAverage) -> None:
        """Insert or replace the average row for (class_id, subject_id)."""
        await self.pool.execute_command(
            UPSERT_CLASS_AVERAGE,
            average.class_id,
            average.subject_id,
            average.average_grade,
            average.entry_count,
            average.calculation_date,
        )

    async def get_class_averages(self, class_id: str) -> List[ClassAverage]:
        """Current average rows for one class."""
        rows = await self.pool.execute_query(
            "SELECT class_id::text AS class_id, subject_id::text AS subject_id, "
            "average_grade, entry_count, calculation_date "
            "FROM public.class_averages WHERE class_id::text = $1 ORDER BY subject_id",
            class_id,
        )
        return [
            ClassAverage(
                class_id=row['class_id'],
                subject_id=row['subject_id'],
                average_grade=float(row['average_grade']),
                entry_count=row['entry_count'],
                calculation_date=row['calculation_date'],
            )
            for row in rows
        ]
