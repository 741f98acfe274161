"""
Class average aggregation.

Recomputes the average grade of every (class, subject) pair whose class and
subject belong to the same school, from the current progress entries, and
upserts one ``class_averages`` row per pair. Each run is a full recompute;
nothing is carried over between runs.

A failure reading or writing one pair is recorded and the run moves on, so one
bad pair never blocks the rest of the school. Only failing to enumerate the
classes or subjects aborts a run.
"""

import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, computed_field, field_validator

from database.queries import ProgressStore
from models.database import ClassAverage, ClassDescriptor, SubjectDescriptor
from utils.retry import RetryExhaustedError, RetryPolicy


logger = logging.getLogger(__name__)


class AggregationSetupError(Exception):
    """Raised when classes or subjects cannot be enumerated; aborts the run."""
    pass


class AggregatorConfig(BaseModel):
    """Configuration for an aggregation run."""

    max_concurrent_pairs: int = 8
    store_timeout: float = 10.0
    max_retries: int = 2
    retry_delay: float = 0.5

    @field_validator('max_concurrent_pairs')
    @classmethod
    def validate_concurrency_limit(cls, v):
        if v < 1 or v > 50:
            raise ValueError("Concurrency limit must be between 1 and 50")
        return v

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            timeout=self.store_timeout,
        )


class FailureDetail(BaseModel):
    """One (class, subject) pair that could not be averaged."""
    class_id: str
    subject_id: str
    cause: str


class AggregationResult(BaseModel):
    """Outcome of one aggregation run."""

    results: List[ClassAverage] = []
    failures: List[FailureDetail] = []
    pairs_considered: int = 0
    pairs_skipped_empty: int = 0
    school_id: Optional[str] = None
    started_at: datetime
    finished_at: datetime
    execution_time_ms: float = 0.0

    @computed_field
    @property
    def updated(self) -> int:
        return len(self.results)

    @computed_field
    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def message(self) -> str:
        return f"Updated {self.updated} class averages"


def compute_average(grades: Sequence[float]) -> float:
    """Arithmetic mean with plain left-to-right float summation."""
    total = 0.0
    for grade in grades:
        total += float(grade)
    return total / len(grades)


def pair_same_school(
    classes: Sequence[ClassDescriptor],
    subjects: Sequence[SubjectDescriptor],
) -> List[tuple]:
    """
    Every (class, subject) pair sharing a school id.

    Subjects are grouped by school first, which yields the same pairs as
    filtering the full class x subject product.
    """
    subjects_by_school: Dict[str, List[SubjectDescriptor]] = defaultdict(list)
    for subject in subjects:
        subjects_by_school[subject.school_id].append(subject)

    return [
        (class_item, subject)
        for class_item in classes
        for subject in subjects_by_school.get(class_item.school_id, [])
    ]


class ClassAverageAggregator:
    """
    Recomputes class averages with bounded parallelism.

    Each pair writes a disjoint key, so pairs run concurrently in any order.
    Two runs over the same pair are not coordinated here; callers must keep at
    most one run in flight.
    """

    def __init__(
        self,
        store: ProgressStore,
        config: Optional[AggregatorConfig] = None,
        logger_instance: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.config = config or AggregatorConfig()
        self.retry_policy = self.config.retry_policy()
        self.logger = logger_instance or logger

    async def recompute(self, school_id: Optional[str] = None) -> AggregationResult:
        """
        Recompute averages for every same-school pair, optionally for one school.

        Raises:
            AggregationSetupError: if classes or subjects cannot be listed
        """
        started_at = datetime.now(timezone.utc)
        execution_start = time.time()
        self.logger.info("Starting class averages calculation" + (f" for school {school_id}" if school_id else ""))

        classes, subjects = await self._enumerate(school_id)
        self.logger.info(f"Found {len(classes)} classes and {len(subjects)} subjects")

        pairs = pair_same_school(classes, subjects)

        semaphore = asyncio.Semaphore(self.config.max_concurrent_pairs)

        async def process_pair(class_item: ClassDescriptor, subject: SubjectDescriptor):
            async with semaphore:
                return await self._process_pair(class_item.id, subject.id)

        # Each worker returns exactly one outcome; they are partitioned only after all finish.
        tasks = [process_pair(class_item, subject) for class_item, subject in pairs]
        outcomes = await asyncio.gather(*tasks)

        results: List[ClassAverage] = []
        failures: List[FailureDetail] = []
        skipped = 0
        for outcome in outcomes:
            if isinstance(outcome, ClassAverage):
                results.append(outcome)
            elif isinstance(outcome, FailureDetail):
                failures.append(outcome)
            else:
                skipped += 1

        result = AggregationResult(
            results=results,
            failures=failures,
            pairs_considered=len(pairs),
            pairs_skipped_empty=skipped,
            school_id=school_id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            execution_time_ms=(time.time() - execution_start) * 1000,
        )

        self.logger.info(
            f"Calculation complete. {result.message}",
            extra={
                "pairs_considered": result.pairs_considered,
                "pairs_skipped_empty": result.pairs_skipped_empty,
                "pairs_failed": result.failed,
                "execution_time_ms": result.execution_time_ms,
            }
        )
        return result

    async def _enumerate(self, school_id: Optional[str]):
        try:
            classes = await self.retry_policy.call(
                self.store.list_classes, school_id, description="list classes"
            )
            subjects = await self.retry_policy.call(
                self.store.list_subjects, school_id, description="list subjects"
            )
        except RetryExhaustedError as e:
            self.logger.error(f"Cannot enumerate classes and subjects: {e}", exc_info=True)
            raise AggregationSetupError(
                "Could not load classes and subjects; no averages were calculated"
            ) from e

        # Stores that ignore the school filter still get it applied here.
        if school_id is not None:
            classes = [c for c in classes if c.school_id == school_id]
            subjects = [s for s in subjects if s.school_id == school_id]
        return classes, subjects

    async def _process_pair(
        self, class_id: str, subject_id: str
    ) -> Union[ClassAverage, FailureDetail, None]:
        try:
            grades = await self.retry_policy.call(
                self.store.fetch_grades, class_id, subject_id,
                description=f"fetch grades for class {class_id}, subject {subject_id}",
            )
        except RetryExhaustedError as e:
            return self._failure(class_id, subject_id, "fetch", e)

        if not grades:
            return None

        average = ClassAverage(
            class_id=class_id,
            subject_id=subject_id,
            average_grade=compute_average(grades),
            entry_count=len(grades),
            calculation_date=datetime.now(timezone.utc),
        )

        try:
            await self.retry_policy.call(
                self.store.upsert_average, average,
                description=f"upsert average for class {class_id}, subject {subject_id}",
            )
        except RetryExhaustedError as e:
            return self._failure(class_id, subject_id, "upsert", e)

        self.logger.debug(
            f"Updated average for class {class_id}, subject {subject_id}: {average.average_grade:.2f}"
        )
        return average

    def _failure(self, class_id: str, subject_id: str, stage: str, error: RetryExhaustedError) -> FailureDetail:
        self.logger.warning(
            f"Error during {stage} for class {class_id}, subject {subject_id}: {error.last_error!r}",
            exc_info=error.last_error,
        )
        if isinstance(error.last_error, asyncio.TimeoutError):
            cause = f"{stage} timed out after {error.attempts} attempt(s)"
        else:
            cause = f"{stage} failed: {error.last_error}"
        return FailureDetail(class_id=class_id, subject_id=subject_id, cause=cause)
