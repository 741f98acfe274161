"""Shared fakes for the progress store and the change feed transport."""

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from models.database import ClassAverage, ClassDescriptor, ProgressEntry, SubjectDescriptor
from realtime.events import ChangeEvent
from realtime.transport import FeedDisconnectedError, FeedTransport


class FakeProgressStore:
    """In-memory Entry Store and Average Store with failure injection."""

    def __init__(self):
        self.classes: List[ClassDescriptor] = []
        self.subjects: List[SubjectDescriptor] = []
        self.entries: Dict[Tuple[str, str], List[float]] = {}
        self.averages: Dict[Tuple[str, str], ClassAverage] = {}

        self.fail_listing = False
        self.fail_fetch: Set[Tuple[str, str]] = set()
        self.fail_upsert: Set[Tuple[str, str]] = set()
        self.flaky_fetch: Dict[Tuple[str, str], int] = {}  # key -> failures left
        self.fetch_delay: Dict[Tuple[str, str], float] = {}

        self.fetch_calls: List[Tuple[str, str]] = []
        self.upsert_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    def add_class(self, class_id: str, school_id: str) -> None:
        self.classes.append(ClassDescriptor(id=class_id, school_id=school_id))

    def add_subject(self, subject_id: str, school_id: str) -> None:
        self.subjects.append(SubjectDescriptor(id=subject_id, school_id=school_id))

    def add_entry(self, class_id: str, subject_id: str, grade: float) -> None:
        self.entries.setdefault((class_id, subject_id), []).append(grade)

    async def list_classes(self, school_id: Optional[str] = None) -> List[ClassDescriptor]:
        if self.fail_listing:
            raise ConnectionError("classes table unavailable")
        return [c for c in self.classes if school_id is None or c.school_id == school_id]

    async def list_subjects(self, school_id: Optional[str] = None) -> List[SubjectDescriptor]:
        if self.fail_listing:
            raise ConnectionError("subjects table unavailable")
        return [s for s in self.subjects if school_id is None or s.school_id == school_id]

    async def fetch_grades(self, class_id: str, subject_id: str) -> List[float]:
        key = (class_id, subject_id)
        self.fetch_calls.append(key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.fetch_delay.get(key, 0.001))
            if key in self.fail_fetch:
                raise ConnectionError(f"read failed for {key}")
            if self.flaky_fetch.get(key, 0) > 0:
                self.flaky_fetch[key] -= 1
                raise ConnectionError(f"transient read failure for {key}")
            return list(self.entries.get(key, []))
        finally:
            self.in_flight -= 1

    async def upsert_average(self, average: ClassAverage) -> None:
        self.upsert_calls += 1
        if average.key in self.fail_upsert:
            raise ConnectionError(f"write failed for {average.key}")
        self.averages[average.key] = average

    async def get_class_averages(self, class_id: str) -> List[ClassAverage]:
        return [avg for key, avg in sorted(self.averages.items()) if key[0] == class_id]

    async def fetch_entries(self, class_id: str, subject_id: Optional[str] = None) -> List[ProgressEntry]:
        entries = []
        for (entry_class, entry_subject), grades in sorted(self.entries.items()):
            if entry_class != class_id or (subject_id is not None and entry_subject != subject_id):
                continue
            for grade in grades:
                entries.append(ProgressEntry(
                    student_id="student-1",
                    subject_id=entry_subject,
                    class_id=entry_class,
                    grade=grade,
                    entered_by="teacher-1",
                ))
        return entries


class FakeTransport(FeedTransport):
    """Scriptable feed transport.

    ``connect_failures`` is consumed one item per connect attempt: an
    exception instance makes that attempt fail, None lets it succeed. Once
    exhausted every connect succeeds unless ``always_fail`` is set.
    """

    def __init__(self):
        self.connect_failures: list = []
        self.always_fail = False
        self.connect_count = 0
        self.close_count = 0
        self.channels: List[str] = []
        self.connected = asyncio.Event()
        self._queue: asyncio.Queue = asyncio.Queue()

    async def connect(self, channels) -> None:
        self.connect_count += 1
        self.channels = list(channels)
        if self.always_fail:
            raise FeedDisconnectedError("database unreachable")
        if self.connect_failures:
            outcome = self.connect_failures.pop(0)
            if outcome is not None:
                raise outcome
        self.connected.set()

    async def receive(self) -> ChangeEvent:
        item = await self._queue.get()
        if isinstance(item, BaseException):
            self.connected.clear()
            raise item
        return item

    async def close(self) -> None:
        self.close_count += 1

    def push(self, event: ChangeEvent) -> None:
        self._queue.put_nowait(event)

    def drop(self) -> None:
        self._queue.put_nowait(FeedDisconnectedError("connection reset"))


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Poll ``predicate`` until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def store():
    """Store with two schools: school A has C1, C2, S1, S2; school B has C3, S3."""
    fake = FakeProgressStore()
    fake.add_class("C1", "A")
    fake.add_class("C2", "A")
    fake.add_class("C3", "B")
    fake.add_subject("S1", "A")
    fake.add_subject("S2", "A")
    fake.add_subject("S3", "B")
    return fake


@pytest.fixture
def transport():
    return FakeTransport()
