"""
Database models mapping to the progress tables.

These Pydantic models map to the schema:
- public.classes
- public.subjects
- public.progress_entries
- public.class_averages

Class and subject descriptors are read-only here; ``class_averages`` rows are
produced only by the aggregator.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


MIN_GRADE = 0.0
MAX_GRADE = 100.0


class ClassDescriptor(BaseModel):
    """Maps to public.classes (id, school_id)."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    school_id: str
    name: Optional[str] = None


class SubjectDescriptor(BaseModel):
    """Maps to public.subjects (id, school_id)."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    school_id: str
    name: Optional[str] = None


class ProgressEntry(BaseModel):
    """Maps to public.progress_entries table."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    student_id: str
    subject_id: str
    class_id: str
    school_id: Optional[str] = None  # derived via the class, not stored on the row
    grade: float
    comments: Optional[str] = None
    entered_by: str
    entry_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator('grade')
    @classmethod
    def validate_grade(cls, v):
        """Grades are bounded to the 0-100 scale."""
        if v < MIN_GRADE or v > MAX_GRADE:
            raise ValueError(f"grade must be between {MIN_GRADE:g} and {MAX_GRADE:g}")
        return v


class ClassAverage(BaseModel):
    """Maps to public.class_averages, unique on (class_id, subject_id)."""
    model_config = ConfigDict(from_attributes=True)

    class_id: str
    subject_id: str
    average_grade: float
    entry_count: int = Field(..., ge=1)
    calculation_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> tuple:
        return (self.class_id, self.subject_id)

    def to_response(self) -> dict:
        """Shape used by the aggregation endpoint."""
        return {
            "class_id": self.class_id,
            "subject_id": self.subject_id,
            "average_grade": self.average_grade,
            "entry_count": self.entry_count,
        }
