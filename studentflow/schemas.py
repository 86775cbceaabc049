from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path


STUDENT_CLASSES = ("Class1", "Class2", "Class3", "Class4", "Class5")
SOURCE_HEADER = ("studentId", "firstName", "lastName", "DOB", "class", "score")
EXPORT_HEADER = ("Student ID", "First Name", "Last Name", "DOB", "Class", "Score")
STUDENT_COLUMN_COUNT = len(SOURCE_HEADER)
SCORE_COLUMN = 5


class TaskStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskKind(str, Enum):
    GENERATE = "generate"
    CONVERT = "convert"
    INGEST = "ingest"
    EXPORT = "export"


@dataclass(frozen=True)
class StudentRecord:
    student_id: int
    first_name: str
    last_name: str
    dob: date
    student_class: str
    score: int

    def as_row(self) -> tuple[object, ...]:
        return (
            self.student_id,
            self.first_name,
            self.last_name,
            self.dob.isoformat(),
            self.student_class,
            self.score,
        )


def percent_of(current: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return min(100.0, current / total * 100)


@dataclass(frozen=True)
class ProgressSnapshot:
    task_id: str
    status: TaskStatus
    current_units: int = 0
    total_units: int = 0
    percent_complete: float = 0.0
    elapsed_millis: int = 0
    result_location: str | None = None
    error_detail: str | None = None
    message: str | None = None

    @classmethod
    def running(cls, task_id: str, current: int, total: int, elapsed_millis: int) -> "ProgressSnapshot":
        return cls(
            task_id=task_id,
            status=TaskStatus.RUNNING,
            current_units=current,
            total_units=total,
            percent_complete=percent_of(current, total),
            elapsed_millis=elapsed_millis,
        )

    @classmethod
    def completed(cls, task_id: str, total: int, elapsed_millis: int, result_location: str) -> "ProgressSnapshot":
        return cls(
            task_id=task_id,
            status=TaskStatus.COMPLETED,
            current_units=total,
            total_units=total,
            percent_complete=100.0,
            elapsed_millis=elapsed_millis,
            result_location=result_location,
            message="Process completed successfully",
        )

    @classmethod
    def failed(
        cls,
        task_id: str,
        error: str,
        *,
        current: int = 0,
        total: int = 0,
        elapsed_millis: int = 0,
    ) -> "ProgressSnapshot":
        return cls(
            task_id=task_id,
            status=TaskStatus.FAILED,
            current_units=current,
            total_units=total,
            percent_complete=percent_of(current, total),
            elapsed_millis=elapsed_millis,
            error_detail=error,
            message="Process failed",
        )

    @classmethod
    def not_found(cls, task_id: str) -> "ProgressSnapshot":
        return cls(task_id=task_id, status=TaskStatus.NOT_FOUND, message="Task not found")


@dataclass(frozen=True)
class PipelineRequest:
    kind: TaskKind
    params: dict[str, object] = field(default_factory=dict)
    staged_input: Path | None = None


@dataclass(frozen=True)
class PipelineOutcome:
    processed: int
    result_location: str
