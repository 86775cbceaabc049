from collections.abc import Iterator
from dataclasses import dataclass
import logging

from sqlalchemy.orm import Session, sessionmaker

from studentflow.schemas import StudentRecord
from studentflow.student_store import count_students, fetch_page, get_student, to_record


logger = logging.getLogger(__name__)

SINGLE = "single"
FILTERED = "filtered"
FULL = "full"


@dataclass(frozen=True)
class ExportPlan:
    mode: str
    total: int
    student_id: int | None = None
    student_class: str | None = None

    @property
    def is_filtered(self) -> bool:
        return self.mode != FULL


class ExportQueryPlanner:
    def __init__(self, session_factory: sessionmaker[Session], *, page_size: int = 10_000) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.session_factory = session_factory
        self.page_size = page_size

    def plan(self, *, student_id: int | None = None, student_class: str | None = None) -> ExportPlan:
        with self.session_factory() as db:
            if student_id is not None:
                total = 1 if get_student(db, student_id) is not None else 0
                return ExportPlan(mode=SINGLE, total=total, student_id=student_id)
            if student_class:
                total = count_students(db, student_class=student_class)
                return ExportPlan(mode=FILTERED, total=total, student_class=student_class)
            return ExportPlan(mode=FULL, total=count_students(db))

    def iter_records(self, plan: ExportPlan) -> Iterator[StudentRecord]:
        if plan.mode == SINGLE:
            with self.session_factory() as db:
                student = get_student(db, plan.student_id)
                record = to_record(student) if student is not None else None
            if record is not None:
                yield record
            return

        after_id = 0
        pages = 0
        while True:
            # One short session per page so no transaction spans the export.
            with self.session_factory() as db:
                page = fetch_page(db, after_id=after_id, page_size=self.page_size, student_class=plan.student_class)
                records = [to_record(student) for student in page]
            if not records:
                break
            pages += 1
            after_id = page[-1].id
            yield from records
            if len(records) < self.page_size:
                break
        logger.debug("export scan finished", extra={"mode": plan.mode, "pages": pages})
