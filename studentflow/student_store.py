from collections.abc import Sequence

from sqlalchemy import func, insert, select
from sqlalchemy.orm import Session

from studentflow.db_models import Student
from studentflow.schemas import StudentRecord


def to_record(student: Student) -> StudentRecord:
    return StudentRecord(
        student_id=student.student_id,
        first_name=student.first_name,
        last_name=student.last_name,
        dob=student.dob,
        student_class=student.student_class,
        score=student.score,
    )


def insert_batch(db: Session, records: Sequence[StudentRecord]) -> int:
    if not records:
        return 0
    db.execute(
        insert(Student),
        [
            {
                "student_id": record.student_id,
                "first_name": record.first_name,
                "last_name": record.last_name,
                "dob": record.dob,
                "student_class": record.student_class,
                "score": record.score,
            }
            for record in records
        ],
    )
    db.commit()
    return len(records)


def count_students(db: Session, *, student_class: str | None = None) -> int:
    stmt = select(func.count()).select_from(Student)
    if student_class:
        stmt = stmt.where(Student.student_class == student_class)
    return db.execute(stmt).scalar_one()


def get_student(db: Session, student_id: int) -> Student | None:
    stmt = select(Student).where(Student.student_id == student_id)
    return db.execute(stmt).scalar_one_or_none()


def fetch_page(
    db: Session,
    *,
    after_id: int,
    page_size: int,
    student_class: str | None = None,
) -> list[Student]:
    # Keyset paging keeps each page query cheap on large tables.
    stmt = select(Student).where(Student.id > after_id)
    if student_class:
        stmt = stmt.where(Student.student_class == student_class)
    stmt = stmt.order_by(Student.id).limit(page_size)
    return list(db.execute(stmt).scalars().all())
