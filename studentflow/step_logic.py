from collections.abc import Sequence
from dataclasses import replace
from datetime import date, datetime, time

from studentflow.schemas import SCORE_COLUMN, STUDENT_CLASSES, STUDENT_COLUMN_COUNT, StudentRecord


class RowParseError(ValueError):
    def __init__(self, row_index: int, field: str, reason: str) -> None:
        super().__init__(f"row {row_index}: {field} {reason}")
        self.row_index = row_index
        self.field = field
        self.reason = reason


def cell_to_text(value: object, *, is_formula: bool = False) -> str:
    if value is None:
        return ""
    if is_formula:
        return str(value).removeprefix("=")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, time):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def normalize_row(values: Sequence[str]) -> tuple[str, ...]:
    padded = list(values[:STUDENT_COLUMN_COUNT])
    padded.extend("" for _ in range(STUDENT_COLUMN_COUNT - len(padded)))
    return tuple(padded)


def parse_score(text: str, row_index: int, *, allow_fraction: bool = False) -> int:
    cleaned = text.strip()
    if not cleaned:
        raise RowParseError(row_index, "score", "is required")
    try:
        return int(cleaned)
    except ValueError as exc:
        if not allow_fraction:
            raise RowParseError(row_index, "score", f"is not an integer: {cleaned!r}") from exc
    try:
        # Spreadsheet readers can hand back "61.0" for integer cells.
        return int(float(cleaned))
    except (ValueError, OverflowError) as exc:
        raise RowParseError(row_index, "score", f"is not a number: {cleaned!r}") from exc


def shift_raw_score(row: Sequence[str], offset: int, row_index: int) -> tuple[str, ...]:
    values = list(normalize_row(row))
    values[SCORE_COLUMN] = str(parse_score(values[SCORE_COLUMN], row_index, allow_fraction=True) + offset)
    return tuple(values)


def parse_student_row(row: Sequence[str], row_index: int) -> StudentRecord:
    if len(row) < STUDENT_COLUMN_COUNT:
        raise RowParseError(row_index, "row", f"has {len(row)} fields, expected {STUDENT_COLUMN_COUNT}")

    raw_id, first_name, last_name, raw_dob, student_class, raw_score = (str(value).strip() for value in row[:6])

    try:
        student_id = int(raw_id)
    except ValueError as exc:
        raise RowParseError(row_index, "studentId", f"is not an integer: {raw_id!r}") from exc
    if student_id <= 0:
        raise RowParseError(row_index, "studentId", "must be positive")

    if not first_name:
        raise RowParseError(row_index, "firstName", "is required")
    if not last_name:
        raise RowParseError(row_index, "lastName", "is required")

    try:
        dob = date.fromisoformat(raw_dob)
    except ValueError as exc:
        raise RowParseError(row_index, "DOB", f"is not an ISO date: {raw_dob!r}") from exc

    if student_class not in STUDENT_CLASSES:
        raise RowParseError(row_index, "class", f"is not a known class: {student_class!r}")

    return StudentRecord(
        student_id=student_id,
        first_name=first_name,
        last_name=last_name,
        dob=dob,
        student_class=student_class,
        score=parse_score(raw_score, row_index),
    )


def with_score_offset(record: StudentRecord, offset: int) -> StudentRecord:
    if offset == 0:
        return record
    return replace(record, score=record.score + offset)


def truncate(text: str | None, max_length: int) -> str:
    if text is None:
        return ""
    return text[:max_length]
