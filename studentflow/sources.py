from collections.abc import Iterator
import csv
from datetime import date, timedelta
import logging
from pathlib import Path
import random
import string

from openpyxl import load_workbook

from studentflow.schemas import STUDENT_CLASSES, STUDENT_COLUMN_COUNT, StudentRecord
from studentflow.step_logic import cell_to_text, normalize_row


logger = logging.getLogger(__name__)

XLSX_MAX_DATA_ROWS = 1_048_575
DEFAULT_ESTIMATED_ROWS = 1_000_000
MAX_ROWS_BY_FORMAT: dict[str, int | None] = {"xlsx": XLSX_MAX_DATA_ROWS, "csv": None}

NAME_ALPHABET = string.ascii_letters
NAME_LENGTH = (3, 8)
DOB_RANGE = (date(2000, 1, 1), date(2010, 12, 31))
SCORE_RANGE = (55, 75)


def clamp_row_count(count: int, max_rows: int | None) -> int:
    if count < 0:
        return 0
    if max_rows is None:
        return count
    return min(count, max_rows)


def _random_name(rng: random.Random) -> str:
    length = rng.randint(*NAME_LENGTH)
    return "".join(rng.choice(NAME_ALPHABET) for _ in range(length))


def _random_dob(rng: random.Random) -> date:
    start, end = DOB_RANGE
    return start + timedelta(days=rng.randint(0, (end - start).days))


def generate_students(
    count: int,
    *,
    rng: random.Random | None = None,
    max_rows: int | None = XLSX_MAX_DATA_ROWS,
) -> Iterator[StudentRecord]:
    rng = rng or random.Random()
    for student_id in range(1, clamp_row_count(count, max_rows) + 1):
        yield StudentRecord(
            student_id=student_id,
            first_name=_random_name(rng),
            last_name=_random_name(rng),
            dob=_random_dob(rng),
            student_class=rng.choice(STUDENT_CLASSES),
            score=rng.randint(*SCORE_RANGE),
        )


# Yields (row_index, cells) with index 0 for the header row.
class XlsxRowSource:
    def __init__(self, path: Path, *, default_estimate: int = DEFAULT_ESTIMATED_ROWS) -> None:
        self.path = Path(path)
        self.default_estimate = default_estimate
        self._workbook = None
        self._sheet = None
        self._estimate: int | None = None

    def __enter__(self) -> "XlsxRowSource":
        self._workbook = load_workbook(filename=self.path, read_only=True, data_only=False)
        if not self._workbook.worksheets:
            self._workbook.close()
            raise ValueError(f"workbook has no sheets: {self.path.name}")
        self._sheet = self._workbook.worksheets[0]
        declared_rows = self._sheet.max_row or 0
        self._estimate = declared_rows - 1 if declared_rows > 1 else self.default_estimate
        # Declared dimensions are not trusted for the actual read.
        self._sheet.reset_dimensions()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._workbook is not None:
            self._workbook.close()
        self._workbook = None
        self._sheet = None

    @property
    def estimated_data_rows(self) -> int:
        if self._estimate is None:
            raise RuntimeError("source is not open")
        return self._estimate

    def __iter__(self) -> Iterator[tuple[int, tuple[str, ...]]]:
        if self._sheet is None:
            raise RuntimeError("source is not open")
        index = 0
        for cells in self._sheet.iter_rows(max_col=STUDENT_COLUMN_COUNT):
            values = [cell_to_text(cell.value, is_formula=cell.data_type == "f") for cell in cells]
            if not any(values):
                continue
            yield index, normalize_row(values)
            index += 1


class CsvRowSource:
    def __init__(self, path: Path, *, encoding: str = "utf-8-sig") -> None:
        self.path = Path(path)
        self.encoding = encoding
        self.header: tuple[str, ...] = ()
        self._handle = None
        self._reader = None

    def count_data_rows(self) -> int:
        count = 0
        with self.path.open("r", encoding=self.encoding, newline="") as infile:
            reader = csv.reader(infile)
            next(reader, None)
            for row in reader:
                if row:
                    count += 1
        return count

    def __enter__(self) -> "CsvRowSource":
        self._handle = self.path.open("r", encoding=self.encoding, newline="")
        self._reader = csv.reader(self._handle)
        self.header = tuple(next(self._reader, ()))
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._handle is not None:
            self._handle.close()
        self._handle = None
        self._reader = None

    def __iter__(self) -> Iterator[tuple[int, tuple[str, ...]]]:
        if self._reader is None:
            raise RuntimeError("source is not open")
        index = 0
        for row in self._reader:
            if not row:
                continue
            index += 1
            yield index, tuple(row)
