from collections.abc import Sequence
import csv
import io
import logging
from pathlib import Path
from typing import BinaryIO

from openpyxl import Workbook
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from studentflow.retry import run_with_retries
from studentflow.schemas import EXPORT_HEADER, StudentRecord
from studentflow.step_logic import truncate
from studentflow.student_store import insert_batch


logger = logging.getLogger(__name__)

Target = Path | str | BinaryIO

PDF_TITLE = "Student Report"
PDF_HEADER = ("ID", "First Name", "Last Name", "DOB", "Class", "Score")
PDF_RECORDS_PER_PAGE = 30
PDF_NAME_WIDTH = 10
PDF_MARGIN = 50
PDF_RULE_END = 550
PDF_ROW_HEIGHT = 20
PDF_COLUMN_OFFSETS = (0, 50, 130, 210, 290, 350)


def _is_path(target: Target) -> bool:
    return isinstance(target, (str, Path))


def _prepare_path(target: Target) -> None:
    if _is_path(target):
        Path(target).parent.mkdir(parents=True, exist_ok=True)


# A clean exit finalizes output, a failed one discards it. Resources are always released.
class RowSink:
    def __init__(self, target: Target, *, header: Sequence[str] = EXPORT_HEADER) -> None:
        self.target = target
        self.header = tuple(header)
        self.rows_written = 0

    def __enter__(self) -> "RowSink":
        self._open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self._finish()
        finally:
            self._release()

    def write(self, item: StudentRecord | Sequence[object]) -> None:
        cells = item.as_row() if isinstance(item, StudentRecord) else tuple(item)
        self._write_row(cells)
        self.rows_written += 1

    def _open(self) -> None:
        raise NotImplementedError

    def _write_row(self, cells: tuple[object, ...]) -> None:
        raise NotImplementedError

    def _finish(self) -> None:
        pass

    def _release(self) -> None:
        pass


class XlsxSink(RowSink):
    def __init__(self, target: Target, *, header: Sequence[str] = EXPORT_HEADER, sheet_title: str = "Students") -> None:
        super().__init__(target, header=header)
        self.sheet_title = sheet_title
        self._workbook: Workbook | None = None
        self._sheet = None

    def _open(self) -> None:
        # Write-only sheets stream appended rows to a temp file.
        self._workbook = Workbook(write_only=True)
        self._sheet = self._workbook.create_sheet(self.sheet_title)
        self._sheet.append(list(self.header))

    def _write_row(self, cells: tuple[object, ...]) -> None:
        self._sheet.append(list(cells))

    def _finish(self) -> None:
        _prepare_path(self.target)
        self._workbook.save(self.target)

    def _release(self) -> None:
        self._workbook = None
        self._sheet = None


class CsvSink(RowSink):
    def __init__(self, target: Target, *, header: Sequence[str] = EXPORT_HEADER, encoding: str = "utf-8") -> None:
        super().__init__(target, header=header)
        self.encoding = encoding
        self._handle = None
        self._writer = None

    def _open(self) -> None:
        if _is_path(self.target):
            _prepare_path(self.target)
            self._handle = open(self.target, "w", encoding=self.encoding, newline="")
        else:
            self._handle = io.TextIOWrapper(self.target, encoding=self.encoding, newline="")
        self._writer = csv.writer(self._handle, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
        self._writer.writerow(self.header)

    def _write_row(self, cells: tuple[object, ...]) -> None:
        self._writer.writerow(cells)

    def _finish(self) -> None:
        self._handle.flush()

    def _release(self) -> None:
        if self._handle is None:
            return
        if _is_path(self.target):
            self._handle.close()
        else:
            # Leave the caller's stream open.
            self._handle.flush()
            self._handle.detach()
        self._handle = None
        self._writer = None


class PdfSink(RowSink):
    def __init__(self, target: Target, *, header: Sequence[str] = PDF_HEADER) -> None:
        super().__init__(target, header=header)
        self.pages = 0
        self._canvas: canvas.Canvas | None = None
        self._rows_on_page = 0
        self._y = 0.0

    def _open(self) -> None:
        _prepare_path(self.target)
        target = str(self.target) if _is_path(self.target) else self.target
        self._canvas = canvas.Canvas(target, pagesize=A4)
        self._canvas.setTitle(PDF_TITLE)
        self.pages = 0

    def _start_page(self) -> None:
        if self.pages:
            self._canvas.showPage()
        self.pages += 1

        if self.pages == 1:
            self._canvas.setFont("Helvetica-Bold", 16)
            self._canvas.drawString(220, 800, PDF_TITLE)
            self._y = 750
        else:
            self._y = 780

        self._canvas.setFont("Helvetica-Bold", 10)
        self._draw_cells(self.header)
        self._y -= PDF_ROW_HEIGHT
        self._canvas.line(PDF_MARGIN, self._y, PDF_RULE_END, self._y)
        self._y -= 10

        self._canvas.setFont("Helvetica", 9)
        self._rows_on_page = 0

    def _draw_cells(self, values: Sequence[str]) -> None:
        for offset, value in zip(PDF_COLUMN_OFFSETS, values):
            self._canvas.drawString(PDF_MARGIN + offset, self._y, value)

    def _write_row(self, cells: tuple[object, ...]) -> None:
        if self.pages == 0 or self._rows_on_page >= PDF_RECORDS_PER_PAGE:
            self._start_page()

        values = [str(value) for value in cells]
        values[1] = truncate(values[1], PDF_NAME_WIDTH)
        values[2] = truncate(values[2], PDF_NAME_WIDTH)
        self._draw_cells(values)
        self._y -= PDF_ROW_HEIGHT
        self._rows_on_page += 1

    def _finish(self) -> None:
        if self.pages == 0:
            self._start_page()
        self._canvas.save()

    def _release(self) -> None:
        self._canvas = None


# One transaction per batch; the trailing partial batch is only flushed on a clean exit.
class DatabaseSink(RowSink):
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        batch_size: int = 1000,
        max_retries: int = 0,
        backoff_seconds: float = 0.0,
    ) -> None:
        super().__init__(target="database")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.rows_committed = 0
        self.batches_committed = 0
        self._buffer: list[StudentRecord] = []

    def _open(self) -> None:
        self._buffer = []

    def write(self, item: StudentRecord | Sequence[object]) -> None:
        if not isinstance(item, StudentRecord):
            raise TypeError(f"database sink expects StudentRecord, got {type(item).__name__}")
        self._buffer.append(item)
        self.rows_written += 1
        if len(self._buffer) >= self.batch_size:
            self._flush_batch()

    def _finish(self) -> None:
        if self._buffer:
            self._flush_batch()

    def _release(self) -> None:
        if self._buffer:
            logger.warning("discarding uncommitted batch", extra={"rows": len(self._buffer)})
        self._buffer = []

    def _flush_batch(self) -> None:
        batch, self._buffer = self._buffer, []
        run_with_retries(
            lambda: self._insert(batch),
            max_retries=self.max_retries,
            backoff_seconds=self.backoff_seconds,
            on_attempt_failure=lambda attempt, exc: logger.warning(
                "batch insert attempt failed",
                extra={"attempt": attempt, "rows": len(batch), "error": str(exc)},
            ),
            should_retry=lambda exc: isinstance(exc, OperationalError),
        )
        self.rows_committed += len(batch)
        self.batches_committed += 1

    def _insert(self, batch: list[StudentRecord]) -> None:
        with self.session_factory() as db:
            try:
                insert_batch(db, batch)
            except Exception:
                db.rollback()
                raise
