from collections.abc import Callable, Iterable, Sequence
import logging
from pathlib import Path
import random
import time

from sqlalchemy.orm import Session, sessionmaker

from studentflow.config import Settings
from studentflow.planner import ExportQueryPlanner
from studentflow.progress import ProgressRegistry
from studentflow.schemas import (
    SOURCE_HEADER,
    PipelineOutcome,
    PipelineRequest,
    ProgressSnapshot,
    TaskKind,
)
from studentflow.sinks import CsvSink, DatabaseSink, PdfSink, RowSink, XlsxSink
from studentflow.sources import MAX_ROWS_BY_FORMAT, CsvRowSource, XlsxRowSource, clamp_row_count, generate_students
from studentflow.step_logic import parse_student_row, shift_raw_score, with_score_offset


logger = logging.getLogger(__name__)

INGEST_RESULT = "Database upload completed"
ESTIMATED_PROGRESS_EVERY = 2000
FILE_SINKS: dict[str, type[RowSink]] = {"xlsx": XlsxSink, "csv": CsvSink, "pdf": PdfSink}
FAILURE_LABELS = {
    TaskKind.GENERATE: "Generation",
    TaskKind.CONVERT: "Processing",
    TaskKind.INGEST: "Upload",
    TaskKind.EXPORT: "Export",
}


def progress_interval(total: int, *, estimated: bool = False, override: int = 0) -> int:
    if override > 0:
        return override
    if estimated:
        return ESTIMATED_PROGRESS_EVERY
    return max(1, total // 100)


class ProgressReporter:
    def __init__(
        self,
        registry: ProgressRegistry,
        task_id: str,
        *,
        override_every: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.task_id = task_id
        self.override_every = override_every
        self.clock = clock
        self.started = clock()
        self.total = 0
        self.estimated = False
        self.every = 1
        self.current = 0

    def elapsed_millis(self) -> int:
        return int((self.clock() - self.started) * 1000)

    def start(self) -> None:
        self.registry.record(self.task_id, ProgressSnapshot.running(self.task_id, 0, 0, 0))

    def configure(self, total: int, *, estimated: bool = False) -> None:
        self.total = total
        self.estimated = estimated
        self.every = progress_interval(total, estimated=estimated, override=self.override_every)
        self._emit()

    def advance(self, current: int) -> None:
        self.current = current
        # An estimated total says nothing about where the stream ends.
        if current % self.every == 0 or (not self.estimated and current == self.total):
            self._emit()

    def complete(self, processed: int, result_location: str) -> None:
        self.registry.record(
            self.task_id,
            ProgressSnapshot.completed(self.task_id, processed, self.elapsed_millis(), result_location),
        )

    def fail(self, error: str) -> None:
        self.registry.record(
            self.task_id,
            ProgressSnapshot.failed(
                self.task_id,
                error,
                current=self.current,
                total=self.total,
                elapsed_millis=self.elapsed_millis(),
            ),
        )

    def _emit(self) -> None:
        self.registry.record(
            self.task_id,
            ProgressSnapshot.running(self.task_id, self.current, self.total, self.elapsed_millis()),
        )


class PipelineRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        registry: ProgressRegistry,
        *,
        rng_factory: Callable[[object], random.Random] = random.Random,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.registry = registry
        self.rng_factory = rng_factory
        self.wall_clock = wall_clock
        self.planner = ExportQueryPlanner(session_factory, page_size=settings.export_page_size)
        self._handlers = {
            TaskKind.GENERATE: self._generate,
            TaskKind.CONVERT: self._convert,
            TaskKind.INGEST: self._ingest,
            TaskKind.EXPORT: self._export,
        }

    def run(self, task_id: str, request: PipelineRequest) -> None:
        reporter = ProgressReporter(self.registry, task_id, override_every=self.settings.progress_every_rows)
        reporter.start()
        logger.info("task started", extra={"task_id": task_id, "kind": request.kind.value})

        try:
            try:
                outcome = self._handlers[request.kind](request, reporter)
            finally:
                # Staged input is gone before the terminal snapshot is visible.
                self._discard_staged(request)
        except Exception as exc:
            label = FAILURE_LABELS.get(request.kind, "Task")
            reporter.fail(f"{label} failed: {exc}")
            logger.exception("task failed", extra={"task_id": task_id, "kind": request.kind.value})
        else:
            reporter.complete(outcome.processed, outcome.result_location)
            logger.info(
                "task completed",
                extra={
                    "task_id": task_id,
                    "kind": request.kind.value,
                    "processed": outcome.processed,
                    "elapsed_ms": reporter.elapsed_millis(),
                },
            )

    def _generate(self, request: PipelineRequest, reporter: ProgressReporter) -> PipelineOutcome:
        fmt = str(request.params.get("format", "xlsx"))
        requested = int(request.params["count"])
        max_rows = MAX_ROWS_BY_FORMAT[fmt]
        total = clamp_row_count(requested, max_rows)
        if total < requested:
            logger.info("generation count clamped", extra={"requested": requested, "clamped": total})

        reporter.configure(total)
        records = generate_students(total, rng=self.rng_factory(request.params.get("seed")), max_rows=max_rows)
        path = self._output_path("students", fmt)
        processed = self._write_file(path, fmt, records, reporter, header=SOURCE_HEADER)
        return PipelineOutcome(processed=processed, result_location=str(path))

    def _convert(self, request: PipelineRequest, reporter: ProgressReporter) -> PipelineOutcome:
        offset = self.settings.convert_score_offset
        with XlsxRowSource(request.staged_input) as source:
            reporter.configure(source.estimated_data_rows, estimated=True)
            rows = iter(source)
            first = next(rows, None)
            if first is None:
                raise ValueError("spreadsheet has no header row")
            _, header = first

            path = self._output_path("students", "csv")
            processed = self._write_file(
                path,
                "csv",
                (shift_raw_score(row, offset, index) for index, row in rows),
                reporter,
                header=header,
            )
        return PipelineOutcome(processed=processed, result_location=str(path))

    def _ingest(self, request: PipelineRequest, reporter: ProgressReporter) -> PipelineOutcome:
        offset = self.settings.ingest_score_offset
        source = CsvRowSource(request.staged_input)
        reporter.configure(source.count_data_rows())

        sink = DatabaseSink(
            self.session_factory,
            batch_size=self.settings.ingest_batch_size,
            max_retries=self.settings.max_batch_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
        )
        with source, sink:
            records = (with_score_offset(parse_student_row(row, index), offset) for index, row in source)
            processed = self._pump(records, sink, reporter)
        return PipelineOutcome(processed=processed, result_location=INGEST_RESULT)

    def _export(self, request: PipelineRequest, reporter: ProgressReporter) -> PipelineOutcome:
        fmt = str(request.params.get("format", "csv"))
        plan = self.planner.plan(
            student_id=request.params.get("student_id"),
            student_class=request.params.get("student_class"),
        )
        reporter.configure(plan.total)

        dataset = "students" if plan.is_filtered else "all_students"
        path = self._output_path(dataset, fmt)
        processed = self._write_file(path, fmt, self.planner.iter_records(plan), reporter)
        return PipelineOutcome(processed=processed, result_location=str(path))

    def _write_file(
        self,
        path: Path,
        fmt: str,
        stream: Iterable[object],
        reporter: ProgressReporter,
        *,
        header: Sequence[str] | None = None,
    ) -> int:
        kwargs = {"header": header} if header is not None else {}
        sink = FILE_SINKS[fmt](path, **kwargs)
        try:
            with sink:
                return self._pump(stream, sink, reporter)
        except Exception:
            # Partial artifacts are removed.
            path.unlink(missing_ok=True)
            raise

    def _pump(self, stream: Iterable[object], sink: RowSink, reporter: ProgressReporter) -> int:
        processed = 0
        for item in stream:
            sink.write(item)
            processed += 1
            reporter.advance(processed)
        return processed

    def _output_path(self, dataset: str, ext: str) -> Path:
        storage = Path(self.settings.storage_dir)
        storage.mkdir(parents=True, exist_ok=True)
        millis = int(self.wall_clock() * 1000)
        while True:
            path = storage / f"{dataset}_{millis}.{ext}"
            try:
                # Exclusive create reserves the name against concurrent tasks.
                path.touch(exist_ok=False)
                return path
            except FileExistsError:
                millis += 1

    def _discard_staged(self, request: PipelineRequest) -> None:
        if request.staged_input is None:
            return
        try:
            request.staged_input.unlink(missing_ok=True)
        except OSError:
            logger.warning("could not remove staged input", extra={"path": str(request.staged_input)})
