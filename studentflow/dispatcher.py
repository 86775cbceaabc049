from concurrent.futures import Future, ThreadPoolExecutor
import logging
from pathlib import Path
import uuid

from studentflow.pipeline import FILE_SINKS, PipelineRunner
from studentflow.schemas import STUDENT_CLASSES, PipelineRequest, TaskKind
from studentflow.sources import MAX_ROWS_BY_FORMAT


logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    pass


def _positive_int(value: object, name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be a positive integer") from exc
    if number <= 0:
        raise ValidationError(f"{name} must be a positive integer")
    return number


def build_request(
    kind: str | TaskKind,
    params: dict[str, object] | None = None,
    *,
    staged_input: Path | None = None,
) -> PipelineRequest:
    try:
        task_kind = TaskKind(kind)
    except ValueError as exc:
        raise ValidationError(f"unknown operation: {kind}") from exc

    params = dict(params or {})

    if task_kind is TaskKind.GENERATE:
        params["count"] = _positive_int(params.get("count"), "count")
        fmt = str(params.setdefault("format", "xlsx"))
        if fmt not in MAX_ROWS_BY_FORMAT:
            raise ValidationError(f"unsupported generation format: {fmt}")

    if task_kind is TaskKind.EXPORT:
        fmt = str(params.setdefault("format", "csv"))
        if fmt not in FILE_SINKS:
            raise ValidationError(f"unsupported export format: {fmt}")
        if params.get("student_id") is not None:
            params["student_id"] = _positive_int(params["student_id"], "student_id")
        student_class = params.get("student_class")
        if student_class and student_class not in STUDENT_CLASSES:
            raise ValidationError(f"unknown student class: {student_class}")

    if task_kind in (TaskKind.CONVERT, TaskKind.INGEST):
        if staged_input is None:
            raise ValidationError("file is required")
        staged_input = Path(staged_input)
        if not staged_input.is_file():
            raise ValidationError("file not found")
        if staged_input.stat().st_size == 0:
            raise ValidationError("file is empty")

    return PipelineRequest(kind=task_kind, params=params, staged_input=staged_input)


class TaskDispatcher:
    def __init__(self, runner: PipelineRunner, *, max_workers: int = 4) -> None:
        self.runner = runner
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipeline")

    def dispatch(
        self,
        kind: str | TaskKind,
        params: dict[str, object] | None = None,
        *,
        staged_input: Path | None = None,
    ) -> str:
        # Validation runs before an id is allocated.
        request = build_request(kind, params, staged_input=staged_input)
        task_id = str(uuid.uuid4())

        future = self._executor.submit(self.runner.run, task_id, request)
        future.add_done_callback(lambda done: self._log_escaped_error(task_id, done))
        logger.info("task dispatched", extra={"task_id": task_id, "kind": request.kind.value})
        return task_id

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _log_escaped_error(self, task_id: str, future: Future) -> None:
        if future.cancelled():
            logger.warning("task cancelled before start", extra={"task_id": task_id})
            return
        exc = future.exception()
        if exc is not None:
            logger.error("task raised past the runner", exc_info=exc, extra={"task_id": task_id})
