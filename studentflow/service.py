from dataclasses import dataclass
import io
import logging
from pathlib import Path
import shutil
from typing import BinaryIO
import uuid

from sqlalchemy.orm import Session, sessionmaker

from studentflow.config import Settings
from studentflow.database import build_session_factory
from studentflow.dispatcher import TaskDispatcher, ValidationError
from studentflow.pipeline import FILE_SINKS, PipelineRunner
from studentflow.progress import ProgressRegistry
from studentflow.scheduler import start_eviction_scheduler
from studentflow.schemas import STUDENT_CLASSES, ProgressSnapshot, TaskKind


logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "csv": "text/csv",
    "pdf": "application/pdf",
}
UPLOAD_SUFFIXES = {TaskKind.CONVERT: ".xlsx", TaskKind.INGEST: ".csv"}


@dataclass(frozen=True)
class ExportOutcome:
    content: bytes | None
    media_type: str | None = None
    file_name: str | None = None
    failed: bool = False


def media_type_for(file_name: str) -> str:
    return MEDIA_TYPES.get(Path(file_name).suffix.lstrip(".").lower(), "application/octet-stream")


class StudentDataService:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session] | None = None,
        *,
        registry: ProgressRegistry | None = None,
        start_scheduler: bool = True,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory or build_session_factory(settings.database_url)
        self.registry = registry or ProgressRegistry()
        self.runner = PipelineRunner(settings, self.session_factory, self.registry)
        self.dispatcher = TaskDispatcher(self.runner, max_workers=settings.max_workers)
        self.scheduler = start_eviction_scheduler(settings, self.registry) if start_scheduler else None

    def submit(
        self,
        kind: str | TaskKind,
        params: dict[str, object] | None = None,
        *,
        upload: bytes | BinaryIO | None = None,
        file_name: str | None = None,
    ) -> str:
        if upload is None:
            return self.dispatcher.dispatch(kind, params)

        staged = self._stage_upload(kind, upload, file_name)
        try:
            return self.dispatcher.dispatch(kind, params, staged_input=staged)
        except Exception:
            staged.unlink(missing_ok=True)
            raise

    def poll(self, task_id: str) -> ProgressSnapshot:
        return self.registry.lookup(task_id)

    def export_bytes(
        self,
        fmt: str,
        *,
        student_id: int | None = None,
        student_class: str | None = None,
    ) -> ExportOutcome:
        if fmt not in FILE_SINKS:
            raise ValidationError(f"unsupported export format: {fmt}")
        if student_class and student_class not in STUDENT_CLASSES:
            raise ValidationError(f"unknown student class: {student_class}")

        planner = self.runner.planner
        buffer = io.BytesIO()
        try:
            plan = planner.plan(student_id=student_id, student_class=student_class)
            with FILE_SINKS[fmt](buffer) as sink:
                for record in planner.iter_records(plan):
                    sink.write(record)
        except Exception:
            logger.exception("synchronous export failed", extra={"format": fmt})
            return ExportOutcome(content=None, failed=True)

        return ExportOutcome(content=buffer.getvalue(), media_type=MEDIA_TYPES[fmt], file_name=f"students.{fmt}")

    def download(self, file_name: str) -> bytes | None:
        name = Path(file_name).name
        if not name or name != file_name:
            logger.warning("rejected download name", extra={"file_name": file_name})
            return None
        path = Path(self.settings.storage_dir) / name
        if not path.is_file():
            return None
        return path.read_bytes()

    def close(self, wait: bool = True) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self.dispatcher.shutdown(wait=wait)

    def _stage_upload(self, kind: str | TaskKind, upload: bytes | BinaryIO, file_name: str | None) -> Path:
        if isinstance(upload, (bytes, bytearray)) and not upload:
            raise ValidationError("file is empty")

        try:
            suffix = Path(file_name).suffix if file_name else UPLOAD_SUFFIXES[TaskKind(kind)]
        except (KeyError, ValueError) as exc:
            raise ValidationError(f"operation does not accept a file: {kind}") from exc

        upload_dir = Path(self.settings.upload_dir)
        upload_dir.mkdir(parents=True, exist_ok=True)
        staged = upload_dir / f"upload_{uuid.uuid4().hex}{suffix}"

        if isinstance(upload, (bytes, bytearray)):
            staged.write_bytes(upload)
        else:
            with staged.open("wb") as outfile:
                shutil.copyfileobj(upload, outfile)

        if staged.stat().st_size == 0:
            staged.unlink(missing_ok=True)
            raise ValidationError("file is empty")
        return staged
