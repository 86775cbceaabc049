import argparse
import logging
from pathlib import Path
import time

from studentflow.config import get_settings
from studentflow.dispatcher import ValidationError
from studentflow.schemas import STUDENT_CLASSES, ProgressSnapshot, TaskStatus
from studentflow.service import StudentDataService


logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate, convert, ingest and export student records")
    parser.add_argument("--poll-interval", type=float, default=0.5, help="seconds between progress polls")
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate_parser = subparsers.add_parser("generate", help="generate a file of random student records")
    generate_parser.add_argument("--count", type=int, required=True, help="number of records to generate")
    generate_parser.add_argument("--format", default="xlsx", choices=["xlsx", "csv"])
    generate_parser.add_argument("--seed", type=int, required=False, help="random seed for reproducible output")

    convert_parser = subparsers.add_parser("convert", help="convert a spreadsheet to CSV, shifting scores")
    convert_parser.add_argument("file", type=Path)

    ingest_parser = subparsers.add_parser("ingest", help="load a CSV file into the database, shifting scores")
    ingest_parser.add_argument("file", type=Path)

    export_parser = subparsers.add_parser("export", help="export stored records")
    export_parser.add_argument("--format", default="csv", choices=["xlsx", "csv", "pdf"])
    export_parser.add_argument("--student-id", type=int, required=False)
    export_parser.add_argument("--student-class", choices=list(STUDENT_CLASSES), required=False)
    export_parser.add_argument(
        "--output",
        type=Path,
        required=False,
        help="write a synchronous export to this path instead of running a background task",
    )

    return parser.parse_args(argv)


def wait_for_task(service: StudentDataService, task_id: str, poll_interval: float) -> ProgressSnapshot:
    last_percent = -1.0
    while True:
        snapshot = service.poll(task_id)
        if snapshot.status.is_terminal:
            return snapshot
        if snapshot.percent_complete != last_percent:
            logger.info(
                "task progress",
                extra={
                    "task_id": task_id,
                    "current": snapshot.current_units,
                    "total": snapshot.total_units,
                    "percent": round(snapshot.percent_complete, 1),
                },
            )
            last_percent = snapshot.percent_complete
        time.sleep(poll_interval)


def format_snapshot(snapshot: ProgressSnapshot) -> str:
    return (
        "task_id={task_id} status={status} current={current} total={total} percent={percent:.1f} "
        "elapsed_ms={elapsed} result={result} error={error}"
    ).format(
        task_id=snapshot.task_id,
        status=snapshot.status.value,
        current=snapshot.current_units,
        total=snapshot.total_units,
        percent=snapshot.percent_complete,
        elapsed=snapshot.elapsed_millis,
        result=snapshot.result_location,
        error=snapshot.error_detail,
    )


def _submit(service: StudentDataService, args: argparse.Namespace) -> str:
    if args.command == "generate":
        params: dict[str, object] = {"count": args.count, "format": args.format}
        if args.seed is not None:
            params["seed"] = args.seed
        return service.submit("generate", params)
    if args.command in ("convert", "ingest"):
        with args.file.open("rb") as upload:
            return service.submit(args.command, upload=upload, file_name=args.file.name)
    return service.submit(
        "export",
        {"format": args.format, "student_id": args.student_id, "student_class": args.student_class},
    )


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    service = StudentDataService(settings, start_scheduler=False)
    try:
        if args.command == "export" and args.output is not None:
            outcome = service.export_bytes(
                args.format,
                student_id=args.student_id,
                student_class=args.student_class,
            )
            if outcome.failed:
                print("status=FAILED error=export failed")
                raise SystemExit(1)
            args.output.parent.mkdir(parents=True, exist_ok=True)
            args.output.write_bytes(outcome.content)
            print(f"status=COMPLETED result={args.output} bytes={len(outcome.content)}")
            return

        try:
            task_id = _submit(service, args)
        except (ValidationError, FileNotFoundError) as exc:
            print(f"status=REJECTED error={exc}")
            raise SystemExit(2)

        snapshot = wait_for_task(service, task_id, args.poll_interval)
        print(format_snapshot(snapshot))
        if snapshot.status is TaskStatus.FAILED:
            raise SystemExit(1)
    finally:
        service.close()


if __name__ == "__main__":
    main()
