import csv
from dataclasses import replace
from pathlib import Path
import re
import shutil

from openpyxl import load_workbook
import pytest
from sqlalchemy import select

from studentflow.db_models import Student
from studentflow.pipeline import INGEST_RESULT, PipelineRunner
from studentflow.progress import ProgressRegistry
from studentflow.schemas import SOURCE_HEADER, PipelineRequest, TaskKind, TaskStatus
from studentflow.sources import DEFAULT_ESTIMATED_ROWS, MAX_ROWS_BY_FORMAT, XlsxRowSource


class RecordingRegistry(ProgressRegistry):
    def __init__(self) -> None:
        super().__init__()
        self.history = []

    def record(self, task_id, snapshot):
        accepted = super().record(task_id, snapshot)
        if accepted:
            self.history.append(snapshot)
        return accepted


def read_xlsx_rows(path: Path) -> list[tuple]:
    workbook = load_workbook(path, read_only=True)
    try:
        return list(workbook.worksheets[0].iter_rows(values_only=True))
    finally:
        workbook.close()


def read_csv_rows(path: Path) -> list[list[str]]:
    with path.open("r", encoding="utf-8", newline="") as infile:
        return list(csv.reader(infile))


def stage(source: Path, upload_dir: Path, name: str) -> Path:
    staged = upload_dir / name
    shutil.copy(source, staged)
    return staged


def write_csv(path: Path, rows: list[list[str]]) -> Path:
    with path.open("w", encoding="utf-8", newline="") as outfile:
        writer = csv.writer(outfile)
        writer.writerow(SOURCE_HEADER)
        writer.writerows(rows)
    return path


def stored_students(runner: PipelineRunner) -> list[Student]:
    with runner.session_factory() as db:
        return list(db.execute(select(Student).order_by(Student.student_id)).scalars().all())


def generate(runner: PipelineRunner, task_id: str, count: int, **params) -> Path:
    runner.run(task_id, PipelineRequest(TaskKind.GENERATE, {"count": count, "seed": 11, **params}))
    snapshot = runner.registry.lookup(task_id)
    assert snapshot.status is TaskStatus.COMPLETED, snapshot.error_detail
    return Path(snapshot.result_location)


def test_generate_convert_ingest_scenario(runner: PipelineRunner, test_settings) -> None:
    upload_dir = Path(test_settings.upload_dir)

    generated_path = generate(runner, "gen", 50)
    generated = runner.registry.lookup("gen")
    assert re.fullmatch(r"students_\d+\.xlsx", generated_path.name)
    assert generated.current_units == generated.total_units == 50
    assert generated.percent_complete == 100

    sheet_rows = read_xlsx_rows(generated_path)
    assert sheet_rows[0] == SOURCE_HEADER
    assert len(sheet_rows) == 51
    assert all(55 <= row[5] <= 75 for row in sheet_rows[1:])
    original_scores = {row[0]: row[5] for row in sheet_rows[1:]}

    staged_xlsx = stage(generated_path, upload_dir, "upload.xlsx")
    runner.run("convert", PipelineRequest(TaskKind.CONVERT, staged_input=staged_xlsx))
    converted = runner.registry.lookup("convert")
    assert converted.status is TaskStatus.COMPLETED, converted.error_detail
    assert converted.current_units == 50
    assert not staged_xlsx.exists()

    csv_path = Path(converted.result_location)
    csv_rows = read_csv_rows(csv_path)
    assert tuple(csv_rows[0]) == SOURCE_HEADER
    assert len(csv_rows) == 51
    for row in csv_rows[1:]:
        assert int(row[5]) == original_scores[int(row[0])] + 10
        assert 65 <= int(row[5]) <= 85

    staged_csv = stage(csv_path, upload_dir, "upload.csv")
    runner.run("ingest", PipelineRequest(TaskKind.INGEST, staged_input=staged_csv))
    ingested = runner.registry.lookup("ingest")
    assert ingested.status is TaskStatus.COMPLETED, ingested.error_detail
    assert ingested.result_location == INGEST_RESULT
    assert ingested.current_units == 50
    assert not staged_csv.exists()

    students = stored_students(runner)
    assert [student.student_id for student in students] == list(range(1, 51))
    for student in students:
        assert student.score == original_scores[student.student_id] + 15
        assert 70 <= student.score <= 90


def test_round_trip_filtered_export_matches_generated_subset(runner: PipelineRunner, test_settings) -> None:
    upload_dir = Path(test_settings.upload_dir)
    generated_path = generate(runner, "gen", 40)
    generated_rows = read_xlsx_rows(generated_path)[1:]

    runner.run("convert", PipelineRequest(TaskKind.CONVERT, staged_input=stage(generated_path, upload_dir, "a.xlsx")))
    csv_path = Path(runner.registry.lookup("convert").result_location)
    runner.run("ingest", PipelineRequest(TaskKind.INGEST, staged_input=stage(csv_path, upload_dir, "a.csv")))
    assert runner.registry.lookup("ingest").status is TaskStatus.COMPLETED

    runner.run("export", PipelineRequest(TaskKind.EXPORT, {"format": "csv", "student_class": "Class2"}))
    exported = runner.registry.lookup("export")
    assert exported.status is TaskStatus.COMPLETED, exported.error_detail
    assert re.fullmatch(r"students_\d+\.csv", Path(exported.result_location).name)

    exported_rows = read_csv_rows(Path(exported.result_location))
    assert exported_rows[0] == ["Student ID", "First Name", "Last Name", "DOB", "Class", "Score"]
    expected = {
        (str(row[0]), row[1], row[2], row[3], row[4], str(row[5] + 15))
        for row in generated_rows
        if row[4] == "Class2"
    }
    assert {tuple(row) for row in exported_rows[1:]} == expected
    assert len(exported_rows) - 1 == exported.current_units == len(expected)


def test_progress_is_monotonic_and_bounded(test_settings, session_factory) -> None:
    registry = RecordingRegistry()
    runner = PipelineRunner(test_settings, session_factory, registry)

    runner.run("gen", PipelineRequest(TaskKind.GENERATE, {"count": 1000, "format": "csv", "seed": 3}))

    percents = [snapshot.percent_complete for snapshot in registry.history]
    assert percents == sorted(percents)
    assert registry.history[-1].status is TaskStatus.COMPLETED
    assert percents[-1] == 100
    running = [snapshot for snapshot in registry.history if snapshot.status is TaskStatus.RUNNING]
    assert len(running) <= 102


def test_ingest_failure_keeps_only_committed_batches(test_settings, session_factory, temp_workspace: Path) -> None:
    settings = replace(test_settings, ingest_batch_size=2)
    runner = PipelineRunner(settings, session_factory, ProgressRegistry())
    rows = [[str(index), "Ada", "Lovelace", "2004-05-06", "Class1", "60"] for index in range(1, 8)]
    rows[4][5] = "not-a-number"
    staged = write_csv(Path(settings.upload_dir) / "bad.csv", rows)

    runner.run("ingest", PipelineRequest(TaskKind.INGEST, staged_input=staged))

    snapshot = runner.registry.lookup("ingest")
    assert snapshot.status is TaskStatus.FAILED
    assert snapshot.error_detail.startswith("Upload failed: row 5: score")
    assert snapshot.result_location is None
    assert [student.student_id for student in stored_students(runner)] == [1, 2, 3, 4]
    assert not staged.exists()


def test_ingest_failure_with_large_batches_stores_nothing(runner: PipelineRunner, test_settings) -> None:
    rows = [[str(index), "Ada", "Lovelace", "2004-05-06", "Class1", "60"] for index in range(1, 8)]
    rows[4][5] = "oops"
    staged = write_csv(Path(test_settings.upload_dir) / "bad.csv", rows)

    runner.run("ingest", PipelineRequest(TaskKind.INGEST, staged_input=staged))

    assert runner.registry.lookup("ingest").status is TaskStatus.FAILED
    assert stored_students(runner) == []


def test_duplicate_student_ids_fail_ingest(runner: PipelineRunner, test_settings) -> None:
    rows = [["1", "Ada", "Lovelace", "2004-05-06", "Class1", "60"], ["1", "Bob", "Smith", "2004-05-06", "Class1", "61"]]
    staged = write_csv(Path(test_settings.upload_dir) / "dupes.csv", rows)

    runner.run("ingest", PipelineRequest(TaskKind.INGEST, staged_input=staged))

    snapshot = runner.registry.lookup("ingest")
    assert snapshot.status is TaskStatus.FAILED
    assert "Upload failed" in snapshot.error_detail
    assert stored_students(runner) == []


def test_failed_conversion_removes_partial_output(runner: PipelineRunner, test_settings) -> None:
    upload_dir = Path(test_settings.upload_dir)
    generated_path = generate(runner, "gen", 10)
    workbook = load_workbook(generated_path)
    workbook.active["F4"] = "abc"
    staged = upload_dir / "broken.xlsx"
    workbook.save(staged)

    runner.run("convert", PipelineRequest(TaskKind.CONVERT, staged_input=staged))

    snapshot = runner.registry.lookup("convert")
    assert snapshot.status is TaskStatus.FAILED
    assert snapshot.error_detail.startswith("Processing failed:")
    assert list(Path(test_settings.storage_dir).glob("*.csv")) == []
    assert not staged.exists()


def test_unreadable_spreadsheet_fails_cleanly(runner: PipelineRunner, test_settings) -> None:
    staged = Path(test_settings.upload_dir) / "garbage.xlsx"
    staged.write_bytes(b"this is not a workbook")

    runner.run("convert", PipelineRequest(TaskKind.CONVERT, staged_input=staged))

    assert runner.registry.lookup("convert").status is TaskStatus.FAILED
    assert not staged.exists()


def test_full_export_formats(runner: PipelineRunner, test_settings) -> None:
    csv_path = generate(runner, "gen", 45, format="csv")
    runner.run("ingest", PipelineRequest(TaskKind.INGEST, staged_input=stage(csv_path, Path(test_settings.upload_dir), "x.csv")))

    for fmt in ("xlsx", "csv", "pdf"):
        runner.run(f"export-{fmt}", PipelineRequest(TaskKind.EXPORT, {"format": fmt}))
        snapshot = runner.registry.lookup(f"export-{fmt}")
        assert snapshot.status is TaskStatus.COMPLETED, snapshot.error_detail
        assert snapshot.current_units == 45
        assert re.fullmatch(rf"all_students_\d+\.{fmt}", Path(snapshot.result_location).name)

    xlsx_rows = read_xlsx_rows(Path(runner.registry.lookup("export-xlsx").result_location))
    assert len(xlsx_rows) == 46


def test_generation_clamps_to_spreadsheet_limit(runner: PipelineRunner, monkeypatch) -> None:
    monkeypatch.setitem(MAX_ROWS_BY_FORMAT, "xlsx", 12)

    path = generate(runner, "gen", 500)

    assert runner.registry.lookup("gen").current_units == 12
    assert len(read_xlsx_rows(path)) == 13

def test_ingest_rejects_fractional_scores(runner: PipelineRunner, test_settings) -> None:
    staged = write_csv(
        Path(test_settings.upload_dir) / "fraction.csv",
        [["1", "Ada", "Lovelace", "2004-05-06", "Class1", "61.9"]],
    )

    runner.run("ingest", PipelineRequest(TaskKind.INGEST, staged_input=staged))

    snapshot = runner.registry.lookup("ingest")
    assert snapshot.status is TaskStatus.FAILED
    assert snapshot.error_detail.startswith("Upload failed: row 1: score")
    assert stored_students(runner) == []


@pytest.mark.parametrize("estimate", [DEFAULT_ESTIMATED_ROWS, 1000])
def test_convert_progress_with_estimated_total(test_settings, session_factory, monkeypatch, estimate: int) -> None:
    registry = RecordingRegistry()
    runner = PipelineRunner(test_settings, session_factory, registry)
    generated_path = generate(runner, "gen", 4500)
    registry.history.clear()
    monkeypatch.setattr(XlsxRowSource, "estimated_data_rows", property(lambda source: estimate))

    staged = stage(generated_path, Path(test_settings.upload_dir), "big.xlsx")
    runner.run("convert", PipelineRequest(TaskKind.CONVERT, staged_input=staged))

    running = [snapshot for snapshot in registry.history if snapshot.status is TaskStatus.RUNNING]
    percents = [snapshot.percent_complete for snapshot in running]
    assert percents == sorted(percents)
    assert all(percent <= 100 for percent in percents)
    assert all(snapshot.current_units % 2000 == 0 for snapshot in running)
    assert [snapshot.current_units for snapshot in running if snapshot.current_units] == [2000, 4000]

    completed = registry.history[-1]
    assert completed.status is TaskStatus.COMPLETED
    assert completed.current_units == completed.total_units == 4500
    assert completed.percent_complete == 100
