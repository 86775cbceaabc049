from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    storage_dir: str
    upload_dir: str
    max_workers: int
    ingest_batch_size: int
    export_page_size: int
    convert_score_offset: int
    ingest_score_offset: int
    progress_every_rows: int
    max_batch_retries: int
    retry_backoff_seconds: float
    task_ttl_seconds: float
    eviction_interval_seconds: float


def get_settings() -> Settings:
    storage_dir = os.getenv("STORAGE_DIR", "./storage")
    return Settings(
        app_name=os.getenv("APP_NAME", "studentflow"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./students.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        storage_dir=storage_dir,
        upload_dir=os.getenv("UPLOAD_DIR", os.path.join(storage_dir, "uploads")),
        max_workers=int(os.getenv("MAX_WORKERS", "4")),
        ingest_batch_size=int(os.getenv("INGEST_BATCH_SIZE", "1000")),
        export_page_size=int(os.getenv("EXPORT_PAGE_SIZE", "10000")),
        convert_score_offset=int(os.getenv("CONVERT_SCORE_OFFSET", "10")),
        ingest_score_offset=int(os.getenv("INGEST_SCORE_OFFSET", "5")),
        progress_every_rows=int(os.getenv("PROGRESS_EVERY_ROWS", "0")),
        max_batch_retries=int(os.getenv("MAX_BATCH_RETRIES", "2")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "1")),
        task_ttl_seconds=float(os.getenv("TASK_TTL_SECONDS", "3600")),
        eviction_interval_seconds=float(os.getenv("EVICTION_INTERVAL_SECONDS", "300")),
    )
