import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = Field(default="Export Pipeline API", validation_alias="PROJECT_NAME")
    environment: str = Field(default="dev")
    build_version: Optional[str] = Field(default=None)
    database_url: str = Field(default="sqlite+pysqlite:///./exportflow.db")
    # API prefix used by FastAPI router include (e.g. "/api/v1").
    api_prefix: str = Field(default="", validation_alias="API_V1_STR")
    enable_docs: Optional[bool] = Field(default=None)
    run_migrations_on_start: bool = Field(default=False)

    # Source export capability (point-in-time exports land in this bucket/prefix).
    aws_region: Optional[str] = Field(default=None)
    export_bucket: str = Field(default="")
    export_prefix: str = Field(default="exports")
    export_poll_interval_seconds: float = Field(default=30.0, gt=0)
    export_timeout_seconds: float = Field(default=6 * 3600.0, gt=0)
    export_require_manifest: bool = Field(default=True)

    # Dispatch / ledger.
    dispatch_max_concurrency: int = Field(default=4, ge=1)
    dispatch_max_retries: int = Field(default=3, ge=1)
    dispatch_idle_poll_seconds: float = Field(default=5.0, gt=0)
    lease_seconds: float = Field(default=15 * 60.0, gt=0)
    worker_timeout_seconds: float = Field(default=10 * 60.0, gt=0)
    ledger_retry_attempts: int = Field(default=3, ge=1)
    ledger_retry_delay_seconds: float = Field(default=1.0, ge=0)

    # Destination store for transformed files.
    destination_backend: Literal["local", "s3"] = Field(default="local")
    destination_dir: str = Field(default="storage")
    destination_bucket: str = Field(default="")
    destination_prefix: str = Field(default="analytics")

    # Incremental windows.
    incremental_window_minutes: int = Field(default=60, ge=1)
    incremental_start: Optional[datetime] = Field(default=None)

    @field_validator("enable_docs", mode="before")
    @classmethod
    def parse_enable_docs(cls, value):
        if value is None or value == "":
            return None
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "y", "on"}
        return bool(value)

    @field_validator("api_prefix", mode="before")
    @classmethod
    def normalize_api_prefix(cls, v) -> str:
        if v is None:
            return ""
        s = str(v).strip()
        if not s:
            return ""
        if s.startswith("/"):
            return s.rstrip("/") or ""
        return "/" + s.rstrip("/")

    @field_validator("incremental_start")
    @classmethod
    def incremental_start_is_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator("database_url", mode="before")
    @classmethod
    def normalize_database_url(cls, v) -> str:
        """Make SQLite relative paths stable across working directories.

        Relative SQLite URLs such as ``sqlite+pysqlite:///./exportflow.db`` are
        resolved against the backend folder. Postgres URLs are pointed at psycopg3.
        """
        if v is None:
            return v

        s = str(v).strip()
        if not s:
            return s

        if s.startswith("postgres://"):
            s = "postgresql://" + s[len("postgres://") :]
        if s.startswith("postgresql://"):
            return "postgresql+psycopg://" + s[len("postgresql://") :]
        if s.startswith("postgresql+psycopg2://"):
            return "postgresql+psycopg://" + s[len("postgresql+psycopg2://") :]

        if not s.startswith("sqlite"):
            return s

        marker = ":///"
        i = s.find(marker)
        if i == -1:
            return s

        path_part = s[i + len(marker) :]
        if not path_part or path_part.startswith("/") or re.match(r"^[A-Za-z]:/", path_part):
            return s

        if path_part.startswith("./") or path_part.startswith(".\\"):
            backend_root = Path(__file__).resolve().parents[1]
            abs_path = (backend_root / path_part[2:]).resolve().as_posix()
            return f"{s[: i + len(marker)]}{abs_path}"

        return s

    @model_validator(mode="after")
    def validate_runtime_limits(self):
        env = str(self.environment or "dev").strip().lower()
        if env in {"prod", "production"} and self.database_url.startswith("sqlite"):
            raise ValueError("SQLite DATABASE_URL is not allowed in production")

        # A worker that outlives its lease would race the reclaiming dispatcher.
        if self.worker_timeout_seconds >= self.lease_seconds:
            raise ValueError("WORKER_TIMEOUT_SECONDS must be lower than LEASE_SECONDS")

        if self.destination_backend == "s3" and not self.destination_bucket:
            raise ValueError("DESTINATION_BUCKET is required when DESTINATION_BACKEND=s3")

        if self.enable_docs is None:
            self.enable_docs = env in {"dev", "development", "test"}
        return self


settings = Settings()
