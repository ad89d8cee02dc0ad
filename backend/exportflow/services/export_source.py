"""Source-side export capability.

``ExportSource`` is the narrow interface the pipeline depends on; the DynamoDB
implementation drives incremental point-in-time exports into S3.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import boto3
from botocore.exceptions import ClientError

from exportflow.core.clock import as_utc
from exportflow.core.errors import ExportFailed, ExportRejected
from exportflow.models import ExportStatus

logger = logging.getLogger("exportflow.export_source")

_REJECTION_CODES = {
    "ExportConflictException",
    "LimitExceededException",
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
}

_DYNAMO_STATUS = {
    "IN_PROGRESS": ExportStatus.RUNNING.value,
    "COMPLETED": ExportStatus.SUCCEEDED.value,
    "FAILED": ExportStatus.FAILED.value,
}


@dataclass(frozen=True)
class ExportStatusReport:
    status: str
    output_location: str | None = None
    expected_file_count: int | None = None
    failure_message: str | None = None


class ExportSource(Protocol):
    async def start_export(
        self,
        table_id: str,
        window_start: datetime,
        window_end: datetime,
        *,
        attempt: int = 0,
    ) -> str: ...

    async def get_export_status(self, job_id: str) -> ExportStatusReport: ...


def export_client_token(
    table_id: str, window_start: datetime, window_end: datetime, attempt: int = 0
) -> str:
    """Stable per (table, window, attempt) so a repeated start is deduplicated by the source.

    ``attempt`` counts earlier FAILED exports of the window; bumping it is how a
    failed window gets a fresh export instead of the cached failed one.
    """
    name = f"{table_id}|{as_utc(window_start).isoformat()}|{as_utc(window_end).isoformat()}|{int(attempt)}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, name))


def _client_error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class DynamoDBExportSource:
    def __init__(
        self,
        *,
        bucket: str,
        prefix: str = "exports",
        region_name: str | None = None,
        client: Any | None = None,
        export_format: str = "DYNAMODB_JSON",
        view_type: str = "NEW_AND_OLD_IMAGES",
    ) -> None:
        if not bucket:
            raise ValueError("bucket is required")
        self.bucket = bucket
        self.prefix = (prefix or "").strip("/")
        self.export_format = export_format
        self.view_type = view_type
        self._client = client or boto3.client("dynamodb", region_name=region_name)
        self._table_arns: dict[str, str] = {}

    def _table_arn(self, table_id: str) -> str:
        if table_id.startswith("arn:"):
            return table_id
        cached = self._table_arns.get(table_id)
        if cached:
            return cached
        resp = self._client.describe_table(TableName=table_id)
        arn = str(resp["Table"]["TableArn"])
        self._table_arns[table_id] = arn
        return arn

    def _start_sync(
        self, table_id: str, window_start: datetime, window_end: datetime, attempt: int
    ) -> str:
        table_arn = self._table_arn(table_id)
        kwargs: dict[str, Any] = {
            "TableArn": table_arn,
            "ClientToken": export_client_token(table_id, window_start, window_end, attempt),
            "S3Bucket": self.bucket,
            "ExportFormat": self.export_format,
            "ExportType": "INCREMENTAL_EXPORT",
            "IncrementalExportSpecification": {
                "ExportFromTime": as_utc(window_start),
                "ExportToTime": as_utc(window_end),
                "ExportViewType": self.view_type,
            },
        }
        if self.prefix:
            kwargs["S3Prefix"] = self.prefix

        try:
            resp = self._client.export_table_to_point_in_time(**kwargs)
        except ClientError as exc:
            code = _client_error_code(exc)
            if code in _REJECTION_CODES:
                raise ExportRejected(
                    f"Source rejected export: {code}",
                    table_id=table_id,
                    error_code=code,
                ) from exc
            raise ExportFailed(
                f"Source could not start export: {code or exc}",
                table_id=table_id,
                error_code=code or None,
            ) from exc

        return str(resp["ExportDescription"]["ExportArn"])

    async def start_export(
        self,
        table_id: str,
        window_start: datetime,
        window_end: datetime,
        *,
        attempt: int = 0,
    ) -> str:
        job_id = await asyncio.to_thread(
            self._start_sync, table_id, window_start, window_end, int(attempt)
        )
        logger.info(
            "source_export_started",
            extra={
                "table_id": table_id,
                "job_id": job_id,
                "attempt": attempt,
                "window_start": as_utc(window_start).isoformat(),
                "window_end": as_utc(window_end).isoformat(),
            },
        )
        return job_id

    def _describe_sync(self, job_id: str) -> ExportStatusReport:
        resp = self._client.describe_export(ExportArn=job_id)
        desc = resp.get("ExportDescription") or {}
        raw_status = str(desc.get("ExportStatus") or "")
        status = _DYNAMO_STATUS.get(raw_status, ExportStatus.RUNNING.value)

        if status == ExportStatus.SUCCEEDED.value:
            manifest_key = str(desc.get("ExportManifest") or "")
            bucket = str(desc.get("S3Bucket") or self.bucket)
            # Data files live beside the manifest-summary.json the source points at.
            output_dir = posixpath.dirname(manifest_key)
            return ExportStatusReport(
                status=status,
                output_location=f"s3://{bucket}/{output_dir}",
            )

        if status == ExportStatus.FAILED.value:
            code = desc.get("FailureCode")
            message = desc.get("FailureMessage") or "export failed"
            return ExportStatusReport(
                status=status,
                failure_message=f"{code}: {message}" if code else str(message),
            )

        return ExportStatusReport(status=status)

    async def get_export_status(self, job_id: str) -> ExportStatusReport:
        return await asyncio.to_thread(self._describe_sync, job_id)
