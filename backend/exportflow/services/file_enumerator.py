from __future__ import annotations

import asyncio
import json
import logging
import posixpath

from exportflow import models
from exportflow.core.errors import IncompleteExport
from exportflow.services.blob_store import BlobStore
from exportflow.services.export_job_service import ExportJobSnapshot
from exportflow.services.ledger import TrackingLedger

logger = logging.getLogger("exportflow.file_enumerator")

MANIFEST_FILES_NAME = "manifest-files.json"
_CONTROL_NAMES = {"_started", "manifest-summary.json", MANIFEST_FILES_NAME}
_CONTROL_SUFFIXES = (".md5", ".tmp")


def _basename(location: str) -> str:
    return posixpath.basename(location.rstrip("/"))


def is_control_object(location: str) -> bool:
    name = _basename(location)
    return name in _CONTROL_NAMES or name.endswith(_CONTROL_SUFFIXES)


def _matches(location: str, key: str) -> bool:
    key = key.lstrip("/")
    return location == key or location.endswith("/" + key)


def parse_manifest_keys(raw: bytes) -> list[str]:
    """Data file keys from a newline-delimited ``manifest-files.json``."""
    keys: list[str] = []
    for lineno, line in enumerate(raw.decode("utf-8").splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
            keys.append(str(entry["dataFileS3Key"]))
        except (ValueError, KeyError, TypeError) as exc:
            raise IncompleteExport(
                f"Unreadable manifest entry on line {lineno}",
                line=lineno,
            ) from exc
    return keys


class FileEnumerator:
    def __init__(
        self,
        store: BlobStore,
        ledger: TrackingLedger | None = None,
        *,
        require_manifest: bool = True,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.require_manifest = require_manifest

    async def enumerate(self, job: ExportJobSnapshot) -> list[str]:
        """Data file locations of a SUCCEEDED export, sorted.

        Raises IncompleteExport when the listing is empty or disagrees with the
        manifest or the job's expected file count.
        """
        context = {
            "job_id": job.job_id,
            "table_id": job.table_id,
            "window_start": job.window_start.isoformat(),
            "window_end": job.window_end.isoformat(),
        }
        if job.status != models.ExportStatus.SUCCEEDED.value or not job.output_location:
            raise IncompleteExport(
                "Export has not produced an output location",
                status=job.status,
                **context,
            )

        listing = await self.store.list_objects(job.output_location)
        data_files = sorted(loc for loc in listing if not is_control_object(loc))
        manifest = next((loc for loc in listing if _basename(loc) == MANIFEST_FILES_NAME), None)

        if not data_files:
            raise IncompleteExport(
                "Export output listing is empty",
                output_location=job.output_location,
                **context,
            )

        if manifest is not None:
            keys = parse_manifest_keys(await self.store.read_bytes(manifest))
            missing = [k for k in keys if not any(_matches(loc, k) for loc in data_files)]
            unexpected = [loc for loc in data_files if not any(_matches(loc, k) for k in keys)]
            if missing or unexpected:
                raise IncompleteExport(
                    "Export listing does not match its manifest",
                    missing=missing[:20] or None,
                    unexpected=unexpected[:20] or None,
                    manifest_count=len(keys),
                    listed_count=len(data_files),
                    **context,
                )
        elif self.require_manifest:
            raise IncompleteExport(
                "Export manifest is missing",
                output_location=job.output_location,
                **context,
            )

        if job.expected_file_count is not None and job.expected_file_count != len(data_files):
            raise IncompleteExport(
                "Export listing does not match the expected file count",
                expected_file_count=job.expected_file_count,
                listed_count=len(data_files),
                **context,
            )

        logger.info(
            "export_enumerated",
            extra={"job_id": job.job_id, "files": len(data_files), "manifest": manifest is not None},
        )
        return data_files

    async def seed(self, job: ExportJobSnapshot, ledger: TrackingLedger | None = None) -> int:
        ledger = ledger or self.ledger
        if ledger is None:
            raise ValueError("a ledger is required to seed")
        locations = await self.enumerate(job)
        return await asyncio.to_thread(ledger.initialize, job.job_id, locations)
