"""Error taxonomy for the export pipeline.

Every error carries a stable ``code``, a ``retryable`` flag and a ``context``
dict with whatever identifies the failing unit (job_id, window, file ids), so
a terminal report always has enough detail to resume or remediate.
"""

from __future__ import annotations

from typing import Any


class ExportPipelineError(Exception):
    code = "export_pipeline_error"
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": dict(self.context),
        }


class ExportRejected(ExportPipelineError):
    """The source refused to start an export (e.g. an overlapping export is running)."""

    code = "export_rejected"
    retryable = True


class ExportTimedOut(ExportPipelineError):
    """Polling gave up; the export may still be running and can be re-polled by job_id."""

    code = "export_timed_out"
    retryable = True


class ExportFailed(ExportPipelineError):
    code = "export_failed"


class IncompleteExport(ExportPipelineError):
    """Listing of a finished export is empty or disagrees with its manifest."""

    code = "incomplete_export"


class LedgerUnavailable(ExportPipelineError):
    code = "ledger_unavailable"
    retryable = True


class TransformFailure(ExportPipelineError):
    code = "transform_failure"
    retryable = True


class RetryLimitExceeded(ExportPipelineError):
    code = "retry_limit_exceeded"

    def __init__(self, message: str, *, failed_files: list[dict[str, Any]], **context: Any) -> None:
        super().__init__(message, **context)
        self.failed_files = list(failed_files)
        self.context["failed_file_ids"] = [f["file_id"] for f in self.failed_files]


class InvalidTransition(ExportPipelineError, ValueError):
    code = "invalid_transition"


class InvalidWindow(ExportPipelineError, ValueError):
    code = "invalid_window"


class ExportJobNotFound(ExportPipelineError, LookupError):
    code = "export_job_not_found"


class FileRecordNotFound(ExportPipelineError, LookupError):
    code = "file_record_not_found"
