from exportflow.models.domain import (
    TERMINAL_EXPORT_STATUSES,
    ExportJob,
    ExportStatus,
    FileRecord,
    FileStatus,
    PipelineRun,
    PipelineStage,
)

__all__ = [
    "TERMINAL_EXPORT_STATUSES",
    "ExportJob",
    "ExportStatus",
    "FileRecord",
    "FileStatus",
    "PipelineRun",
    "PipelineStage",
]
