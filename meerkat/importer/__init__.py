"""CSV and VCF contact import."""

from .api import ImportAPI
from .models import (
    ColumnMapping,
    DuplicateMatch,
    ImportResult,
    ImportSession,
    PreviewResponse,
    RowImportAction,
    RowPreview,
    UploadResponse,
)
from .service import ImportService
from .sessions import ImportSessions, MemoryImportSessions

__all__ = [
    "ColumnMapping",
    "DuplicateMatch",
    "ImportAPI",
    "ImportResult",
    "ImportService",
    "ImportSession",
    "ImportSessions",
    "MemoryImportSessions",
    "PreviewResponse",
    "RowImportAction",
    "RowPreview",
    "UploadResponse",
]
