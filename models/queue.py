import uuid
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .purchase_order import ExtractedData


QueueItemStatus = Literal["pending", "processing", "completed", "error", "exported"]

STATUS_PENDING    = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED  = "completed"
STATUS_ERROR      = "error"
STATUS_EXPORTED   = "exported"

# Allowed status edges. exported and error are terminal.
TRANSITIONS: dict[str, set[str]] = {
    STATUS_PENDING:    {STATUS_PROCESSING},
    STATUS_PROCESSING: {STATUS_COMPLETED, STATUS_ERROR},
    STATUS_COMPLETED:  {STATUS_EXPORTED, STATUS_ERROR},
    STATUS_ERROR:      set(),
    STATUS_EXPORTED:   set(),
}

LOW_CONFIDENCE_THRESHOLD = 0.8


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class PdfFile(BaseModel):
    """Raw bytes of an uploaded PDF together with its original filename."""
    name: str
    content: bytes


class QueueItem(BaseModel):
    """One uploaded document tracked through the extraction/export lifecycle."""
    id: str = Field(default_factory=_new_id)
    file: PdfFile
    status: QueueItemStatus = STATUS_PENDING
    extracted_data: Optional[ExtractedData] = None
    error: Optional[str] = None
    added_at: datetime = Field(default_factory=_now)
    processed_at: Optional[datetime] = None
    exported_at: Optional[datetime] = None

    @property
    def file_name(self) -> str:
        return self.file.name

    @property
    def low_confidence(self) -> bool:
        return (
            self.extracted_data is not None
            and self.extracted_data.confidence < LOW_CONFIDENCE_THRESHOLD
        )

    def summary(self) -> str:
        """Short one-line description for queue listings."""
        if self.extracted_data is None:
            return ""
        order = self.extracted_data.purchase_order
        n = len(order.rows)
        return f"{order.supplier_name or 'Unknown supplier'} • {n} row{'s' if n != 1 else ''}"


class ExportSummary(BaseModel):
    """
    Aggregate outcome of exporting every completed item.
    Immutable in use: record() returns a new summary.
    """
    exported: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.exported + self.failed

    @property
    def nothing_to_export(self) -> bool:
        return self.attempted == 0

    def record(self, item: QueueItem) -> "ExportSummary":
        """Fold one finished export attempt into a new summary."""
        if item.status == STATUS_EXPORTED:
            return self.model_copy(update={"exported": self.exported + 1})
        return self.model_copy(update={
            "failed": self.failed + 1,
            "errors": [*self.errors, f"{item.file_name}: {item.error}"],
        })
