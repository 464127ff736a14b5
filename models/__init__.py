from .purchase_order import ExtractedData, PurchaseOrder, PurchaseOrderRow
from .queue import ExportSummary, PdfFile, QueueItem, QueueItemStatus
from .credentials import ApiKeys, TokenResponse

__all__ = [
    "ExtractedData", "PurchaseOrder", "PurchaseOrderRow",
    "ExportSummary", "PdfFile", "QueueItem", "QueueItemStatus",
    "ApiKeys", "TokenResponse",
]
