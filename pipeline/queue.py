"""
In-memory processing queue.

ProcessingQueue keeps the uploaded documents in insertion order and drives
them through the lifecycle

    pending -> processing -> completed | error
    completed -> exported | error

A single worker task consumes item ids from an asyncio.Queue, so at most one
extraction is in flight at any time. Exports run sequentially, one awaited
submission after the other.

The actual work is delegated to a backend (see pipeline.backends): the
in-process LocalBackend or the HTTP ApiClient. Any exception a backend raises
ends up as a readable message on the item; it never stops the worker or
affects sibling items.

Nothing is persisted: the queue lives and dies with the event loop.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from models.credentials import ApiKeys
from models.purchase_order import PurchaseOrder
from models.queue import (
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_EXPORTED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    TRANSITIONS,
    ExportSummary,
    PdfFile,
    QueueItem,
)
from .backends import QueueBackend
from .errors import InvalidTransition

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class ProcessingQueue:
    """
    Ordered collection of QueueItems plus the worker that extracts them.

    Must be used from inside a running event loop; the worker task is
    started lazily by the first enqueue().
    """

    def __init__(self, backend: QueueBackend, timeout: Optional[float] = None):
        self.backend = backend
        self.timeout = timeout or None      # 0 / None: wait indefinitely
        self.selected_id: Optional[str] = None

        self._items: dict[str, QueueItem] = {}
        self._pending: asyncio.Queue[str] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._exporting: set[str] = set()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def items(self) -> list[QueueItem]:
        """All items in insertion order."""
        return list(self._items.values())

    def get(self, item_id: str) -> QueueItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise KeyError(f"No queue item with id {item_id!r}") from None

    @property
    def selected(self) -> Optional[QueueItem]:
        if self.selected_id is None:
            return None
        return self._items.get(self.selected_id)

    def counts(self) -> dict[str, int]:
        """Number of items per status."""
        result = {status: 0 for status in TRANSITIONS}
        for item in self._items.values():
            result[item.status] += 1
        return result

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def enqueue(self, files: Iterable[PdfFile]) -> list[QueueItem]:
        """Append one pending item per file and make sure the worker runs."""
        added = []
        for pdf in files:
            item = QueueItem(file=pdf)
            self._items[item.id] = item
            self._pending.put_nowait(item.id)
            added.append(item)
            logger.info("Queued %s (id=%s)", pdf.name, item.id)
        if added:
            self._ensure_worker()
        return added

    def remove(self, item_id: str) -> bool:
        """
        Drop an item whatever its status. Returns False if it was unknown.
        A result that arrives later for a removed item is discarded.
        """
        item = self._items.pop(item_id, None)
        if item is None:
            return False
        if self.selected_id == item_id:
            self.selected_id = None
        logger.info("Removed %s (id=%s, status=%s)", item.file_name, item_id, item.status)
        return True

    def select(self, item_id: Optional[str]) -> Optional[QueueItem]:
        """Select an item for review; None clears the selection."""
        if item_id is None:
            self.selected_id = None
            return None
        item = self.get(item_id)
        self.selected_id = item_id
        return item

    def update_order(self, item_id: str, order: PurchaseOrder) -> QueueItem:
        """Replace the item's purchase order wholesale (review form save)."""
        item = self.get(item_id)
        if item.extracted_data is None:
            raise InvalidTransition(
                f"Item {item_id} ({item.status}) has no extracted data to update"
            )
        item.extracted_data = item.extracted_data.model_copy(update={"purchase_order": order})
        logger.debug("Purchase order updated for %s", item.file_name)
        return item

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_item(self, item_id: str, credentials: Optional[ApiKeys] = None) -> QueueItem:
        """
        Submit one completed item. On success the item becomes exported;
        on failure it becomes error with "Export failed: <reason>".

        An item already being submitted cannot be exported again until that
        submission settles. If the item is removed meanwhile, the outcome is
        discarded and the item keeps its status.
        """
        item = self.get(item_id)
        if item_id in self._exporting:
            raise InvalidTransition(f"Item {item_id} is already being exported")
        if item.status != STATUS_COMPLETED or item.extracted_data is None:
            raise InvalidTransition(f"Item {item_id} is {item.status}; only completed items can be exported")

        order = item.extracted_data.purchase_order
        self._exporting.add(item_id)
        try:
            await self.backend.submit_order(order, credentials)
        except Exception as e:
            if self._items.get(item_id) is not item:
                logger.info("Discarding export failure for removed item %s: %s", item_id, _describe(e))
                return item
            logger.error("Export failed for %s: %s", item.file_name, e)
            self._transition(item, STATUS_ERROR, error=f"Export failed: {_describe(e)}")
        else:
            if self._items.get(item_id) is not item:
                logger.info("Discarding export result for removed item %s", item_id)
                return item
            self._transition(item, STATUS_EXPORTED, exported_at=_now(), error=None)
            logger.info("Exported %s to Fortnox", item.file_name)
        finally:
            self._exporting.discard(item_id)
        return item

    async def export_all(self, credentials: Optional[ApiKeys] = None) -> ExportSummary:
        """
        Export every completed item in queue order, one at a time.
        With nothing completed this is a no-op returning an empty summary.
        """
        summary = ExportSummary()
        candidates = [i.id for i in self._items.values() if i.status == STATUS_COMPLETED]
        if not candidates:
            logger.info("Nothing to export")
            return summary

        logger.info("Exporting %d completed item(s)", len(candidates))
        for item_id in candidates:
            item = self._items.get(item_id)
            if item is None or item.status != STATUS_COMPLETED or item_id in self._exporting:
                continue
            await self.export_item(item_id, credentials)
            if self._items.get(item_id) is not item:
                continue
            summary = summary.record(item)

        logger.info("Export finished: %d exported, %d failed", summary.exported, summary.failed)
        return summary

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    async def wait_until_idle(self) -> None:
        """Return once every queued item has been taken through extraction."""
        await self._pending.join()

    async def close(self) -> None:
        """Cancel the worker. Pending items stay pending."""
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            loop = asyncio.get_running_loop()
            self._worker = loop.create_task(self._run(), name="extraction-worker")

    async def _run(self) -> None:
        while True:
            item_id = await self._pending.get()
            try:
                await self._process(item_id)
            finally:
                self._pending.task_done()

    async def _process(self, item_id: str) -> None:
        item = self._items.get(item_id)
        if item is None or item.status != STATUS_PENDING:
            logger.debug("Skipping %s: removed before processing", item_id)
            return

        self._transition(item, STATUS_PROCESSING)
        logger.info("Processing %s", item.file_name)
        try:
            data = await self._extract(item.file)
        except Exception as e:
            message = _describe(e)
            if self._items.get(item_id) is not item:
                logger.info("Discarding failure for removed item %s: %s", item_id, message)
                return
            logger.error("Extraction failed for %s: %s", item.file_name, message)
            self._transition(item, STATUS_ERROR, error=message)
            return

        if self._items.get(item_id) is not item:
            logger.info("Discarding result for removed item %s", item_id)
            return
        self._transition(item, STATUS_COMPLETED, extracted_data=data, processed_at=_now())
        if item.low_confidence:
            logger.warning(
                "Low extraction confidence for %s (%.2f); review carefully",
                item.file_name, data.confidence,
            )

    async def _extract(self, pdf: PdfFile):
        if self.timeout is None:
            return await self.backend.extract(pdf)
        try:
            return await asyncio.wait_for(self.backend.extract(pdf), self.timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Extraction timed out after {self.timeout:g} seconds") from None

    @staticmethod
    def _transition(item: QueueItem, status: str, **changes) -> None:
        if status not in TRANSITIONS[item.status]:
            raise InvalidTransition(f"Item {item.id}: {item.status} -> {status} is not allowed")
        item.status = status
        for field_name, value in changes.items():
            setattr(item, field_name, value)
