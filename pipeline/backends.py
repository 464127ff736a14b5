"""
Backends the ProcessingQueue delegates work to.

A backend extracts one uploaded PDF and submits one purchase order. The
LocalBackend does both in-process; pipeline.api_client.ApiClient does them
over HTTP against a running server.
"""
import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional, Protocol

from models.credentials import ApiKeys
from models.purchase_order import ExtractedData, PurchaseOrder
from models.queue import PdfFile
from .extraction import ExtractionClient
from .fortnox import FortnoxGateway

logger = logging.getLogger(__name__)


class QueueBackend(Protocol):

    async def extract(self, pdf: PdfFile) -> ExtractedData: ...

    async def submit_order(self, order: PurchaseOrder, credentials: Optional[ApiKeys] = None) -> dict: ...


class LocalBackend:
    """
    Runs the extraction client and the Fortnox gateway in worker threads so
    their blocking I/O stays off the event loop.
    """

    def __init__(self, extraction_client: ExtractionClient, gateway: FortnoxGateway, upload_dir: Path):
        self.extraction_client = extraction_client
        self.gateway = gateway
        self.upload_dir = Path(upload_dir)

    async def extract(self, pdf: PdfFile) -> ExtractedData:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        # Random name: the extraction client deletes the file when done.
        path = self.upload_dir / f"{uuid.uuid4().hex}.pdf"
        path.write_bytes(pdf.content)
        logger.debug("Stored %s as %s", pdf.name, path.name)
        return await asyncio.to_thread(self.extraction_client.extract, path)

    async def submit_order(self, order: PurchaseOrder, credentials: Optional[ApiKeys] = None) -> dict:
        access_token = credentials.fortnox_access_token if credentials else None
        client_secret = credentials.fortnox_client_secret if credentials else None
        return await asyncio.to_thread(
            self.gateway.create_purchase_order,
            order,
            access_token or None,
            client_secret or None,
        )
