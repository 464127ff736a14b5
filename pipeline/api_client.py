"""
HTTP backend for the ProcessingQueue.

Talks to a running server (server/app.py) instead of calling the extraction
model and Fortnox in-process. Useful when the CLI runs on a different machine
than the one holding the LLM key and poppler.
"""
import logging
from typing import Any, Optional

import httpx

from models.credentials import ApiKeys, TokenResponse
from models.purchase_order import ExtractedData, PurchaseOrder
from models.queue import PdfFile
from .errors import DependencyError, ParseError, UpstreamRejection

logger = logging.getLogger(__name__)

ACCESS_TOKEN_HEADER  = "X-Fortnox-Access-Token"
CLIENT_SECRET_HEADER = "X-Fortnox-Client-Secret"


class ApiClient:
    """
    Async client for the purchase order extractor's HTTP surface.

    A fresh httpx.AsyncClient is opened per call. *transport* is handed to
    it unchanged (tests pass an httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def health(self) -> dict:
        return await self._request("GET", "/api/health")

    async def extract(self, pdf: PdfFile) -> ExtractedData:
        data = await self._request(
            "POST",
            "/api/extract",
            files={"pdf": (pdf.name, pdf.content, "application/pdf")},
        )
        return ExtractedData.model_validate(data)

    async def submit_order(self, order: PurchaseOrder, credentials: Optional[ApiKeys] = None) -> dict:
        headers = {}
        if credentials is not None:
            if credentials.fortnox_access_token:
                headers[ACCESS_TOKEN_HEADER] = credentials.fortnox_access_token
            if credentials.fortnox_client_secret:
                headers[CLIENT_SECRET_HEADER] = credentials.fortnox_client_secret
        return await self._request(
            "POST",
            "/api/fortnox/purchase-order",
            json=order.to_api_dict(),
            headers=headers,
        )

    async def exchange_token(
        self,
        code: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
    ) -> TokenResponse:
        data = await self._request(
            "POST",
            "/api/fortnox/oauth/token",
            json={
                "code":         code,
                "clientId":     client_id,
                "clientSecret": client_secret,
                "redirectUri":  redirect_uri,
            },
        )
        return TokenResponse.model_validate(data)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = self.base_url + path
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, url, e)
            raise DependencyError(f"Could not reach {self.base_url}: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.is_error:
            message = None
            if isinstance(payload, dict):
                message = payload.get("details") or payload.get("error")
            message = message or f"HTTP {response.status_code} from {path}"
            logger.error("%s %s -> HTTP %d: %s", method, path, response.status_code, message)
            raise UpstreamRejection(str(message), status_code=response.status_code, payload=payload)

        if payload is None:
            raise ParseError(f"Response from {path} is not JSON")
        return payload
