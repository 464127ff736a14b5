"""
Vision-model purchase order extraction.

Rasterizes page one of the PDF, sends the image to an OpenAI-compatible
chat-completions endpoint in JSON mode, and parses the reply into
ExtractedData (purchase order + confidence).

Works with any OpenAI-compatible backend that accepts image input:
  - OpenAI:        LLM_BASE_URL=https://api.openai.com/v1    OPENAI_API_KEY=sk-...
  - Azure OpenAI:  LLM_BASE_URL=https://<resource>.openai.azure.com/   LLM_API_KEY=<key>

One call, one outcome: there are no retries here. The uploaded PDF and the
intermediate PNG are always deleted before extract() returns or raises.
"""
import base64
import json
import logging
import re
from datetime import date
from pathlib import Path
from typing import Optional

import openai
from pydantic import ValidationError as SchemaError

from models.purchase_order import ExtractedData
from .errors import DependencyError, ParseError, UpstreamRejection
from .rasterizer import PdfRasterizer

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompt template
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """You are an expert at extracting data from purchase orders using OCR.
Analyse the image of the purchase order carefully and extract all relevant information.
Return the data in exactly this JSON format:

{{
  "purchaseOrder": {{
    "supplierNumber": "Supplier number",
    "supplierName": "Supplier name",
    "supplierAddress": "Supplier street address",
    "supplierCity": "Supplier city",
    "supplierPostCode": "Supplier postal code",
    "supplierCountryCode": "Country code (SE, NO, etc)",
    "supplierEmail": "Supplier e-mail",

    "deliveryName": "Delivery name / recipient",
    "deliveryAddress": "Delivery street address",
    "deliveryCity": "Delivery city",
    "deliveryZipCode": "Delivery postal code",
    "deliveryCountryCode": "Delivery country code",
    "deliveryDate": "Delivery date (YYYY-MM-DD)",

    "orderDate": "Order date (YYYY-MM-DD)",
    "currencyCode": "Currency code (SEK, EUR, USD, etc)",
    "currencyRate": 1.0,
    "paymentTermsCode": "Payment terms (e.g. 30, NET30)",

    "ourReference": "Our reference",
    "yourReference": "Your reference",
    "messageToSupplier": "Message to supplier",
    "note": "Internal note",

    "rows": [
      {{
        "itemId": "Article number / SKU (REQUIRED)",
        "itemDescription": "Article description",
        "orderedQuantity": 1,
        "itemUnit": "Unit (st, kg, m, etc)",
        "price": 100.00,
        "currencyCode": "Currency code (same as the order)"
      }}
    ]
  }},
  "confidence": 0.95
}}

IMPORTANT RULES:
- supplierNumber, deliveryName, deliveryAddress, deliveryCity, deliveryZipCode, orderDate, currencyCode, currencyRate and paymentTermsCode are REQUIRED
- For every row: itemId, orderedQuantity and currencyCode are REQUIRED
- If orderDate is missing, use today's date ({today})
- If currencyCode is missing, use "SEK"
- If currencyRate is missing, use 1.0
- If paymentTermsCode is missing, use "30" (30 days payment terms)
- If deliveryName is missing, use the same as supplierName
- If the delivery address is missing, use the supplier's address
- For every row, set currencyCode to the same value as the order
- If a field is missing or unclear, make a reasonable guess or leave it empty
- Set confidence between 0 and 1 based on how certain you are of the extraction
- Take extra care to read every digit and word correctly"""


class ExtractionClient:
    """
    Turns one purchase order PDF into ExtractedData via an OpenAI-compatible
    vision model.

    Recommended models:
      - gpt-4o         (best accuracy on scanned forms, default)
      - gpt-4o-mini    (cheaper, fine for clean digital PDFs)
    """

    def __init__(
        self,
        model: str = "gpt-4o",
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        max_tokens: int = 4096,
        rasterizer: Optional[PdfRasterizer] = None,
    ):
        self.model      = model
        self.base_url   = base_url
        self.api_key    = api_key
        self.max_tokens = max_tokens
        self.rasterizer = rasterizer or PdfRasterizer()
        self._client    = None

    def _get_client(self):
        """Lazily initialise the OpenAI client."""
        if self._client is None:
            self._client = openai.OpenAI(base_url=self.base_url, api_key=self.api_key)
        return self._client

    def extract(self, pdf_path: str | Path) -> ExtractedData:
        """
        Extract a purchase order from the first page of *pdf_path*.

        Raises RasterizationError, DependencyError, UpstreamRejection or
        ParseError; all of them leave no temporary files behind.
        """
        pdf_path = Path(pdf_path)
        image_path: Optional[Path] = None
        try:
            logger.info("Converting %s to image", pdf_path.name)
            image_path = self.rasterizer.rasterize(pdf_path)
            image_b64 = base64.b64encode(image_path.read_bytes()).decode()

            logger.info("Sending image to vision model (model=%s)", self.model)
            raw = self._complete(image_b64)
            if not raw:
                raise ParseError("No response from extraction model")

            data = self._parse_response(raw)
            data.purchase_order = data.purchase_order.with_extraction_defaults()
            logger.info(
                "Extraction succeeded for %s: %d row(s), confidence %.2f",
                pdf_path.name, len(data.purchase_order.rows), data.confidence,
            )
            return data
        finally:
            _remove_quietly(pdf_path)
            if image_path is not None:
                _remove_quietly(image_path)

    def _complete(self, image_b64: str) -> Optional[str]:
        client = self._get_client()
        prompt = _SYSTEM_PROMPT.format(today=date.today().isoformat())
        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": prompt},
                    {
                        "role": "user",
                        "content": [{
                            "type": "image_url",
                            "image_url": {"url": f"data:image/png;base64,{image_b64}"},
                        }],
                    },
                ],
                response_format={"type": "json_object"},
                max_tokens=self.max_tokens,
            )
        except openai.APIStatusError as e:
            logger.error("Vision model rejected the request: HTTP %d %s", e.status_code, e.message)
            raise UpstreamRejection(
                f"Extraction model error: {e.message}", status_code=e.status_code
            ) from e
        except openai.APIConnectionError as e:
            logger.error("Vision model unreachable at %s: %s", self.base_url, e)
            raise DependencyError(f"Extraction model unreachable: {e}") from e

        if not response.choices:
            return None
        return response.choices[0].message.content

    @staticmethod
    def _parse_response(raw: str) -> ExtractedData:
        """Parse the model's JSON reply. Tolerates stray code fences."""
        raw = re.sub(r"^```(?:json)?\s*", "", raw.strip(), flags=re.IGNORECASE)
        raw = re.sub(r"\s*```$", "", raw)
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("JSON decode error: %s", e)
            raise ParseError(f"Could not parse extraction response as JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ParseError("Extraction response is not a JSON object")
        try:
            return ExtractedData.model_validate(payload)
        except SchemaError as e:
            logger.warning("Extraction response failed schema validation: %s", e)
            raise ParseError(f"Extraction response has unexpected shape: {e}") from e

    def check_connection(self) -> dict:
        """
        Verify the LLM endpoint is reachable and the configured model is available.
        """
        try:
            client = self._get_client()
            models_response = client.models.list()
            available = [m.id for m in models_response.data]
            model_available = any(self.model in m for m in available)
            return {
                "ok": True,
                "base_url": self.base_url,
                "model_available": model_available,
                "available_models": available,
            }
        except Exception as e:
            return {
                "ok": False,
                "base_url": self.base_url,
                "error": str(e),
                "model_available": False,
            }


def _remove_quietly(path: Path) -> None:
    """Delete a temporary file; failures are logged, never raised."""
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Error deleting temporary file %s: %s", path, e)
