"""
Pytest configuration and shared fixtures for the purchase order extractor test suite.
"""
import io
import json
import os
import shutil
import tempfile
import urllib.error
from pathlib import Path
from typing import Generator

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
os.chdir(PROJECT_ROOT)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    tmp_path = tempfile.mkdtemp(prefix="po_extractor_test_")
    yield Path(tmp_path)
    shutil.rmtree(tmp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path, monkeypatch) -> "Config":
    """Provide a test configuration with isolated directories and no ambient secrets."""
    from config import Config

    monkeypatch.setenv("CONFIG_DIR", str(temp_dir / "config"))
    for name in ("FORTNOX_ACCESS_TOKEN", "FORTNOX_CLIENT_SECRET", "FORTNOX_ALLOW_ENV_FALLBACK",
                 "CREDENTIALS_PATH", "UPLOAD_DIR", "EXTRACTION_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)

    config = Config()
    config.upload_dir = temp_dir / "uploads"
    config.upload_dir.mkdir(parents=True, exist_ok=True)
    config.credentials_path = temp_dir / "config" / "api_keys.json"
    config.fortnox_api_url = "https://api.fortnox.test"
    config.fortnox_auth_url = "https://apps.fortnox.test/oauth-v1"
    return config


@pytest.fixture
def sample_order_dict() -> dict:
    """A purchase order as the extraction model returns it (camelCase)."""
    return {
        "supplierNumber": "1001",
        "supplierName": "Acme Verktyg AB",
        "supplierAddress": "Industrivägen 4",
        "supplierCity": "Göteborg",
        "supplierPostCode": "41101",
        "supplierCountryCode": "SE",
        "orderDate": "2024-03-01",
        "deliveryDate": "2024-03-15",
        "currencyCode": "SEK",
        "currencyRate": 1.0,
        "paymentTermsCode": "30",
        "ourReference": "Anna Berg",
        "rows": [
            {
                "itemId": "HAM-100",
                "itemDescription": "Hammare 500 g",
                "orderedQuantity": 10,
                "itemUnit": "st",
                "price": 129.0,
                "currencyCode": "SEK",
            },
            {
                "itemId": "SKR-25",
                "itemDescription": "Skruv 25 mm (100-pack)",
                "orderedQuantity": 4,
                "itemUnit": "fp",
                "price": 49.5,
            },
        ],
    }


@pytest.fixture
def sample_extracted_dict(sample_order_dict) -> dict:
    """A full extraction response body."""
    return {"purchaseOrder": sample_order_dict, "confidence": 0.92}


@pytest.fixture
def sample_order(sample_order_dict) -> "PurchaseOrder":
    from models.purchase_order import PurchaseOrder
    return PurchaseOrder.model_validate(sample_order_dict)


@pytest.fixture
def sample_extracted(sample_extracted_dict) -> "ExtractedData":
    from models.purchase_order import ExtractedData
    return ExtractedData.model_validate(sample_extracted_dict)


@pytest.fixture
def http_error():
    """Factory for urllib HTTPError objects carrying a JSON (or raw) body."""
    def _make(code: int, body, url: str = "https://api.fortnox.test") -> urllib.error.HTTPError:
        raw = body if isinstance(body, bytes) else json.dumps(body).encode()
        return urllib.error.HTTPError(url, code, "Error", {}, io.BytesIO(raw))
    return _make


@pytest.fixture
def fake_urlopen_response():
    """Factory for a context-manager response as returned by urllib.request.urlopen."""
    class _Response:
        def __init__(self, body, status=200):
            self._raw = body if isinstance(body, bytes) else json.dumps(body).encode()
            self.status = status

        def read(self):
            return self._raw

        def getcode(self):
            return self.status

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

    return _Response


@pytest.fixture
def sample_pdf_path(temp_dir: Path) -> Path:
    """Create a minimal test PDF file."""
    pdf_path = temp_dir / "test_order.pdf"

    # A very basic single-page PDF structure for testing
    pdf_content = b"""%PDF-1.4
1 0 obj
<<
/Type /Catalog
/Pages 2 0 R
>>
endobj

2 0 obj
<<
/Type /Pages
/Kids [3 0 R]
/Count 1
>>
endobj

3 0 obj
<<
/Type /Page
/Parent 2 0 R
/MediaBox [0 0 612 792]
/Contents 4 0 R
>>
endobj

4 0 obj
<<
/Length 44
>>
stream
BT
/F1 12 Tf
100 700 Td
(Purchase Order) Tj
ET
endstream
endobj

xref
0 5
0000000000 65535 f
0000000009 00000 n
0000000058 00000 n
0000000115 00000 n
0000000214 00000 n

trailer
<<
/Size 5
/Root 1 0 R
>>
startxref
308
%%EOF"""

    pdf_path.write_bytes(pdf_content)
    return pdf_path


# Configure pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API tests")
    config.addinivalue_line("markers", "slow: Slow tests")
