"""
Purchase Order Extractor: FastAPI backend.

Exposes extraction and the Fortnox calls over HTTP so a browser front end
(or pipeline.api_client.ApiClient) can drive the pipeline.

Endpoints
---------
  GET  /api/health                  → liveness probe
  POST /api/extract                 → multipart field "pdf" → ExtractedData
  POST /api/fortnox/purchase-order  → create a purchase order in Fortnox
  POST /api/fortnox/oauth/token     → exchange an authorization code
  GET  /api/fortnox/connection      → company information check
  GET  /api/fortnox/oauth/authorize → redirect to the Fortnox consent page
  GET  /oauth-callback              → finish the OAuth flow, store the token

Errors are answered as {"error": ..., "details": ...} JSON.

Run with:  python main.py serve   (or: uvicorn server.app:app --port 3000)
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError as SchemaError

from config import Config
from models.purchase_order import PurchaseOrder
from pipeline.credentials import CredentialStore
from pipeline.errors import OAuthExchangeError, ValidationError
from pipeline.extraction import ExtractionClient
from pipeline.fortnox import FortnoxGateway, describe_oauth_error
from pipeline.rasterizer import PdfRasterizer
from server.models import TokenRequest

logger = logging.getLogger(__name__)

TOKEN_PARAMETERS = ["code", "clientId", "clientSecret", "redirectUri"]


# ---------------------------------------------------------------------------
# Collaborators (lazy, so importing the app never touches the network or disk)
# ---------------------------------------------------------------------------
_config: Optional[Config] = None
_extraction_client: Optional[ExtractionClient] = None
_gateway: Optional[FortnoxGateway] = None
_store: Optional[CredentialStore] = None


def get_config() -> Config:
    global _config
    if _config is None:
        _config = Config()
        _config.ensure_upload_dir()
    return _config


def get_extraction_client() -> ExtractionClient:
    global _extraction_client
    if _extraction_client is None:
        cfg = get_config()
        _extraction_client = ExtractionClient(
            model=cfg.llm_model,
            base_url=cfg.llm_base_url,
            api_key=cfg.llm_api_key or None,
            max_tokens=cfg.llm_max_tokens,
            rasterizer=PdfRasterizer(dpi=cfg.raster_dpi),
        )
    return _extraction_client


def get_gateway() -> FortnoxGateway:
    global _gateway
    if _gateway is None:
        _gateway = FortnoxGateway(get_config())
    return _gateway


def get_credential_store() -> CredentialStore:
    global _store
    if _store is None:
        cfg = get_config()
        _store = CredentialStore(cfg.credentials_path, default_redirect_uri=cfg.fortnox_redirect_uri)
    return _store


def _error(status_code: int, error: str, details: Optional[str] = None, **extra) -> JSONResponse:
    content = {"error": error}
    if details is not None:
        content["details"] = details
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


async def _json_body(request: Request) -> Optional[dict]:
    """The request's JSON object, or None when absent or not an object."""
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) and body else None


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(title="Purchase Order Extractor", docs_url=None, redoc_url=None)


@app.get("/api/health")
def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/api/extract")
async def extract(
    pdf: Optional[UploadFile] = File(None),
    config: Config = Depends(get_config),
    client: ExtractionClient = Depends(get_extraction_client),
):
    """
    Extract a purchase order from an uploaded PDF (first page only).

    The upload is stored under a random name in the upload directory; the
    extraction client deletes it (and the rendered image) when done.
    """
    if pdf is None:
        return _error(400, "No PDF file uploaded")
    if pdf.content_type != "application/pdf":
        return _error(400, "Only PDF files are allowed", f"Got content type {pdf.content_type!r}")

    contents = await pdf.read(config.max_upload_bytes + 1)
    if len(contents) > config.max_upload_bytes:
        return _error(
            413, "File too large",
            f"Maximum upload size is {config.max_upload_bytes // (1024 * 1024)} MB",
        )
    if not contents:
        return _error(400, "Uploaded file is empty")

    config.ensure_upload_dir()
    dest = config.upload_dir / f"{uuid.uuid4().hex}.pdf"
    dest.write_bytes(contents)
    logger.info("Processing PDF: %s (%d bytes)", pdf.filename, len(contents))

    try:
        data = await run_in_threadpool(client.extract, dest)
    except Exception as e:
        logger.error("Error extracting data from %s: %s", pdf.filename, e)
        return _error(500, "Failed to extract data from PDF", str(e))
    return data.model_dump(mode="json", by_alias=True)


@app.post("/api/fortnox/purchase-order")
async def create_purchase_order(
    request: Request,
    x_fortnox_access_token: Optional[str] = Header(None),
    x_fortnox_client_secret: Optional[str] = Header(None),
    gateway: FortnoxGateway = Depends(get_gateway),
):
    """
    Create a purchase order in Fortnox. Credentials come from the
    X-Fortnox-* headers, falling back to server configuration.
    """
    body = await _json_body(request)
    if body is None:
        return _error(400, "No purchase order data provided")
    try:
        order = PurchaseOrder.model_validate(body)
    except SchemaError as e:
        return _error(400, "Invalid purchase order data", str(e))

    logger.info("Creating purchase order in Fortnox (supplier=%s)", order.supplier_number)
    try:
        return await run_in_threadpool(
            gateway.create_purchase_order, order, x_fortnox_access_token, x_fortnox_client_secret,
        )
    except ValidationError as e:
        return _error(400, "Invalid purchase order data", str(e), missing=e.missing)
    except Exception as e:
        logger.error("Error creating purchase order: %s", e)
        return _error(500, "Failed to create purchase order in Fortnox", str(e))


@app.post("/api/fortnox/oauth/token")
async def exchange_token(request: Request, gateway: FortnoxGateway = Depends(get_gateway)):
    """Exchange an OAuth authorization code for an access token."""
    body = await _json_body(request) or {}
    try:
        params = TokenRequest.model_validate(body)
    except SchemaError as e:
        return _error(400, "Invalid token request", str(e), required=TOKEN_PARAMETERS)

    try:
        token = await run_in_threadpool(
            gateway.exchange_code,
            params.code, params.client_id, params.client_secret, params.redirect_uri,
        )
    except ValidationError as e:
        return _error(400, "Missing required parameters", required=TOKEN_PARAMETERS, missing=e.missing)
    except OAuthExchangeError as e:
        return _error(e.status_code or 500, "Failed to exchange authorization code", str(e))
    except Exception as e:
        logger.error("OAuth token exchange error: %s", e)
        return _error(500, "Failed to exchange authorization code", str(e))

    return {
        "success":      True,
        "accessToken":  token.access_token,
        "refreshToken": token.refresh_token,
        "expiresIn":    token.expires_in,
        "scope":        token.scope,
    }


@app.get("/api/fortnox/connection")
def test_connection(
    x_fortnox_access_token: Optional[str] = Header(None),
    x_fortnox_client_secret: Optional[str] = Header(None),
    gateway: FortnoxGateway = Depends(get_gateway),
):
    try:
        return gateway.test_connection(x_fortnox_access_token, x_fortnox_client_secret)
    except Exception as e:
        logger.error("Fortnox connection test failed: %s", e)
        return _error(500, "Fortnox connection failed", str(e))


@app.get("/api/fortnox/oauth/authorize")
def authorize(
    config: Config = Depends(get_config),
    store: CredentialStore = Depends(get_credential_store),
    gateway: FortnoxGateway = Depends(get_gateway),
):
    """Send the browser to Fortnox to grant access (client id from stored settings)."""
    keys = store.load()
    if not keys.fortnox_client_id:
        return _error(400, "No Fortnox client ID configured", "Save the client ID in settings first")
    url = gateway.authorization_url(
        keys.fortnox_client_id,
        keys.fortnox_redirect_uri or config.fortnox_redirect_uri,
    )
    return RedirectResponse(url, status_code=307)


@app.get("/oauth-callback")
def oauth_callback(
    code: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    config: Config = Depends(get_config),
    store: CredentialStore = Depends(get_credential_store),
    gateway: FortnoxGateway = Depends(get_gateway),
):
    """
    Landing page of the OAuth redirect: exchange the code with the stored
    client credentials and save the resulting access token.
    """
    if error:
        logger.error("Fortnox authorization failed: %s (%s)", error, error_description)
        return _error(400, error, describe_oauth_error(error, error_description))
    if not code:
        return _error(400, "missing_code", "No authorization code received")

    keys = store.load()
    try:
        token = gateway.exchange_code(
            code,
            keys.fortnox_client_id,
            keys.fortnox_client_secret,
            keys.fortnox_redirect_uri or config.fortnox_redirect_uri,
        )
    except ValidationError as e:
        return _error(400, "Missing required parameters", str(e), missing=e.missing)
    except OAuthExchangeError as e:
        return _error(e.status_code or 500, "Failed to exchange authorization code", str(e))
    except Exception as e:
        logger.error("OAuth token exchange error: %s", e)
        return _error(500, "Failed to exchange authorization code", str(e))

    keys.fortnox_access_token = token.access_token
    store.save(keys)
    return {
        "success": True,
        "scope":   token.scope,
        "message": "Fortnox authorization complete. The access token has been saved.",
    }
