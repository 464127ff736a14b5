"""
Fortnox gateway: purchase order submission and the OAuth2 handshake.

Purchase orders go to the warehouse API (camelCase JSON, bearer token plus
Client-Secret header). Tokens come from the authorization-code grant at the
Fortnox OAuth endpoint (Basic auth, form-encoded).

Credentials are passed per call. When a caller supplies none, the static
FORTNOX_ACCESS_TOKEN / FORTNOX_CLIENT_SECRET from Config are used as a
fallback (switchable off via FORTNOX_ALLOW_ENV_FALLBACK), and every such use
is logged as a warning.

Secrets and tokens are only ever logged as short previews.
"""
import base64
import json
import logging
import secrets
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional

from models.credentials import TokenResponse
from models.purchase_order import (
    DEFAULT_CURRENCY_CODE,
    DEFAULT_CURRENCY_RATE,
    DEFAULT_PAYMENT_TERMS_CODE,
    PurchaseOrder,
    PurchaseOrderRow,
)
from .errors import (
    ConfigurationError,
    DependencyError,
    OAuthExchangeError,
    ParseError,
    UpstreamRejection,
    ValidationError,
)

logger = logging.getLogger(__name__)

PURCHASE_ORDER_PATH  = "/api/warehouse/purchaseorders-v1"
COMPANY_INFO_PATH    = "/3/companyinformation"
DEFAULT_DELIVERY_NAME = "Leverans"

_PREVIEW_LENGTH = 8
_USER_AGENT = "Purchase-Order-Extractor/1.0"


def _preview(value: Optional[str]) -> str:
    """Fixed-length prefix of a secret, safe to log."""
    if not value:
        return "(none)"
    return value[:_PREVIEW_LENGTH] + "..."


def _row_payload(row: PurchaseOrderRow) -> dict:
    payload = {
        "itemId":          row.item_id,
        "orderedQuantity": row.ordered_quantity,
        "price":           row.price or 0,
        "itemUnit":        row.item_unit,
    }
    return {k: v for k, v in payload.items() if v is not None}


def build_purchase_order_payload(order: PurchaseOrder) -> dict:
    """
    Map a PurchaseOrder onto the Fortnox warehouse API body.

    Required fields get their documented defaults; optional fields that are
    unset are left out instead of being sent as null.
    """
    payload = {
        # Required
        "supplierNumber":   order.supplier_number,
        "deliveryName":     order.delivery_name or DEFAULT_DELIVERY_NAME,
        "deliveryAddress":  order.delivery_address,
        "deliveryCity":     order.delivery_city,
        "deliveryZipCode":  order.delivery_zip_code,
        "orderDate":        order.order_date,
        "currencyCode":     order.currency_code or DEFAULT_CURRENCY_CODE,
        "currencyRate":     order.currency_rate or DEFAULT_CURRENCY_RATE,
        "paymentTermsCode": order.payment_terms_code or DEFAULT_PAYMENT_TERMS_CODE,

        # Optional
        "deliveryCountryCode": order.delivery_country_code,
        "deliveryDate":        order.delivery_date,
        "ourReference":        order.our_reference,
        "yourReference":       order.your_reference,
        "messageToSupplier":   order.message_to_supplier or order.note,
        "costCenterCode":      order.cost_center_code,
        "projectId":           order.project_id,
        "stockPointCode":      order.stock_point_code,

        "rows": [_row_payload(row) for row in order.rows],
    }
    return {k: v for k, v in payload.items() if v is not None}


def _decode_body(raw: bytes) -> Any:
    text = raw.decode("utf-8", errors="replace")
    if not text.strip():
        return {}
    try:
        return json.loads(text)
    except ValueError:
        return text


def _read_error_body(e: urllib.error.HTTPError) -> Any:
    try:
        return _decode_body(e.read()) if e.fp else {}
    except OSError:
        return {}


def _transport_reason(e: Exception) -> str:
    if isinstance(e, urllib.error.HTTPError):
        return str(e)
    if isinstance(e, urllib.error.URLError):
        return str(e.reason)
    return str(e) or e.__class__.__name__


def _api_error_message(payload: Any, fallback: str) -> str:
    """Prefer Fortnox's structured message, then a generic message/error field."""
    if isinstance(payload, dict):
        info = payload.get("ErrorInformation")
        if isinstance(info, dict):
            message = info.get("message") or info.get("Message")
            if message:
                return str(message)
        for key in ("message", "error"):
            if payload.get(key):
                return str(payload[key])
    return fallback


class FortnoxGateway:
    """
    Talks to Fortnox on behalf of the pipeline.
    """

    def __init__(self, config: Any) -> None:
        self.config = config

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def resolve_credentials(
        self,
        access_token: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> tuple[str, str]:
        """
        Return (access_token, client_secret).

        Order: explicit arguments, then the Config fallback (when enabled),
        then ConfigurationError.
        """
        token, secret = access_token, client_secret

        if access_token:
            logger.info("Using access token supplied with the request (%s)", _preview(access_token))

        if self.config.fortnox_allow_env_fallback:
            if not token and self.config.fortnox_access_token:
                logger.warning(
                    "No access token supplied; falling back to FORTNOX_ACCESS_TOKEN "
                    "from configuration (%s). It may be outdated.",
                    _preview(self.config.fortnox_access_token),
                )
                token = self.config.fortnox_access_token
            if not secret and self.config.fortnox_client_secret:
                logger.warning(
                    "No client secret supplied; falling back to FORTNOX_CLIENT_SECRET from configuration"
                )
                secret = self.config.fortnox_client_secret

        if not token or not secret:
            raise ConfigurationError(
                "Fortnox credentials not configured. Provide an access token and client "
                "secret, or set FORTNOX_ACCESS_TOKEN and FORTNOX_CLIENT_SECRET."
            )
        return token, secret

    # ------------------------------------------------------------------
    # Purchase orders
    # ------------------------------------------------------------------

    def create_purchase_order(
        self,
        order: PurchaseOrder,
        access_token: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> dict:
        """
        Create *order* in Fortnox.

        Returns {"success": True, "data": <Fortnox response>, "message": ...}.
        Raises ConfigurationError, ValidationError (no rows), UpstreamRejection
        (non-2xx) or DependencyError (Fortnox unreachable).
        """
        token, secret = self.resolve_credentials(access_token, client_secret)

        order = order.prepared_for_submission()
        if not order.rows:
            raise ValidationError(["rows"], "Purchase order has no rows to submit")

        payload = build_purchase_order_payload(order)
        logger.debug("Sending to Fortnox warehouse API: %s", json.dumps(payload, indent=2))

        req = urllib.request.Request(
            self.config.fortnox_api_url.rstrip("/") + PURCHASE_ORDER_PATH,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
        )
        req.add_header("Authorization", f"Bearer {token}")
        req.add_header("Client-Secret", secret)
        req.add_header("Content-Type", "application/json")
        req.add_header("Accept", "application/json")
        req.add_header("User-Agent", _USER_AGENT)

        try:
            data = self._send(req)
        except urllib.error.HTTPError as e:
            error_payload = _read_error_body(e)
            message = _api_error_message(error_payload, _transport_reason(e))
            logger.error("Fortnox API error: HTTP %d - %s", e.code, error_payload)
            raise UpstreamRejection(
                f"Failed to create purchase order: {message}",
                status_code=e.code,
                payload=error_payload,
            ) from e
        except (urllib.error.URLError, TimeoutError) as e:
            logger.error("Fortnox API unreachable: %s", e)
            raise DependencyError(
                f"Failed to create purchase order: {_transport_reason(e)}"
            ) from e

        logger.info(
            "Purchase order created in Fortnox (supplier=%s, %d row(s))",
            order.supplier_number, len(order.rows),
        )
        return {
            "success": True,
            "data":    data,
            "message": "Purchase order created successfully in Fortnox",
        }

    def test_connection(
        self,
        access_token: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> dict:
        """Fetch company information to prove the credentials work."""
        token, secret = self.resolve_credentials(access_token, client_secret)
        req = urllib.request.Request(
            self.config.fortnox_api_url.rstrip("/") + COMPANY_INFO_PATH,
            method="GET",
        )
        req.add_header("Authorization", f"Bearer {token}")
        req.add_header("Client-Secret", secret)
        req.add_header("Accept", "application/json")
        req.add_header("User-Agent", _USER_AGENT)

        try:
            data = self._send(req)
        except urllib.error.HTTPError as e:
            message = _api_error_message(_read_error_body(e), _transport_reason(e))
            raise UpstreamRejection(
                f"Fortnox connection failed: {message}", status_code=e.code
            ) from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise DependencyError(f"Fortnox connection failed: {_transport_reason(e)}") from e

        company = (data.get("CompanyInformation") or {}) if isinstance(data, dict) else {}
        return {
            "success":     True,
            "companyName": company.get("CompanyName"),
            "message":     "Successfully connected to Fortnox",
        }

    # ------------------------------------------------------------------
    # OAuth2 authorization-code flow
    # ------------------------------------------------------------------

    def authorization_url(
        self,
        client_id: str,
        redirect_uri: str,
        state: Optional[str] = None,
    ) -> str:
        """Build the URL the user visits to grant this integration access."""
        missing = [n for n, v in (("clientId", client_id), ("redirectUri", redirect_uri)) if not v]
        if missing:
            raise ValidationError(missing)

        params = {
            "client_id":     client_id,
            "redirect_uri":  redirect_uri,
            "scope":         self.config.fortnox_scopes,
            "state":         state or secrets.token_urlsafe(16),
            "response_type": "code",
            "access_type":   "offline",   # ask for a refresh token
        }
        logger.info(
            "Authorization URL built (client=%s, redirect=%s, scopes=%s)",
            _preview(client_id), redirect_uri, self.config.fortnox_scopes,
        )
        return f"{self.config.fortnox_auth_url.rstrip('/')}/auth?{urllib.parse.urlencode(params)}"

    def exchange_code(
        self,
        code: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
    ) -> TokenResponse:
        """
        Exchange an authorization code for an access token.

        Raises ValidationError (before any network call) when a parameter is
        missing, and OAuthExchangeError carrying the provider's HTTP status
        when the exchange is refused.
        """
        missing = [
            name for name, value in (
                ("code", code),
                ("clientId", client_id),
                ("clientSecret", client_secret),
                ("redirectUri", redirect_uri),
            )
            if not value
        ]
        if missing:
            raise ValidationError(missing)

        basic = base64.b64encode(f"{client_id}:{client_secret}".encode("utf-8")).decode("ascii")
        body = urllib.parse.urlencode({
            "grant_type":   "authorization_code",
            "code":         code,
            "redirect_uri": redirect_uri,
        }).encode("utf-8")

        req = urllib.request.Request(
            self.config.fortnox_auth_url.rstrip("/") + "/token",
            data=body,
            method="POST",
        )
        req.add_header("Content-Type", "application/x-www-form-urlencoded")
        req.add_header("Authorization", f"Basic {basic}")
        req.add_header("Accept", "application/json")
        req.add_header("User-Agent", _USER_AGENT)

        logger.info("Exchanging authorization code for access token (client=%s)", _preview(client_id))
        try:
            data = self._send(req)
        except urllib.error.HTTPError as e:
            error_payload = _read_error_body(e)
            detail = _transport_reason(e)
            if isinstance(error_payload, dict):
                detail = error_payload.get("error_description") or error_payload.get("error") or detail
            logger.error("OAuth token exchange failed: HTTP %d - %s", e.code, detail)
            raise OAuthExchangeError(detail, status_code=e.code, payload=error_payload) from e
        except (urllib.error.URLError, TimeoutError) as e:
            logger.error("OAuth token endpoint unreachable: %s", e)
            raise OAuthExchangeError(_transport_reason(e), status_code=500) from e

        if not isinstance(data, dict) or not data.get("access_token"):
            raise ParseError("Token response did not contain an access token")

        token = TokenResponse(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            scope=data.get("scope"),
        )
        logger.info(
            "Obtained access token %s (scope=%s, expires in %s s)",
            _preview(token.access_token), token.scope, token.expires_in,
        )
        return token

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(self, req: urllib.request.Request) -> Any:
        """Execute *req*; return the decoded JSON body (or raw text)."""
        with urllib.request.urlopen(req, timeout=self.config.http_timeout_seconds) as response:
            status_code = response.getcode()
            body = _decode_body(response.read())
        logger.debug("%s %s -> HTTP %d", req.get_method(), req.full_url, status_code)
        return body


def describe_oauth_error(error: str, description: Optional[str] = None) -> str:
    """Readable message for an error reported on the OAuth redirect."""
    message = description or error
    if error == "unsupported_scope":
        message += (
            "\n\nA requested scope is not enabled for this Fortnox integration. "
            "Enable companyinformation, article, warehouse and supplier under "
            "Scopes for your integration at https://developer.fortnox.se/"
        )
    return message
