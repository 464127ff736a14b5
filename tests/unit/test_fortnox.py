"""
Unit tests for the Fortnox gateway. urllib is patched; nothing leaves the process.
"""
import base64
import json
import urllib.error
import urllib.parse
from unittest.mock import patch

import pytest

from models.purchase_order import PurchaseOrder, PurchaseOrderRow
from pipeline.errors import (
    ConfigurationError,
    DependencyError,
    OAuthExchangeError,
    UpstreamRejection,
    ValidationError,
)
from pipeline.fortnox import FortnoxGateway, build_purchase_order_payload, describe_oauth_error

URLOPEN = "pipeline.fortnox.urllib.request.urlopen"


@pytest.fixture
def gateway(test_config) -> FortnoxGateway:
    return FortnoxGateway(test_config)


def _sent_json(mock_urlopen) -> dict:
    req = mock_urlopen.call_args[0][0]
    return json.loads(req.data.decode())


@pytest.mark.unit
class TestBuildPayload:
    """Tests for the PurchaseOrder -> Fortnox body mapping."""

    def test_defaults_for_missing_required_fields(self):
        order = PurchaseOrder.model_validate({
            "supplierNumber": "1",
            "currencyCode": None,
            "currencyRate": None,
            "paymentTermsCode": "",
            "rows": [{"itemId": "A", "orderedQuantity": 1}],
        })
        payload = build_purchase_order_payload(order)
        assert payload["deliveryName"] == "Leverans"
        assert payload["currencyCode"] == "SEK"
        assert payload["currencyRate"] == 1
        assert payload["paymentTermsCode"] == "30"

    def test_absent_optional_fields_are_omitted(self):
        order = PurchaseOrder(supplier_number="1", rows=[PurchaseOrderRow(item_id="A")])
        payload = build_purchase_order_payload(order)
        for key in ("deliveryDate", "ourReference", "projectId", "messageToSupplier"):
            assert key not in payload
        assert None not in payload.values()

    def test_rows_reduced_to_four_fields(self, sample_order):
        payload = build_purchase_order_payload(sample_order)
        assert payload["rows"][0] == {
            "itemId": "HAM-100", "orderedQuantity": 10, "price": 129.0, "itemUnit": "st",
        }

    def test_missing_price_sent_as_zero(self):
        order = PurchaseOrder(rows=[PurchaseOrderRow(item_id="A", ordered_quantity=2)])
        assert build_purchase_order_payload(order)["rows"][0]["price"] == 0

    def test_message_falls_back_to_note(self):
        order = PurchaseOrder(note="Leverera till bakdörren", rows=[])
        assert build_purchase_order_payload(order)["messageToSupplier"] == "Leverera till bakdörren"

    def test_message_to_supplier_wins_over_note(self):
        order = PurchaseOrder(note="intern", message_to_supplier="extern", rows=[])
        assert build_purchase_order_payload(order)["messageToSupplier"] == "extern"


@pytest.mark.unit
class TestResolveCredentials:
    """Tests for credential resolution order."""

    def test_explicit_arguments_win(self, gateway, test_config):
        test_config.fortnox_access_token = "env-token"
        test_config.fortnox_client_secret = "env-secret"
        assert gateway.resolve_credentials("tok", "sec") == ("tok", "sec")

    def test_config_fallback_is_warned(self, gateway, test_config, caplog):
        test_config.fortnox_access_token = "env-token-123456789"
        test_config.fortnox_client_secret = "env-secret"
        with caplog.at_level("WARNING", logger="pipeline.fortnox"):
            assert gateway.resolve_credentials() == ("env-token-123456789", "env-secret")
        assert "FORTNOX_ACCESS_TOKEN" in caplog.text
        assert "env-token-123456789" not in caplog.text

    def test_fallback_disabled(self, gateway, test_config):
        test_config.fortnox_access_token = "env-token"
        test_config.fortnox_client_secret = "env-secret"
        test_config.fortnox_allow_env_fallback = False
        with pytest.raises(ConfigurationError):
            gateway.resolve_credentials()

    def test_nothing_available(self, gateway):
        with pytest.raises(ConfigurationError, match="not configured"):
            gateway.resolve_credentials(access_token="tok")


@pytest.mark.unit
class TestCreatePurchaseOrder:
    """Tests for create_purchase_order()."""

    def test_success(self, gateway, sample_order, fake_urlopen_response):
        with patch(URLOPEN, return_value=fake_urlopen_response({"PurchaseOrder": {"Id": 77}})) as m:
            result = gateway.create_purchase_order(sample_order, "tok", "sec")

        assert result["success"] is True
        assert result["data"] == {"PurchaseOrder": {"Id": 77}}
        assert result["message"] == "Purchase order created successfully in Fortnox"

        req = m.call_args[0][0]
        assert req.full_url == "https://api.fortnox.test/api/warehouse/purchaseorders-v1"
        assert req.get_method() == "POST"
        assert req.get_header("Authorization") == "Bearer tok"
        assert req.get_header("Client-secret") == "sec"
        assert req.get_header("Content-type") == "application/json"
        assert _sent_json(m)["supplierNumber"] == "1001"

    def test_zero_rows_rejected_without_network(self, gateway):
        with patch(URLOPEN) as m:
            with pytest.raises(ValidationError) as exc_info:
                gateway.create_purchase_order(PurchaseOrder(supplier_number="1"), "tok", "sec")
        assert exc_info.value.missing == ["rows"]
        m.assert_not_called()

    def test_missing_credentials_no_network(self, gateway, sample_order):
        with patch(URLOPEN) as m:
            with pytest.raises(ConfigurationError):
                gateway.create_purchase_order(sample_order)
        m.assert_not_called()

    def test_error_information_message_preferred(self, gateway, sample_order, http_error):
        body = {"ErrorInformation": {"message": "Leverantören finns inte", "code": 2000433}}
        with patch(URLOPEN, side_effect=http_error(400, body)):
            with pytest.raises(UpstreamRejection) as exc_info:
                gateway.create_purchase_order(sample_order, "tok", "sec")
        assert str(exc_info.value) == "Failed to create purchase order: Leverantören finns inte"
        assert exc_info.value.status_code == 400
        assert exc_info.value.payload == body

    def test_generic_message_field(self, gateway, sample_order, http_error):
        with patch(URLOPEN, side_effect=http_error(401, {"message": "unauthorized"})):
            with pytest.raises(UpstreamRejection, match="Failed to create purchase order: unauthorized"):
                gateway.create_purchase_order(sample_order, "tok", "sec")

    def test_non_json_error_uses_transport_description(self, gateway, sample_order, http_error):
        with patch(URLOPEN, side_effect=http_error(502, b"<html>Bad gateway</html>")):
            with pytest.raises(UpstreamRejection, match="HTTP Error 502"):
                gateway.create_purchase_order(sample_order, "tok", "sec")

    def test_unreachable(self, gateway, sample_order):
        with patch(URLOPEN, side_effect=urllib.error.URLError("Name or service not known")):
            with pytest.raises(DependencyError, match="Name or service not known"):
                gateway.create_purchase_order(sample_order, "tok", "sec")

    def test_rows_sent_with_exact_keys(self, gateway, sample_order, fake_urlopen_response):
        with patch(URLOPEN, return_value=fake_urlopen_response({})) as m:
            gateway.create_purchase_order(sample_order, "tok", "sec")
        for row in _sent_json(m)["rows"]:
            assert set(row) <= {"itemId", "orderedQuantity", "price", "itemUnit"}


@pytest.mark.unit
class TestExchangeCode:
    """Tests for the OAuth authorization-code exchange."""

    def test_missing_parameters_listed_without_network(self, gateway):
        with patch(URLOPEN) as m:
            with pytest.raises(ValidationError) as exc_info:
                gateway.exchange_code("abc", None, "", "http://localhost/cb")
        assert exc_info.value.missing == ["clientId", "clientSecret"]
        m.assert_not_called()

    def test_success(self, gateway, fake_urlopen_response):
        body = {
            "access_token": "at-0123456789abcdef",
            "refresh_token": "rt",
            "expires_in": 3600,
            "scope": "companyinformation warehouse",
        }
        with patch(URLOPEN, return_value=fake_urlopen_response(body)) as m:
            token = gateway.exchange_code("abc", "cid", "csecret", "http://localhost/cb")

        assert token.access_token == "at-0123456789abcdef"
        assert token.refresh_token == "rt"
        assert token.expires_in == 3600

        req = m.call_args[0][0]
        assert req.full_url == "https://apps.fortnox.test/oauth-v1/token"
        expected = base64.b64encode(b"cid:csecret").decode()
        assert req.get_header("Authorization") == f"Basic {expected}"
        assert req.get_header("Content-type") == "application/x-www-form-urlencoded"
        form = urllib.parse.parse_qs(req.data.decode())
        assert form == {
            "grant_type": ["authorization_code"],
            "code": ["abc"],
            "redirect_uri": ["http://localhost/cb"],
        }

    def test_token_not_logged_in_full(self, gateway, fake_urlopen_response, caplog):
        body = {"access_token": "at-0123456789abcdef", "scope": "warehouse"}
        with caplog.at_level("INFO", logger="pipeline.fortnox"):
            with patch(URLOPEN, return_value=fake_urlopen_response(body)):
                gateway.exchange_code("abc", "cid-long-identifier", "csecret", "http://localhost/cb")
        assert "at-0123456789abcdef" not in caplog.text
        assert "at-01234..." in caplog.text
        assert "csecret" not in caplog.text

    def test_provider_rejection_mirrors_status(self, gateway, http_error):
        err = http_error(400, {"error": "invalid_grant", "error_description": "Code expired"})
        with patch(URLOPEN, side_effect=err):
            with pytest.raises(OAuthExchangeError) as exc_info:
                gateway.exchange_code("abc", "cid", "csecret", "http://localhost/cb")
        assert exc_info.value.status_code == 400
        assert str(exc_info.value) == "Code expired"

    def test_error_without_description(self, gateway, http_error):
        with patch(URLOPEN, side_effect=http_error(401, {"error": "invalid_client"})):
            with pytest.raises(OAuthExchangeError, match="invalid_client"):
                gateway.exchange_code("abc", "cid", "csecret", "http://localhost/cb")

    def test_no_response_is_500(self, gateway):
        with patch(URLOPEN, side_effect=urllib.error.URLError("timed out")):
            with pytest.raises(OAuthExchangeError) as exc_info:
                gateway.exchange_code("abc", "cid", "csecret", "http://localhost/cb")
        assert exc_info.value.status_code == 500


@pytest.mark.unit
class TestAuthorizationUrl:
    """Tests for the consent URL."""

    def test_contains_all_parameters(self, gateway):
        url = gateway.authorization_url("cid", "http://localhost:3000/oauth-callback", state="xyz")
        parsed = urllib.parse.urlsplit(url)
        params = urllib.parse.parse_qs(parsed.query)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://apps.fortnox.test/oauth-v1/auth"
        assert params["client_id"] == ["cid"]
        assert params["redirect_uri"] == ["http://localhost:3000/oauth-callback"]
        assert params["scope"] == ["companyinformation article warehouse supplier"]
        assert params["state"] == ["xyz"]
        assert params["response_type"] == ["code"]
        assert params["access_type"] == ["offline"]

    def test_random_state(self, gateway):
        a = urllib.parse.parse_qs(urllib.parse.urlsplit(gateway.authorization_url("c", "r")).query)
        b = urllib.parse.parse_qs(urllib.parse.urlsplit(gateway.authorization_url("c", "r")).query)
        assert a["state"] != b["state"]

    def test_client_id_required(self, gateway):
        with pytest.raises(ValidationError):
            gateway.authorization_url("", "http://localhost/cb")


@pytest.mark.unit
class TestConnection:
    """Tests for test_connection() and OAuth error descriptions."""

    def test_company_name_returned(self, gateway, fake_urlopen_response):
        body = {"CompanyInformation": {"CompanyName": "Bygg & Järn AB"}}
        with patch(URLOPEN, return_value=fake_urlopen_response(body)) as m:
            result = gateway.test_connection("tok", "sec")
        assert result == {
            "success": True,
            "companyName": "Bygg & Järn AB",
            "message": "Successfully connected to Fortnox",
        }
        assert m.call_args[0][0].full_url == "https://api.fortnox.test/3/companyinformation"

    def test_failure(self, gateway, http_error):
        body = {"ErrorInformation": {"message": "Invalid token"}}
        with patch(URLOPEN, side_effect=http_error(401, body)):
            with pytest.raises(UpstreamRejection, match="Fortnox connection failed: Invalid token"):
                gateway.test_connection("tok", "sec")

    def test_unsupported_scope_hint(self):
        message = describe_oauth_error("unsupported_scope", "scope not allowed")
        assert message.startswith("scope not allowed")
        assert "developer.fortnox.se" in message

    def test_other_errors_pass_through(self):
        assert describe_oauth_error("access_denied") == "access_denied"
