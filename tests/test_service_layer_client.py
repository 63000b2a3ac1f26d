from __future__ import annotations

import io
import json
import unittest
import urllib.error
from unittest import mock

from shop_inventory.contexts.transfers.domain.contracts import TransferDocumentLineV1, TransferDocumentV1
from shop_inventory.contexts.transfers.domain.gateway import ErpGatewayError
from shop_inventory.contexts.transfers.domain.queue_entry import DocumentKind
from shop_inventory.contexts.transfers.infrastructure.service_layer_client import ServiceLayerClient, ServiceLayerError
from shop_inventory.contexts.transfers.infrastructure.service_layer_gateway import ServiceLayerErpGateway


BASE_URL = "https://sap.example.test:50000/b1s/v1"


def _response(body: dict | None, *, status: int = 200, cookie: str | None = None):
    response = mock.MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body or {}).encode("utf-8")
    response.headers = {"Set-Cookie": cookie} if cookie else {}
    context = mock.MagicMock()
    context.__enter__.return_value = response
    context.__exit__.return_value = False
    return context


def _http_error(url: str, code: int, message: str) -> urllib.error.HTTPError:
    body = json.dumps({"error": {"code": -1, "message": {"value": message}}}).encode("utf-8")
    return urllib.error.HTTPError(url, code, message, {}, io.BytesIO(body))


def _document(kind: DocumentKind = DocumentKind.REQUEST) -> TransferDocumentV1:
    return TransferDocumentV1(
        kind=kind,
        from_warehouse="WH-01",
        to_warehouse="WH-02",
        doc_date="2026-10-18",
        external_reference="TRF-SL-1",
        lines=[
            TransferDocumentLineV1(
                item_code="ITEM-1",
                quantity=2.0,
                from_warehouse_code="WH-01",
                to_warehouse_code="WH-02",
            )
        ],
    )


class ServiceLayerClientTest(unittest.TestCase):
    def _client(self) -> ServiceLayerClient:
        return ServiceLayerClient(BASE_URL, company_db="SBODEMO", username="manager", password="secret")

    def test_login_then_post_reuses_session_cookie(self) -> None:
        calls = []

        def _urlopen(request, timeout=None, context=None):
            calls.append(request)
            if request.full_url.endswith("/Login"):
                return _response({"SessionId": "session-1"})
            return _response({"DocEntry": 321, "DocNum": 45})

        with mock.patch("urllib.request.urlopen", side_effect=_urlopen):
            gateway = ServiceLayerErpGateway(self._client())
            result = gateway.post_document(_document())
            gateway.post_document(_document(DocumentKind.DIRECT))

        self.assertEqual(result.doc_entry, 321)
        self.assertEqual(result.doc_num, "45")
        self.assertEqual([call.full_url.rsplit("/", 1)[-1] for call in calls],
                         ["Login", "InventoryTransferRequests", "StockTransfers"])
        login_body = json.loads(calls[0].data.decode("utf-8"))
        self.assertEqual(login_body, {"CompanyDB": "SBODEMO", "UserName": "manager", "Password": "secret"})
        self.assertEqual(calls[1].get_header("Cookie"), "B1SESSION=session-1")
        posted = json.loads(calls[1].data.decode("utf-8"))
        self.assertEqual(posted["FromWarehouse"], "WH-01")
        self.assertEqual(posted["StockTransferLines"][0]["ItemCode"], "ITEM-1")

    def test_session_cookie_used_when_body_has_no_session(self) -> None:
        with mock.patch(
            "urllib.request.urlopen",
            return_value=_response({}, cookie="B1SESSION=cookie-session; path=/b1s; HttpOnly"),
        ):
            self.assertEqual(self._client().login(), "cookie-session")

    def test_expired_session_triggers_single_relogin(self) -> None:
        logins = []
        posts = []

        def _urlopen(request, timeout=None, context=None):
            if request.full_url.endswith("/Login"):
                logins.append(request)
                return _response({"SessionId": f"session-{len(logins)}"})
            posts.append(request.get_header("Cookie"))
            if len(posts) == 1:
                raise _http_error(request.full_url, 401, "Invalid session")
            return _response({"DocEntry": 9})

        with mock.patch("urllib.request.urlopen", side_effect=_urlopen):
            result = ServiceLayerErpGateway(self._client()).post_document(_document())

        self.assertEqual(result.doc_entry, 9)
        self.assertEqual(len(logins), 2)
        self.assertEqual(posts, ["B1SESSION=session-1", "B1SESSION=session-2"])

    def test_rejection_maps_to_definitive_gateway_error(self) -> None:
        def _urlopen(request, timeout=None, context=None):
            if request.full_url.endswith("/Login"):
                return _response({"SessionId": "session-1"})
            raise _http_error(request.full_url, 400, "Quantity falls into negative inventory")

        with mock.patch("urllib.request.urlopen", side_effect=_urlopen):
            with self.assertRaises(ErpGatewayError) as ctx:
                ServiceLayerErpGateway(self._client()).post_document(_document())

        self.assertEqual(str(ctx.exception), "ERP HTTP 400: Quantity falls into negative inventory")
        self.assertEqual(ctx.exception.code, "erp_document_rejected")
        self.assertTrue(ctx.exception.definitive)

    def test_server_error_is_temporary(self) -> None:
        def _urlopen(request, timeout=None, context=None):
            if request.full_url.endswith("/Login"):
                return _response({"SessionId": "session-1"})
            raise _http_error(request.full_url, 503, "Service unavailable")

        with mock.patch("urllib.request.urlopen", side_effect=_urlopen):
            with self.assertRaises(ErpGatewayError) as ctx:
                ServiceLayerErpGateway(self._client()).post_document(_document())

        self.assertEqual(ctx.exception.code, "erp_temporarily_unavailable")
        self.assertFalse(ctx.exception.definitive)

    def test_response_without_doc_entry_is_invalid(self) -> None:
        def _urlopen(request, timeout=None, context=None):
            if request.full_url.endswith("/Login"):
                return _response({"SessionId": "session-1"})
            return _response({"DocNum": 1})

        with mock.patch("urllib.request.urlopen", side_effect=_urlopen):
            with self.assertRaises(ErpGatewayError) as ctx:
                ServiceLayerErpGateway(self._client()).post_document(_document())

        self.assertEqual(ctx.exception.code, "erp_response_invalid")

    def test_connection_error_and_missing_configuration(self) -> None:
        with mock.patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            with self.assertRaises(ServiceLayerError) as ctx:
                self._client().login()
        self.assertIn("ERP connection error", str(ctx.exception))

        with self.assertRaises(ServiceLayerError):
            ServiceLayerClient("", company_db="x", username="u", password="p")


if __name__ == "__main__":
    unittest.main()
