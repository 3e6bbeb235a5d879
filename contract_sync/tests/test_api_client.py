import json
import unittest
from unittest.mock import MagicMock

import requests

from contract_sync.api_client import AnalysisApiClient, raise_for_status
from contract_sync.errors import NetworkError, NotFoundSemanticError, is_session_not_found


def _response(status: int, body=None, text: str = "") -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.url = "https://api.example.com/session/x"
    if body is not None:
        response._content = json.dumps(body).encode("utf-8")
    else:
        response._content = text.encode("utf-8")
    return response


class NotFoundClassificationTests(unittest.TestCase):
    def test_structured_signals(self) -> None:
        self.assertTrue(is_session_not_found(NetworkError("gone", status_code=404)))
        self.assertTrue(is_session_not_found(NetworkError("gone", status_code=400, code="SESSION_NOT_FOUND")))
        self.assertTrue(is_session_not_found(NotFoundSemanticError("x")))

    def test_message_fallback_in_both_languages(self) -> None:
        self.assertTrue(is_session_not_found(Exception("Session not found")))
        self.assertTrue(is_session_not_found(Exception("الجلسة غير موجودة")))
        self.assertTrue(is_session_not_found(Exception("االجلسة غير موجودة")))

    def test_other_errors_are_not_not_found(self) -> None:
        self.assertFalse(is_session_not_found(NetworkError("HTTP 500: boom", status_code=500)))
        self.assertFalse(is_session_not_found(None))


class RaiseForStatusTests(unittest.TestCase):
    def test_success_passes(self) -> None:
        raise_for_status(_response(200, {"ok": True}))

    def test_error_body_message_and_code(self) -> None:
        with self.assertRaises(NetworkError) as ctx:
            raise_for_status(_response(500, {"error": "database down", "code": "DB"}))
        self.assertNotIsInstance(ctx.exception, NotFoundSemanticError)
        self.assertEqual(str(ctx.exception), "HTTP 500: database down")
        self.assertEqual(ctx.exception.code, "DB")
        self.assertEqual(ctx.exception.status_code, 500)

    def test_not_found_becomes_semantic_error(self) -> None:
        with self.assertRaises(NotFoundSemanticError):
            raise_for_status(_response(404, text="missing"))
        with self.assertRaises(NotFoundSemanticError):
            raise_for_status(_response(400, {"detail": "Session not found"}))


class AnalysisApiClientTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.http = MagicMock(spec=requests.Session)
        self.client = AnalysisApiClient("https://api.example.com/", http=self.http)

    async def test_get_session_hits_session_endpoint(self) -> None:
        self.http.request.return_value = _response(200, {"session_id": "abc"})
        self.assertEqual(await self.client.get_session("abc"), {"session_id": "abc"})
        method, url = self.http.request.call_args.args
        self.assertEqual((method, url), ("GET", "https://api.example.com/session/abc"))

    async def test_terms_accepts_wrapped_payload(self) -> None:
        self.http.request.return_value = _response(200, {"terms": [{"term_id": "1"}, "junk"]})
        self.assertEqual(await self.client.get_session_terms("abc"), [{"term_id": "1"}])

    async def test_transport_failure_becomes_network_error(self) -> None:
        self.http.request.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(NetworkError):
            await self.client.get_session("abc")

    async def test_list_sessions_passes_device_id(self) -> None:
        self.http.request.return_value = _response(200, [{"session_id": "a"}])
        sessions = await self.client.list_sessions("https://sync.example.com", "device_1", {"X-Device-ID": "device_1"})
        self.assertEqual(sessions, [{"session_id": "a"}])
        kwargs = self.http.request.call_args.kwargs
        self.assertEqual(kwargs["params"], {"device_id": "device_1"})
        self.assertEqual(self.http.request.call_args.args[1], "https://sync.example.com/sessions")

    async def test_head_returns_status(self) -> None:
        self.http.head.return_value = _response(204)
        self.assertEqual(await self.client.head("https://www.example.com", 2), 204)
