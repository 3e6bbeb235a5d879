import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import requests

from contract_sync.date_utils import iso_to_epoch, parse_iso, to_iso
from contract_sync.file_cache import FileCache


def _pdf_response(status: int = 200) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = b"%PDF-1.4 test"
    return response


class FileCacheTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.http = MagicMock(spec=requests.Session)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    async def test_downloads_once_then_reuses_file(self) -> None:
        self.http.get.return_value = _pdf_response()
        cache = FileCache(Path(self.tmp.name), platform="native", http=self.http)

        first = await cache.download("https://files.example.com/a.pdf", "session/1")
        second = await cache.download("https://files.example.com/a.pdf", "session/1")

        self.assertEqual(first, second)
        self.assertTrue(first.endswith("contract_session_1.pdf"))
        self.assertEqual(Path(first).read_bytes(), b"%PDF-1.4 test")
        self.assertEqual(self.http.get.call_count, 1)

    async def test_failures_return_none(self) -> None:
        cache = FileCache(Path(self.tmp.name), platform="native", http=self.http)
        self.http.get.return_value = _pdf_response(500)
        self.assertIsNone(await cache.download("https://files.example.com/a.pdf", "s1"))

        self.http.get.side_effect = requests.Timeout("slow")
        self.assertIsNone(await cache.download("https://files.example.com/a.pdf", "s2"))

    async def test_web_platform_never_caches(self) -> None:
        cache = FileCache(Path(self.tmp.name), platform="web", http=self.http)
        self.assertIsNone(await cache.download("https://files.example.com/a.pdf", "s1"))
        self.http.get.assert_not_called()

    async def test_invalid_input_returns_none(self) -> None:
        cache = FileCache(Path(self.tmp.name), platform="native", http=self.http)
        self.assertIsNone(await cache.download("", "s1"))
        self.assertIsNone(await cache.download("https://files.example.com/a.pdf", ""))


class DateUtilsTests(unittest.TestCase):
    def test_parses_mixed_inputs_to_utc(self) -> None:
        self.assertEqual(to_iso(parse_iso("2026-03-01T10:00:00+02:00")), "2026-03-01T08:00:00Z")
        self.assertEqual(parse_iso("2026-03-01"), datetime(2026, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(parse_iso("03/01/2026"), datetime(2026, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(parse_iso(1772323200000), datetime(2026, 3, 1, tzinfo=timezone.utc))
        self.assertIsNone(parse_iso("not a date"))
        self.assertIsNone(parse_iso(True))

    def test_epoch_ordering(self) -> None:
        self.assertLess(iso_to_epoch("2025-12-31T23:59:59Z"), iso_to_epoch("2026-01-01"))
        self.assertEqual(iso_to_epoch(None), 0.0)
