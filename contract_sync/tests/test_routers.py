import tempfile
import types
import unittest
from pathlib import Path

from fastapi import HTTPException

from contract_sync.container import ContractSyncApp
from contract_sync.routers import analysis as analysis_router
from contract_sync.routers import sessions as sessions_router
from contract_sync.services.job_tracker import PollSchedule
from contract_sync.tests.helpers import FakeApi, RecordingNotifier


class RouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.api = FakeApi()
        self.container = ContractSyncApp(
            secure_db_path=":memory:",
            general_db_path=":memory:",
            browser_path=None,
            file_cache_dir=Path(self.tmp.name),
            platform="native",
            api=self.api,
            notifier=RecordingNotifier(),
            schedule=PollSchedule(60, 60, 0, 60, 60),
        )
        await self.container.start()
        self.request = types.SimpleNamespace(
            app=types.SimpleNamespace(state=types.SimpleNamespace(container=self.container))
        )

    async def asyncTearDown(self) -> None:
        await self.container.stop()
        self.tmp.cleanup()

    async def test_store_and_fetch_session(self) -> None:
        result = await sessions_router.store_session({"session_id": "s1", "original_filename": "a.pdf"}, self.request)
        self.assertEqual(result["status"], "stored")

        session = await sessions_router.get_session("s1", self.request)
        self.assertEqual(session.original_filename, "a.pdf")
        listed = await sessions_router.list_sessions(self.request)
        self.assertEqual([s.session_id for s in listed], ["s1"])

    async def test_missing_session_is_404(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await sessions_router.get_session("nope", self.request)
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_invalid_session_payload_is_400(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await sessions_router.store_session({"original_filename": "a.pdf"}, self.request)
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_remove_and_clear(self) -> None:
        await sessions_router.store_session({"session_id": "s1"}, self.request)
        await sessions_router.store_session({"session_id": "s2"}, self.request)

        await sessions_router.remove_session("s1", self.request)
        self.assertEqual([s.session_id for s in await sessions_router.list_sessions(self.request)], ["s2"])

        await sessions_router.clear_sessions(self.request)
        self.assertEqual(await sessions_router.list_sessions(self.request), [])

    async def test_sync_and_offline_first(self) -> None:
        self.api.remote_sessions = [{"session_id": "remote-1"}]
        result = await sessions_router.sync_with_backend(sessions_router.SyncRequest(remote_url="https://r.example.com"), self.request)
        self.assertEqual(result, {"success": True})

        sessions = await sessions_router.list_sessions_offline_first(self.request, remote_url=None)
        self.assertEqual([s.session_id for s in sessions], ["remote-1"])

    async def test_device_id_is_stable(self) -> None:
        first = await sessions_router.get_device_id(self.request)
        second = await sessions_router.get_device_id(self.request)
        self.assertEqual(first, second)
        self.assertTrue(first["device_id"].startswith("device_"))

    async def test_analysis_lifecycle(self) -> None:
        started = await analysis_router.start_analysis("s1", self.request, file=None)
        self.assertEqual(started, {"session_id": "s1", "analyzing": True})

        self.assertEqual(await analysis_router.get_active_jobs(self.request), {"jobs": ["s1"]})
        self.assertTrue((await analysis_router.is_analyzing("s1", self.request))["analyzing"])

        await analysis_router.stop_analysis("s1", self.request)
        self.assertFalse((await analysis_router.is_analyzing("s1", self.request))["analyzing"])

    async def test_app_state_and_background_pass(self) -> None:
        result = await analysis_router.set_app_state(analysis_router.AppStateRequest(state="background"), self.request)
        self.assertEqual(result, {"state": "background"})

        counts = await analysis_router.run_background_pass(self.request)
        self.assertEqual(counts, {"pending": False, "uploads": 0, "processing": 0})

    async def test_analytics_endpoint(self) -> None:
        await sessions_router.store_session({"session_id": "s1", "compliance_percentage": 90}, self.request)
        summary = await sessions_router.get_analytics(self.request, refresh=True)
        self.assertEqual(summary.totalAnalyses, 1)

    async def test_uninitialized_container_is_503(self) -> None:
        request = types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace()))
        with self.assertRaises(HTTPException) as ctx:
            await sessions_router.list_sessions(request)
        self.assertEqual(ctx.exception.status_code, 503)
