import unittest
from datetime import datetime, timezone

from contract_sync.db.repositories.sessions import SessionRepository
from contract_sync.device_identity import DeviceIdentity
from contract_sync.errors import BackendError
from contract_sync.models import Session
from contract_sync.services.analytics import AnalyticsAggregator, dedupe_sessions
from contract_sync.tests.helpers import memory_backend

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class _FakeJobs:
    def get_active_jobs(self):
        return ["pending-1"]


def _sessions() -> list[dict]:
    return [
        {
            "session_id": "a",
            "original_filename": "a.pdf",
            "created_at": "2026-03-14T08:00:00Z",
            "compliance_percentage": 95,
            "detected_contract_language": "ar",
            "analysis_results": [
                {"term_id": "1", "is_valid_sharia": True},
                {"term_id": "2", "is_valid_sharia": True},
            ],
        },
        {
            "session_id": "b",
            "original_filename": "b.pdf",
            "created_at": "2026-03-01T08:00:00Z",
            "compliance_percentage": 60,
            "analysis_results": [
                {"term_id": "1", "is_valid_sharia": False, "issue_type": "Riba"},
                {"term_id": "2", "is_valid_sharia": False, "category": "Gharar"},
                {"term_id": "3", "is_valid_sharia": True, "has_expert_feedback": True},
                {"term_id": "4", "is_valid_sharia": True},
            ],
        },
        {
            "session_id": "c",
            "original_filename": "c.pdf",
            "created_at": "2026-01-10T08:00:00Z",
        },
    ]


class AnalyticsTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.kv = memory_backend()
        self.repo = SessionRepository(self.kv, DeviceIdentity(self.kv))
        for raw in _sessions():
            await self.repo.store(raw)
        self.analytics = AnalyticsAggregator(self.repo, _FakeJobs(), cache_seconds=300)

    async def test_headline_figures(self) -> None:
        summary = await self.analytics.get_summary(now=NOW)

        self.assertEqual(summary.totalAnalyses, 3)
        self.assertEqual(summary.analysesThisMonth, 2)
        self.assertEqual(summary.recentCount, 1)
        self.assertEqual(summary.avgCompliance, 78)
        self.assertEqual([s.session_id for s in summary.topCompliantSessions], ["a", "b"])
        self.assertEqual(summary.performanceMetrics.successRate, 67)
        self.assertEqual(summary.performanceMetrics.errorCount, 1)
        self.assertEqual(summary.activeJobs, ["pending-1"])
        self.assertTrue(summary.computedAt)

    async def test_monthly_trend_covers_six_months(self) -> None:
        trend = (await self.analytics.get_summary(now=NOW)).monthlyTrend

        self.assertEqual([t.month for t in trend], ["Oct 2025", "Nov 2025", "Dec 2025", "Jan 2026", "Feb 2026", "Mar 2026"])
        self.assertEqual(trend[3].analyses, 1)
        self.assertEqual(trend[3].avgCompliance, 0)
        self.assertEqual(trend[5].analyses, 2)
        self.assertEqual(trend[5].avgCompliance, 78)

    async def test_breakdowns(self) -> None:
        summary = await self.analytics.get_summary(now=NOW)

        distribution = summary.complianceDistribution
        self.assertEqual((distribution.excellent, distribution.good, distribution.moderate, distribution.poor), (1, 0, 1, 1))

        languages = {item.language: item for item in summary.contractTypes}
        self.assertEqual(languages["ar"].count, 1)
        self.assertEqual(languages["en"].count, 2)
        self.assertEqual(languages["en"].avgTermsCount, 2)

        issues = {issue.type: issue for issue in summary.mostCommonIssues}
        self.assertEqual(set(issues), {"Riba", "Gharar"})
        self.assertEqual(issues["Riba"].avgImpact, 40)
        self.assertEqual(issues["Riba"].severity, "medium")

        quality = summary.qualityMetrics
        self.assertEqual(quality.avgTermsPerContract, 3)
        self.assertEqual(quality.avgIssuesPerContract, 1)
        self.assertEqual(quality.contractsWithExpertReview, 1)
        self.assertEqual(quality.contractsWithHighCompliance, 1)

    async def test_cached_until_invalidated(self) -> None:
        self.repo.add_listener(lambda _session_id: self.analytics.invalidate())
        first = await self.analytics.get_summary()
        self.assertEqual(first.totalAnalyses, 3)

        await self.repo.store({"session_id": "d", "original_filename": "d.pdf"})
        self.assertEqual((await self.analytics.get_summary()).totalAnalyses, 4)

        await self.kv.delete("session_d")
        self.assertEqual((await self.analytics.get_summary()).totalAnalyses, 4)

    async def test_storage_failure_yields_empty_summary(self) -> None:
        async def broken():
            raise BackendError("general store unavailable", backend="general")

        self.repo.get_all = broken
        summary = await self.analytics.get_summary(now=NOW)
        self.assertEqual(summary.totalAnalyses, 0)
        self.assertEqual(summary.activeJobs, ["pending-1"])

    def test_dedupe_keeps_record_with_more_terms(self) -> None:
        short = Session(session_id="x", analysis_results=[{"term_id": "1"}])
        full = Session(session_id="x", analysis_results=[{"term_id": "1"}, {"term_id": "2"}])
        self.assertEqual(dedupe_sessions([short, full]), [full])
        self.assertEqual(dedupe_sessions([full, short]), [full])
