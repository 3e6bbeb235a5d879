"""Aggregate statistics over the locally stored analysis history."""
from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from contract_sync import config
from contract_sync.date_utils import parse_iso, to_iso, utc_now_iso
from contract_sync.db.repositories.sessions import SessionRepository, calculate_compliance_score
from contract_sync.errors import ContractSyncError
from contract_sync.models import (
    AnalyticsSummary,
    ComplianceDistribution,
    IssueAnalysis,
    LanguageBreakdown,
    MonthlyTrend,
    PerformanceMetrics,
    QualityMetrics,
    Session,
    SessionStat,
)

if TYPE_CHECKING:
    from contract_sync.services.job_tracker import JobTracker

logger = logging.getLogger("contract_sync.analytics")

TOP_SESSIONS_LIMIT = 5
TOP_ISSUES_LIMIT = 10
TREND_MONTHS = 6
RECENT_DAYS = 7


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def _avg(values: list[float]) -> int:
    return round(sum(values) / len(values)) if values else 0


def _shift_month(year: int, month: int, offset: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) - offset
    return index // 12, index % 12 + 1


def to_stat(session: Session, now: datetime) -> SessionStat:
    created = parse_iso(session.created_at) or parse_iso(session.analysis_timestamp) or now
    language = "ar" if (session.detected_contract_language or "").lower().startswith("ar") else "en"
    return SessionStat(
        session_id=session.session_id,
        analysis_results=session.analysis_results,
        createdAt=to_iso(created),
        compliance=_clamp(calculate_compliance_score(session)),
        original_filename=session.original_filename or "Unknown Contract",
        language=language,
    )


def dedupe_sessions(sessions: list[Session]) -> list[Session]:
    """One record per session id, keeping whichever has more analysed terms."""
    best: dict[str, Session] = {}
    for session in sessions:
        current = best.get(session.session_id)
        if current is None or len(session.analysis_results) > len(current.analysis_results):
            best[session.session_id] = session
    return list(best.values())


def compute_summary(stats: list[SessionStat], now: datetime) -> AnalyticsSummary:
    dated = [(stat, parse_iso(stat.createdAt) or now) for stat in stats]
    total = len(stats)
    rated = [stat for stat in stats if stat.compliance > 0]

    this_month = sum(1 for _, created in dated if (created.year, created.month) == (now.year, now.month))
    week_ago = now - timedelta(days=RECENT_DAYS)
    recent = sum(1 for _, created in dated if created >= week_ago)

    trend: list[MonthlyTrend] = []
    for offset in range(TREND_MONTHS - 1, -1, -1):
        year, month = _shift_month(now.year, now.month, offset)
        in_month = [stat for stat, created in dated if (created.year, created.month) == (year, month)]
        trend.append(
            MonthlyTrend(
                month=datetime(year, month, 1).strftime("%b %Y"),
                analyses=len(in_month),
                avgCompliance=_avg([s.compliance for s in in_month if s.compliance > 0]),
            )
        )

    successful = sum(1 for stat in stats if stat.analysis_results)
    performance = PerformanceMetrics(
        successRate=round(successful / total * 100) if total else 100,
        errorCount=total - successful,
    )

    return AnalyticsSummary(
        totalAnalyses=total,
        analysesThisMonth=this_month,
        recentCount=recent,
        avgCompliance=_avg([stat.compliance for stat in rated]),
        topCompliantSessions=sorted(rated, key=lambda s: s.compliance, reverse=True)[:TOP_SESSIONS_LIMIT],
        monthlyTrend=trend,
        performanceMetrics=performance,
        complianceDistribution=compliance_distribution(stats),
        contractTypes=language_breakdown(stats),
        mostCommonIssues=issue_analysis(stats),
        qualityMetrics=quality_metrics(stats),
    )


def compliance_distribution(stats: list[SessionStat]) -> ComplianceDistribution:
    distribution = ComplianceDistribution()
    for stat in stats:
        if stat.compliance >= 90:
            distribution.excellent += 1
        elif stat.compliance >= 70:
            distribution.good += 1
        elif stat.compliance >= 50:
            distribution.moderate += 1
        else:
            distribution.poor += 1
    return distribution


def language_breakdown(stats: list[SessionStat]) -> list[LanguageBreakdown]:
    groups: dict[str, list[SessionStat]] = defaultdict(list)
    for stat in stats:
        groups[stat.language].append(stat)
    return [
        LanguageBreakdown(
            language=language,
            count=len(group),
            avgCompliance=_avg([s.compliance for s in group]),
            avgTermsCount=_avg([len(s.analysis_results) for s in group]),
        )
        for language, group in groups.items()
    ]


def issue_analysis(stats: list[SessionStat]) -> list[IssueAnalysis]:
    impacts: dict[str, list[float]] = defaultdict(list)
    for stat in stats:
        for term in stat.analysis_results:
            if term.is_valid_sharia is not False:
                continue
            extra = term.model_extra or {}
            issue_type = extra.get("issue_type") or extra.get("category") or "Unknown Issue"
            impacts[str(issue_type)].append(100 - stat.compliance)

    issues = []
    for issue_type, values in impacts.items():
        avg_impact = sum(values) / len(values)
        if avg_impact > 50:
            severity = "high"
        elif avg_impact > 25:
            severity = "medium"
        else:
            severity = "low"
        issues.append(
            IssueAnalysis(type=issue_type, frequency=len(values), severity=severity, avgImpact=round(avg_impact))
        )
    issues.sort(key=lambda issue: issue.frequency, reverse=True)
    return issues[:TOP_ISSUES_LIMIT]


def quality_metrics(stats: list[SessionStat]) -> QualityMetrics:
    with_terms = [stat for stat in stats if stat.analysis_results]
    return QualityMetrics(
        avgTermsPerContract=_avg([len(s.analysis_results) for s in with_terms]),
        avgIssuesPerContract=_avg(
            [sum(1 for term in s.analysis_results if not term.is_valid_sharia) for s in with_terms]
        ),
        contractsWithExpertReview=sum(
            1 for s in stats if any(term.has_expert_feedback for term in s.analysis_results)
        ),
        contractsWithHighCompliance=sum(1 for s in stats if s.compliance >= 90),
    )


@dataclass
class _CacheEntry:
    expires_at: float
    summary: AnalyticsSummary


class AnalyticsAggregator:
    def __init__(
        self,
        repository: SessionRepository,
        job_tracker: Optional["JobTracker"] = None,
        *,
        cache_seconds: float = config.ANALYTICS_CACHE_SECONDS,
    ):
        self.repository = repository
        self.job_tracker = job_tracker
        self.cache_seconds = cache_seconds
        self._cache: Optional[_CacheEntry] = None

    def invalidate(self) -> None:
        self._cache = None

    def _active_jobs(self) -> list[str]:
        return self.job_tracker.get_active_jobs() if self.job_tracker is not None else []

    async def get_summary(self, *, now: Optional[datetime] = None, force: bool = False) -> AnalyticsSummary:
        """Analytics over every stored session. Falls back to an empty summary on storage failure."""
        current = time.time()
        if not force and now is None and self._cache and self._cache.expires_at > current:
            return self._cache.summary.model_copy(update={"activeJobs": self._active_jobs()})

        reference = now or datetime.now(timezone.utc)
        try:
            sessions = dedupe_sessions(await self.repository.get_all())
        except ContractSyncError as exc:
            logger.error(f"Failed to load sessions for analytics: {exc}")
            return AnalyticsSummary(activeJobs=self._active_jobs(), computedAt=utc_now_iso())

        started = time.monotonic()
        summary = compute_summary([to_stat(session, reference) for session in sessions], reference)
        summary.computedAt = utc_now_iso()
        logger.info(
            f"Computed analytics for {summary.totalAnalyses} sessions in "
            f"{(time.monotonic() - started) * 1000:.1f}ms"
        )
        if now is None:
            self._cache = _CacheEntry(expires_at=current + self.cache_seconds, summary=summary)
        return summary.model_copy(update={"activeJobs": self._active_jobs()})
