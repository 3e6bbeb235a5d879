"""Pydantic models for sessions, offline summaries, jobs and analytics.

Session-level models keep the remote service's snake_case field names so a
payload fetched from the server can be stored verbatim; locally derived
records use camelCase like the mobile client that reads them.
"""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

AppState = Literal["active", "background", "inactive"]


# ── Session-related models ──────────────────────────────────────────

class AnalysisTerm(BaseModel):
    model_config = ConfigDict(extra="allow")

    term_id: str = ""
    term_text: str = ""
    is_valid_sharia: Optional[bool] = None
    sharia_issue: Optional[str] = None
    expert_override_is_valid_sharia: Optional[bool] = None
    is_confirmed_by_user: Optional[bool] = None
    has_expert_feedback: bool = False

    @field_validator("term_id", "term_text", mode="before")
    @classmethod
    def _null_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("has_expert_feedback", mode="before")
    @classmethod
    def _null_flag(cls, value: Any) -> Any:
        return False if value is None else value

    @property
    def effective_compliance(self) -> bool:
        """Expert override wins, then user confirmation, then the original judgment."""
        if self.expert_override_is_valid_sharia is not None:
            return self.expert_override_is_valid_sharia
        if self.is_confirmed_by_user:
            return True
        return bool(self.is_valid_sharia)


class Session(BaseModel):
    model_config = ConfigDict(extra="allow")

    session_id: str = ""
    original_filename: str = ""
    analysis_results: list[AnalysisTerm] = Field(default_factory=list)
    compliance_percentage: Optional[float] = None
    analysis_timestamp: Optional[str] = None
    detected_contract_language: Optional[str] = None
    created_at: Optional[str] = None
    original_cloudinary_info: Optional[dict[str, Any]] = None
    is_processing: bool = False

    # The server sends explicit nulls for fields it has not filled in yet.
    @field_validator("session_id", "original_filename", mode="before")
    @classmethod
    def _null_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("analysis_results", mode="before")
    @classmethod
    def _null_results(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("is_processing", mode="before")
    @classmethod
    def _null_flag(cls, value: Any) -> Any:
        return False if value is None else value

    @property
    def is_complete(self) -> bool:
        has_timestamp = bool((self.analysis_timestamp or "").strip())
        return has_timestamp and len(self.analysis_results) > 0

    @property
    def document_url(self) -> Optional[str]:
        info = self.original_cloudinary_info or {}
        url = info.get("url")
        return url if isinstance(url, str) and url.strip() else None


class OfflineAnalysisSummary(BaseModel):
    id: str
    sessionId: str
    pdfUrl: Optional[str] = None
    localPdfPath: Optional[str] = None
    originalFilename: str = "Unknown Contract"
    summary: str = ""
    complianceScore: float = 0
    flags: list[str] = Field(default_factory=list)
    analysisDate: str = ""
    isOfflineOnly: bool = False
    termsCount: int = 0
    issuesCount: int = 0
    language: Literal["ar", "en"] = "en"
    fullSessionData: Optional[Session] = None


class RestorationRecord(BaseModel):
    sessionId: str
    timestamp: str
    deviceId: str
    analysisTermsCount: int = 0
    compliancePercentage: float = 0
    originalFilename: str = ""


# ── Job / upload bookkeeping ───────────────────────────────────────

class AnalysisJob(BaseModel):
    """Durable part of a tracked job; the live polling task is kept separately."""

    sessionId: str
    startTime: float
    retryCount: int = 0
    maxRetries: int = 50
    existenceProbed: bool = False


class ContractFile(BaseModel):
    uri: str
    name: str = ""
    mimeType: str = "application/pdf"
    size: Optional[int] = None


class BackgroundUpload(BaseModel):
    id: str
    sessionId: str
    file: ContractFile
    startTime: float
    retryCount: int = 0


class BackgroundProcessing(BaseModel):
    sessionId: str
    startTime: float
    retryCount: int = 0
    maxRetries: int = 50


class LocalNotification(BaseModel):
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)


# ── Analytics models ───────────────────────────────────────────────

class SessionStat(BaseModel):
    session_id: str
    analysis_results: list[AnalysisTerm] = Field(default_factory=list)
    createdAt: str = ""
    compliance: float = 0
    original_filename: str = ""
    language: Literal["ar", "en"] = "en"


class MonthlyTrend(BaseModel):
    month: str
    analyses: int = 0
    avgCompliance: int = 0


class PerformanceMetrics(BaseModel):
    successRate: int = 100
    errorCount: int = 0


class ComplianceDistribution(BaseModel):
    excellent: int = 0
    good: int = 0
    moderate: int = 0
    poor: int = 0


class LanguageBreakdown(BaseModel):
    language: Literal["ar", "en"]
    count: int = 0
    avgCompliance: int = 0
    avgTermsCount: int = 0


class IssueAnalysis(BaseModel):
    type: str
    frequency: int = 0
    severity: Literal["high", "medium", "low"] = "low"
    avgImpact: int = 0


class QualityMetrics(BaseModel):
    avgTermsPerContract: int = 0
    avgIssuesPerContract: int = 0
    contractsWithExpertReview: int = 0
    contractsWithHighCompliance: int = 0


class AnalyticsSummary(BaseModel):
    totalAnalyses: int = 0
    analysesThisMonth: int = 0
    recentCount: int = 0
    avgCompliance: int = 0
    topCompliantSessions: list[SessionStat] = Field(default_factory=list)
    monthlyTrend: list[MonthlyTrend] = Field(default_factory=list)
    performanceMetrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    complianceDistribution: ComplianceDistribution = Field(default_factory=ComplianceDistribution)
    contractTypes: list[LanguageBreakdown] = Field(default_factory=list)
    mostCommonIssues: list[IssueAnalysis] = Field(default_factory=list)
    qualityMetrics: QualityMetrics = Field(default_factory=QualityMetrics)
    activeJobs: list[str] = Field(default_factory=list)
    computedAt: str = ""
