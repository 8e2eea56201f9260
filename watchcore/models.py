"""
Core data models for the monitoring engine.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_content(content: Dict[str, Any]) -> str:
    """Stable sha256 over the canonical JSON form of a structured payload."""
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class SignalType(str, Enum):
    PRICING = "pricing"
    TECH_STACK = "tech_stack"
    BRANDING = "branding"
    PERFORMANCE = "performance"


class ScraperStrategy(str, Enum):
    LIGHTWEIGHT = "lightweight"
    RICH_RENDER = "rich_render"


class ErrorCode(str, Enum):
    TIMEOUT = "TIMEOUT"
    BLOCKED = "BLOCKED"
    EMPTY = "EMPTY"
    API_ERROR = "API_ERROR"
    UNKNOWN = "UNKNOWN"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_score(cls, score: float) -> "Severity":
        if score >= 0.8:
            return cls.HIGH
        if score >= 0.5:
            return cls.MEDIUM
        return cls.LOW

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class TargetStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class Verdict(str, Enum):
    """Overall classification attached to a DiffResult."""
    INITIAL = "initial"
    NO_CHANGES = "no_changes"
    CHANGED = "changed"
    IMPROVEMENT = "improvement"
    DEGRADATION = "degradation"
    MIXED = "mixed"
    STABLE = "stable"


class AbuseKind(str, Enum):
    MANUAL_SPAM = "manual_spam"
    TARGET_HOARDING = "target_hoarding"
    VOLATILE_CONTEXT = "volatile_context"
    GLOBAL_THROTTLE = "global_throttle"


class AbuseAction(str, Enum):
    SOFT_BLOCK = "soft_block"
    THROTTLE = "throttle"


# --------------------------------------------------------------------------- #
# Reference data & mutable entities


class User(BaseModel):
    id: str
    email: Optional[str] = None
    plan: Plan = Plan.FREE
    crawls_today: int = 0
    manual_checks_today: int = 0
    last_reset: Optional[date] = None


class Target(BaseModel):
    """A monitored competitor page."""
    id: str
    user_id: str
    name: str
    url: str
    status: TargetStatus = TargetStatus.ACTIVE
    scraper_hint: Optional[ScraperStrategy] = None
    failure_count: int = 0
    last_checked_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class MonitoringContext(BaseModel):
    """A locale/region under which targets are inspected."""
    id: str
    key: str
    name: str
    requires_rich_render: bool = False
    locale: Optional[str] = None
    timezone: Optional[str] = None
    position: int = 0


class PlanEntitlements(BaseModel):
    plan: Plan
    max_targets: int
    max_contexts_per_target: int
    daily_manual_check_cap: int
    daily_crawl_cap: int
    can_geo_aware: bool = False
    can_evidence_capture: bool = False
    can_enrich: bool = False


class UsageCounters(BaseModel):
    user_id: str
    crawls_today: int = 0
    manual_checks_today: int = 0
    last_reset: Optional[date] = None


# --------------------------------------------------------------------------- #
# Captures & comparisons


class Snapshot(BaseModel):
    """Immutable capture of one signal for a (target, context) pair."""
    id: Optional[int] = None
    target_id: str
    context_id: str
    signal: SignalType = SignalType.PRICING
    method: ScraperStrategy = ScraperStrategy.LIGHTWEIGHT
    content_hash: str = ""
    content: Dict[str, Any] = Field(default_factory=dict)
    evidence_path: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ChangeRecord(BaseModel):
    signal: SignalType
    kind: str
    field: str
    old_value: Any = None
    new_value: Any = None
    severity: Severity = Severity.LOW
    score: float = 0.0
    magnitude: Optional[float] = None
    description: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)


class DiffResult(BaseModel):
    signal: SignalType
    changes: List[ChangeRecord] = Field(default_factory=list)
    summary: str = ""
    verdict: Verdict = Verdict.NO_CHANGES
    overall_score: float = 0.0

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)


class AlertDecision(BaseModel):
    severity: Severity
    should_alert: bool
    priority: int = 0
    reason: Optional[str] = None


class Alert(BaseModel):
    id: Optional[int] = None
    user_id: str
    target_id: str
    context_id: Optional[str] = None
    signal: SignalType
    kind: str
    severity: Severity
    title: str
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


# --------------------------------------------------------------------------- #
# Guardrail results


class QuotaCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    upgrade_prompt: bool = False


class AbuseFlag(BaseModel):
    kind: AbuseKind
    action: AbuseAction
    reason: str


class AbuseCheck(BaseModel):
    flagged: bool
    flag: Optional[AbuseFlag] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def action(self) -> Optional[AbuseAction]:
        return self.flag.action if self.flag else None

    @property
    def reason(self) -> Optional[str]:
        return self.flag.reason if self.flag else None


# --------------------------------------------------------------------------- #
# Extraction & task boundary


class ExtractionResult(BaseModel):
    success: Literal[True] = True
    signal: SignalType
    method: ScraperStrategy
    content: Dict[str, Any]
    content_hash: str
    text: str = ""
    evidence: Optional[bytes] = None


class ExtractionFailure(BaseModel):
    success: Literal[False] = False
    method: ScraperStrategy
    code: ErrorCode
    error: str


Extraction = Union[ExtractionResult, ExtractionFailure]


class WorkItem(BaseModel):
    target_id: str
    target_url: str
    target_name: str
    user_id: str
    context: MonitoringContext
    signal: SignalType = SignalType.PRICING
    scraper_hint: Optional[ScraperStrategy] = None


class TaskResult(BaseModel):
    success: bool
    snapshot_id: Optional[int] = None
    has_changes: bool = False
    diff_result: Optional[DiffResult] = None
    alerts_created: int = 0
    error: Optional[str] = None
    code: Optional[ErrorCode] = None
    method: Optional[ScraperStrategy] = None
    escalated: bool = False


class RunStats(BaseModel):
    """Aggregate counters returned by one scheduler run."""
    queued: int = 0
    processed: int = 0
    with_changes: int = 0
    with_alerts: int = 0
    errors: int = 0
    skipped: int = 0
    throttled: bool = False


class ManualCheckResult(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    upgrade_prompt: bool = False
    contexts: List[str] = Field(default_factory=list)
    stats: RunStats = Field(default_factory=RunStats)
    results: List[TaskResult] = Field(default_factory=list)
