"""
Core interfaces for the monitoring engine.

Everything the engine consumes from the outside world (extraction, evidence
storage, explanation text, plan data, persistence) is expressed here as an
abstract capability so the task and scheduler never depend on internals.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    Alert,
    ChangeRecord,
    DiffResult,
    Extraction,
    MonitoringContext,
    Plan,
    PlanEntitlements,
    ScraperStrategy,
    Severity,
    SignalType,
    Snapshot,
    Target,
    TargetStatus,
    UsageCounters,
    User,
    Verdict,
)


class DiffEngine(ABC):
    """Signal-specific comparison of two consecutive snapshot payloads.

    Implementations are pure and deterministic: missing fields compare as
    "no prior value" and identical payloads yield no changes.
    """

    @property
    @abstractmethod
    def signal(self) -> SignalType:
        """Signal type handled by this engine."""
        pass

    no_changes_summary = "No changes detected"

    @abstractmethod
    def compare(
        self, old: Optional[Dict[str, Any]], new: Dict[str, Any]
    ) -> DiffResult:
        """Compare two payloads of the same signal type."""
        pass

    def compare_snapshots(self, old: Optional[Snapshot], new: Snapshot) -> DiffResult:
        return self.compare(old.content if old else None, new.content)

    # ------------------------------------------------------------------ #
    # Shared result building
    def record(
        self,
        kind: str,
        field: str,
        old_value: Any,
        new_value: Any,
        score: float,
        description: str,
        *,
        severity: Optional[Severity] = None,
        magnitude: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ChangeRecord:
        return ChangeRecord(
            signal=self.signal,
            kind=kind,
            field=field,
            old_value=old_value,
            new_value=new_value,
            severity=severity or Severity.from_score(score),
            score=round(score, 4),
            magnitude=magnitude,
            description=description,
            details=details or {},
        )

    def initial(self) -> DiffResult:
        return DiffResult(
            signal=self.signal,
            summary="Initial snapshot captured",
            verdict=Verdict.INITIAL,
        )

    def summarize(
        self, changes: List[ChangeRecord], verdict: Optional[Verdict] = None
    ) -> DiffResult:
        """Build a DiffResult: top three changes by score make the summary."""
        if not changes:
            return DiffResult(
                signal=self.signal,
                summary=self.no_changes_summary,
                verdict=verdict or Verdict.NO_CHANGES,
            )

        ranked = sorted(changes, key=lambda c: c.score, reverse=True)
        # max score plus diminishing weight for every additional change
        overall = ranked[0].score + sum(c.score * 0.2 for c in ranked[1:])
        parts = [c.description for c in ranked[:3]]
        if len(ranked) > 3:
            parts.append(f"and {len(ranked) - 3} more changes")

        return DiffResult(
            signal=self.signal,
            changes=changes,
            summary=". ".join(parts),
            verdict=verdict or Verdict.CHANGED,
            overall_score=round(min(overall, 1.0), 4),
        )


class Extractor(ABC):
    """Fetches one signal's structured content for a URL under a context."""

    @property
    @abstractmethod
    def method(self) -> ScraperStrategy:
        pass

    @abstractmethod
    async def extract(
        self,
        url: str,
        context: MonitoringContext,
        signal: SignalType,
        *,
        capture_evidence: bool = False,
    ) -> Extraction:
        """Return an ExtractionResult or an ExtractionFailure, never raise."""
        pass


class EvidenceStore(ABC):
    @abstractmethod
    async def upload(self, target_id: str, context_key: str, blob: bytes) -> str:
        """Persist an evidence artifact and return its reference path."""
        pass


class ExplanationProvider(ABC):
    @abstractmethod
    async def explain(self, change: ChangeRecord, target_name: str) -> Optional[str]:
        """Return explanation text, or None when nothing useful came back."""
        pass


class EntitlementProvider(ABC):
    @abstractmethod
    def get(self, plan: Plan) -> PlanEntitlements:
        pass


class Store(ABC):
    """Persistence capabilities used by the engine."""

    # Reference data
    @abstractmethod
    async def get_user(self, user_id: str) -> User: ...

    @abstractmethod
    async def get_target(self, target_id: str) -> Target: ...

    @abstractmethod
    async def list_active_targets(self) -> List[Tuple[Target, Plan]]: ...

    @abstractmethod
    async def list_contexts(self) -> List[MonitoringContext]: ...

    @abstractmethod
    async def count_active_targets(self, user_id: str) -> int: ...

    @abstractmethod
    async def count_targets_created_since(self, user_id: str, since: datetime) -> int: ...

    # Snapshots & diffs
    @abstractmethod
    async def latest_snapshot(
        self, target_id: str, context_id: str, signal: SignalType
    ) -> Optional[Snapshot]: ...

    @abstractmethod
    async def recent_snapshot_hashes(
        self, target_id: str, context_id: str, signal: SignalType, limit: int
    ) -> List[str]: ...

    @abstractmethod
    async def insert_snapshot(self, snapshot: Snapshot) -> int: ...

    @abstractmethod
    async def count_snapshots_since(self, since: datetime) -> int: ...

    @abstractmethod
    async def insert_diff(
        self, target_id: str, context_id: str, snapshot_id: int, result: DiffResult
    ) -> Optional[int]: ...

    @abstractmethod
    async def last_diff_at(self, target_id: str, context_id: str) -> Optional[datetime]: ...

    # Alerts
    @abstractmethod
    async def insert_alert(self, alert: Alert) -> int: ...

    @abstractmethod
    async def count_recent_alerts(
        self, target_id: str, context_id: str, signal: SignalType, window: int
    ) -> int: ...

    # Target bookkeeping
    @abstractmethod
    async def record_target_success(
        self,
        target_id: str,
        checked_at: datetime,
        scraper_hint: Optional[ScraperStrategy] = None,
    ) -> None: ...

    @abstractmethod
    async def record_target_failure(
        self,
        target_id: str,
        failed_at: datetime,
        pause_after: int,
        pause_status: TargetStatus = TargetStatus.ERROR,
    ) -> int: ...

    # Usage counters
    @abstractmethod
    async def get_usage(self, user_id: str, today: Optional[str] = None) -> UsageCounters: ...

    @abstractmethod
    async def consume_usage(
        self, user_id: str, counter: str, cap: int, today: Optional[str] = None
    ) -> Optional[UsageCounters]: ...
