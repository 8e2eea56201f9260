"""
Performance diff engine: overall score plus two Core Web Vitals.

Payload schema: ``{"score": 0-100, "lcp": milliseconds, "cls": float}``; any
metric may be None.
"""

from typing import Any, Dict, List, NamedTuple, Optional

from watchcore.interfaces import DiffEngine
from watchcore.models import ChangeRecord, DiffResult, Severity, SignalType, Verdict


class Metric(NamedTuple):
    field: str
    label: str
    threshold: float
    higher_is_better: bool
    degradation: Severity
    improvement: Severity
    unit: str = ""
    precision: int = 0


METRICS = (
    Metric("score", "Performance score", 10, True, Severity.HIGH, Severity.MEDIUM),
    Metric("lcp", "LCP", 1000, False, Severity.HIGH, Severity.MEDIUM, unit="ms"),
    Metric("cls", "CLS", 0.1, False, Severity.MEDIUM, Severity.LOW, precision=3),
)

SEVERITY_SCORE = {Severity.HIGH: 0.9, Severity.MEDIUM: 0.6, Severity.LOW: 0.3}


def _number(payload: Dict[str, Any], field: str) -> Optional[float]:
    value = payload.get(field)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _fmt(value: float, metric: Metric) -> str:
    return f"{value:.{metric.precision}f}{metric.unit}"


class PerformanceDiffEngine(DiffEngine):
    no_changes_summary = "Performance stable"

    @property
    def signal(self) -> SignalType:
        return SignalType.PERFORMANCE

    def compare(self, old: Optional[Dict[str, Any]], new: Dict[str, Any]) -> DiffResult:
        if old is None:
            return self.initial()
        new = new or {}

        changes: List[ChangeRecord] = []
        for metric in METRICS:
            change = self._metric(metric, _number(old, metric.field), _number(new, metric.field))
            if change is not None:
                changes.append(change)

        kinds = {c.kind for c in changes}
        if not changes:
            verdict = Verdict.STABLE
        elif kinds == {"improvement"}:
            verdict = Verdict.IMPROVEMENT
        elif kinds == {"degradation"}:
            verdict = Verdict.DEGRADATION
        else:
            verdict = Verdict.MIXED
        return self.summarize(changes, verdict)

    def _metric(
        self, metric: Metric, before: Optional[float], after: Optional[float]
    ) -> Optional[ChangeRecord]:
        if before is None or after is None:
            return None

        # rounding keeps 0.1 + 0.2 style float noise away from the threshold
        delta = round(after - before, 4)
        if abs(delta) < metric.threshold:
            return None

        improved = delta > 0 if metric.higher_is_better else delta < 0
        kind = "improvement" if improved else "degradation"
        severity = metric.improvement if improved else metric.degradation
        magnitude = abs(delta)

        if improved:
            description = (
                f"{metric.label} improved from {_fmt(before, metric)} to {_fmt(after, metric)}"
            )
        else:
            description = (
                f"{metric.label} worsened from {_fmt(before, metric)} to {_fmt(after, metric)}"
                " - opportunity to outperform"
            )
        return self.record(
            kind, metric.field, before, after, SEVERITY_SCORE[severity], description,
            severity=severity,
            magnitude=magnitude,
            details={"delta": delta},
        )
