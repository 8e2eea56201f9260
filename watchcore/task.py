"""
Target-context task: one check of one signal for one (target, context) pair.

    load prior snapshot -> select strategy -> extract (escalating if needed)
    -> capture evidence -> persist snapshot -> diff -> decide/explain/persist
    alerts per change -> update target bookkeeping

Every outcome is returned as a TaskResult; the task never retries and never
lets an exception escape.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from . import plugin_loader
from .alerts import AlertBuilder, decide
from .guardrail import Guardrail
from .interfaces import DiffEngine, EntitlementProvider, EvidenceStore, Extractor, Store
from .models import (
    ErrorCode,
    Extraction,
    ExtractionFailure,
    PlanEntitlements,
    ScraperStrategy,
    SignalType,
    Snapshot,
    TaskResult,
    WorkItem,
    utcnow,
)
from .strategy import needs_escalation, select_strategy

logger = logging.getLogger(__name__)


class TargetContextTask:
    def __init__(
        self,
        store: Store,
        extractors: Mapping[ScraperStrategy, Extractor],
        entitlements: EntitlementProvider,
        *,
        signal_extractors: Optional[Mapping[SignalType, Extractor]] = None,
        evidence: Optional[EvidenceStore] = None,
        alerts: Optional[AlertBuilder] = None,
        guardrail: Optional[Guardrail] = None,
    ):
        self.store = store
        self.extractors = dict(extractors)
        # signals served by a dedicated extractor regardless of strategy
        self.signal_extractors = dict(signal_extractors or {})
        self.entitlements = entitlements
        self.evidence = evidence
        self.alerts = alerts or AlertBuilder()
        self.guardrail = guardrail
        self._engines: Dict[SignalType, DiffEngine] = {}

    @property
    def name(self) -> str:
        return "target-context-check"

    def _engine(self, signal: SignalType) -> DiffEngine:
        if signal not in self._engines:
            self._engines[signal] = plugin_loader.get(signal)
        return self._engines[signal]

    @staticmethod
    def _step(progress: Optional[Dict[str, Any]], step: str) -> None:
        if progress is not None:
            progress["step"] = step

    async def run(self, item: WorkItem, progress: Optional[Dict[str, Any]] = None) -> TaskResult:
        try:
            return await self._run(item, progress)
        except Exception as e:
            logger.error(
                "Check failed for %s [%s/%s]: %s",
                item.target_name, item.context.key, item.signal.value, e,
                exc_info=True,
            )
            return TaskResult(success=False, error=str(e), code=ErrorCode.UNKNOWN)

    async def _run(self, item: WorkItem, progress: Optional[Dict[str, Any]]) -> TaskResult:
        user = await self.store.get_user(item.user_id)
        entitlements = self.entitlements.get(user.plan)

        self._step(progress, "load_prior_snapshot")
        prior = await self.store.latest_snapshot(item.target_id, item.context.id, item.signal)

        self._step(progress, "select_strategy")
        method = select_strategy(item.context, prior, item.scraper_hint)

        self._step(progress, "extract")
        extraction, escalated = await self._extract(item, method, entitlements)
        if isinstance(extraction, ExtractionFailure):
            logger.warning(
                "Extraction failed for %s [%s] via %s: %s (%s)",
                item.target_name, item.context.key, extraction.method.value,
                extraction.error, extraction.code.value,
            )
            return TaskResult(
                success=False,
                error=extraction.error,
                code=extraction.code,
                method=extraction.method,
                escalated=escalated,
            )

        evidence_path = None
        if extraction.evidence and entitlements.can_evidence_capture and self.evidence:
            self._step(progress, "capture_evidence")
            evidence_path = await self._upload_evidence(item, extraction.evidence)

        self._step(progress, "persist_snapshot")
        snapshot = Snapshot(
            target_id=item.target_id,
            context_id=item.context.id,
            signal=item.signal,
            method=extraction.method,
            content_hash=extraction.content_hash,
            content=extraction.content,
            evidence_path=evidence_path,
        )
        snapshot_id = await self.store.insert_snapshot(snapshot)

        self._step(progress, "diff")
        diff = self._engine(item.signal).compare(prior.content if prior else None, snapshot.content)
        alerts_created = 0
        if diff.has_changes:
            await self.store.insert_diff(item.target_id, item.context.id, snapshot_id, diff)
            alerts_created = await self._alert(item, diff.changes, entitlements, evidence_path, progress)
            logger.info(
                "%s [%s/%s]: %d change(s), %d alert(s): %s",
                item.target_name, item.context.key, item.signal.value,
                len(diff.changes), alerts_created, diff.summary,
            )

        self._step(progress, "update_target")
        await self.store.record_target_success(
            item.target_id,
            utcnow(),
            scraper_hint=ScraperStrategy.RICH_RENDER if escalated else None,
        )

        self._step(progress, "done")
        return TaskResult(
            success=True,
            snapshot_id=snapshot_id,
            has_changes=diff.has_changes,
            diff_result=diff,
            alerts_created=alerts_created,
            method=extraction.method,
            escalated=escalated,
        )

    # ------------------------------------------------------------------ #
    def _extractor(self, signal: SignalType, method: ScraperStrategy) -> Optional[Extractor]:
        return self.signal_extractors.get(signal) or self.extractors.get(method)

    async def _extract(
        self, item: WorkItem, method: ScraperStrategy, entitlements: PlanEntitlements
    ) -> Tuple[Extraction, bool]:
        """Run the chosen extractor, escalating a weak lightweight result once."""
        capture = entitlements.can_evidence_capture
        extractor = self._extractor(item.signal, method)
        if extractor is None:
            return ExtractionFailure(
                method=method, code=ErrorCode.UNKNOWN,
                error=f"No extractor configured for {method.value}",
            ), False

        result = await extractor.extract(
            item.target_url, item.context, item.signal, capture_evidence=capture
        )
        if method != ScraperStrategy.LIGHTWEIGHT or item.signal in self.signal_extractors:
            return result, False

        if isinstance(result, ExtractionFailure):
            reason = f"lightweight failed ({result.code.value})"
        else:
            escalate, reason = needs_escalation(result.text, item.context.key, item.signal)
            if not escalate:
                return result, False

        rich = self.extractors.get(ScraperStrategy.RICH_RENDER)
        if rich is None:
            return result, False

        logger.info("Escalating %s [%s] to rich render: %s", item.target_name, item.context.key, reason)
        escalated = await rich.extract(
            item.target_url, item.context, item.signal, capture_evidence=capture
        )
        return escalated, True

    async def _upload_evidence(self, item: WorkItem, blob: bytes) -> Optional[str]:
        try:
            return await self.evidence.upload(item.target_id, item.context.key, blob)
        except Exception as e:
            logger.warning("Evidence upload failed for %s [%s]: %s", item.target_name, item.context.key, e)
            return None

    async def _alert(self, item, changes, entitlements, evidence_path, progress) -> int:
        low_trust = False
        if self.guardrail is not None:
            volatility = await self.guardrail.detect_volatile_context(
                item.target_id, item.context.id, item.signal
            )
            low_trust = volatility.flagged

        created = 0
        for index, change in enumerate(changes):
            if progress is not None:
                progress["current"] = f"change {index + 1}/{len(changes)}"
            decision = decide(change, low_trust=low_trust)
            if not decision.should_alert:
                logger.debug("Suppressed %s for %s: %s", change.kind, item.target_name, decision.reason)
                continue
            self._step(progress, "enrich")
            text, source = await self.alerts.explain(change, item.target_name, entitlements)
            alert = self.alerts.build(item, change, decision, text, source, evidence_path)
            self._step(progress, "persist_alert")
            await self.store.insert_alert(alert)
            created += 1
        return created
