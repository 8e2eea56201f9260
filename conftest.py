"""
Shared pytest fixtures: a temporary SQLite store, seeded reference data and
fake collaborators for the extraction/explanation seams.
"""

from collections import deque
from typing import Any, Dict, List, Optional

import pytest

from watchcore import plugin_loader
from watchcore.guardrail import Guardrail
from watchcore.infra.db import Database
from watchcore.infra.store import SqliteStore
from watchcore.interfaces import EvidenceStore, ExplanationProvider, Extractor
from watchcore.models import (
    ChangeRecord,
    ErrorCode,
    ExtractionFailure,
    ExtractionResult,
    MonitoringContext,
    Plan,
    ScraperStrategy,
    SignalType,
    Target,
    User,
    hash_content,
)
from watchcore.plans import StaticEntitlements

# long enough, priced and in dollars: passes the lightweight richness check
RICH_TEXT = "Pricing Starter $9/mo Pro $29/mo Enterprise contact sales " + "features " * 80


def pricing_payload(pro_price: str = "$29/mo", **overrides) -> Dict[str, Any]:
    payload = {
        "currency": "USD",
        "plans": [
            {"id": "starter", "name": "Starter", "price_raw": "$9/mo", "billing": "monthly",
             "cta": "Start free trial", "features": ["1 project"], "badges": []},
            {"id": "pro", "name": "Pro", "price_raw": pro_price, "billing": "monthly",
             "cta": "Start free trial", "features": ["10 projects", "Priority support"],
             "badges": ["Most popular"]},
        ],
        "has_free_tier": False,
        "highlighted_plan": "pro",
    }
    payload.update(overrides)
    return payload


def extraction(
    content: Dict[str, Any],
    method: ScraperStrategy = ScraperStrategy.LIGHTWEIGHT,
    signal: SignalType = SignalType.PRICING,
    text: str = RICH_TEXT,
    evidence: Optional[bytes] = None,
) -> ExtractionResult:
    return ExtractionResult(
        signal=signal,
        method=method,
        content=content,
        content_hash=hash_content(content),
        text=text,
        evidence=evidence,
    )


def failure(code: ErrorCode, method: ScraperStrategy = ScraperStrategy.LIGHTWEIGHT) -> ExtractionFailure:
    return ExtractionFailure(method=method, code=code, error=f"{code.value.lower()} failure")


class FakeExtractor(Extractor):
    """Replays queued outcomes, then repeats the last one (or ``default``)."""

    def __init__(self, method: ScraperStrategy, *outcomes, default=None):
        self._method = method
        self.outcomes = deque(outcomes)
        self._last = outcomes[-1] if outcomes else default
        self.calls: List[Dict[str, Any]] = []

    @property
    def method(self) -> ScraperStrategy:
        return self._method

    def push(self, *outcomes) -> None:
        self.outcomes.extend(outcomes)
        self._last = outcomes[-1]

    async def extract(self, url, context, signal, *, capture_evidence=False):
        self.calls.append({
            "url": url, "context": context.key, "signal": signal, "capture_evidence": capture_evidence,
        })
        outcome = self.outcomes.popleft() if self.outcomes else self._last
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeExplainer(ExplanationProvider):
    def __init__(self, text: Optional[str] = "Provider explanation", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls: List[ChangeRecord] = []

    async def explain(self, change, target_name):
        self.calls.append(change)
        if self.error:
            raise self.error
        return self.text


class MemoryEvidence(EvidenceStore):
    def __init__(self, error: Optional[Exception] = None):
        self.blobs: Dict[str, bytes] = {}
        self.error = error

    async def upload(self, target_id, context_key, blob):
        if self.error:
            raise self.error
        path = f"memory://{target_id}/{context_key}/{len(self.blobs)}.png"
        self.blobs[path] = blob
        return path


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def _engines():
    plugin_loader.refresh_registry()
    yield


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "monitor.db"))
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def store(db):
    return SqliteStore(db)


@pytest.fixture
def entitlements():
    return StaticEntitlements()


@pytest.fixture
def guardrail(store, entitlements):
    return Guardrail(store, entitlements)


@pytest.fixture
def contexts() -> List[MonitoringContext]:
    return [
        MonitoringContext(id="ctx-us", key="us", name="United States", locale="en-US", position=0),
        MonitoringContext(id="ctx-in", key="in", name="India", locale="en-IN", position=1),
        MonitoringContext(id="ctx-eu", key="eu", name="Europe", locale="de-DE", position=2),
        MonitoringContext(id="ctx-global", key="global", name="Global", requires_rich_render=True, position=3),
    ]


@pytest.fixture
async def seeded(store, contexts):
    """A free and a pro user, one target each, all four contexts."""
    free = User(id="u-free", email="free@example.com", plan=Plan.FREE)
    pro = User(id="u-pro", email="pro@example.com", plan=Plan.PRO)
    for user in (free, pro):
        await store.add_user(user)
    for context in contexts:
        await store.add_context(context)

    free_target = Target(id="t-free", user_id=free.id, name="Acme", url="https://acme.test/pricing")
    pro_target = Target(id="t-pro", user_id=pro.id, name="Globex", url="https://globex.test/pricing")
    for target in (free_target, pro_target):
        await store.add_target(target)

    return {
        "free": free,
        "pro": pro,
        "free_target": free_target,
        "pro_target": pro_target,
        "contexts": contexts,
    }
