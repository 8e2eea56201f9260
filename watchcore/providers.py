"""
Default collaborator implementations: evidence on local disk, alert
explanations from an HTTP endpoint and currency exchange rates.
"""

import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from typing import Dict, Optional

import aiohttp

from signals.pricing import FALLBACK_RATES

from .infra.http import HttpClient
from .interfaces import EvidenceStore, ExplanationProvider
from .models import ChangeRecord, utcnow

logger = logging.getLogger(__name__)


class LocalEvidenceStore(EvidenceStore):
    """Screenshots under ``<evidence_dir>/<target_id>/<context>/<timestamp>.png``."""

    def __init__(self, evidence_dir: str = "evidence"):
        self.root = Path(evidence_dir)

    def _write(self, path: Path, blob: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(blob)

    async def upload(self, target_id: str, context_key: str, blob: bytes) -> str:
        stamp = utcnow().strftime("%Y%m%dT%H%M%S%f")
        path = self.root / target_id / context_key / f"{stamp}.png"
        await asyncio.to_thread(self._write, path, blob)
        logger.debug("Stored evidence %s (%d bytes)", path, len(blob))
        return str(path)


class HttpExplanationProvider(ExplanationProvider):
    """
    POSTs a change record to an explanation service and reads back
    ``{"explanation": "..."}``.
    """

    def __init__(
        self, http: HttpClient, api_url: str, api_key: Optional[str] = None, *, timeout: float = 20.0
    ):
        self.http = http
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def explain(self, change: ChangeRecord, target_name: str) -> Optional[str]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        payload = {
            "competitor": target_name,
            "signal": change.signal.value,
            "kind": change.kind,
            "field": change.field,
            "before": change.old_value,
            "after": change.new_value,
            "severity": change.severity.value,
            "description": change.description,
        }
        try:
            data = await self.http.post_json(
                self.api_url, payload, headers=headers, timeout=self.timeout
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Explanation service unavailable: %s", e)
            return None

        if not isinstance(data, dict):
            return None
        text = data.get("explanation") or data.get("text")
        return text if isinstance(text, str) and text.strip() else None


class ExchangeRateProvider:
    """
    Units-per-USD rates from a JSON endpoint shaped like
    ``{"base": "USD", "rates": {"EUR": 0.92, ...}}``.

    Fetched rates are cached for ``cache_hours``; without a URL, or when the
    endpoint fails, the fixed ``FALLBACK_RATES`` are used.
    """

    def __init__(self, http: Optional[HttpClient] = None, api_url: Optional[str] = None,
                 *, cache_hours: float = 6.0, timeout: float = 10.0):
        self.http = http
        self.api_url = api_url
        self.ttl = timedelta(hours=cache_hours)
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._cached: Optional[Dict[str, float]] = None
        self._fetched_at = None

    async def rates(self) -> Dict[str, float]:
        if self.http is None or not self.api_url:
            return dict(FALLBACK_RATES)
        now = utcnow()
        if self._cached is not None and now - self._fetched_at < self.ttl:
            return self._cached

        try:
            data = await self.http.get_json(self.api_url, timeout=self.timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Exchange rate service unavailable, using fallback rates: %s", e)
            return dict(FALLBACK_RATES)

        raw = data.get("rates") if isinstance(data, dict) else None
        if not isinstance(raw, dict):
            logger.warning("Unexpected exchange rate payload, using fallback rates")
            return dict(FALLBACK_RATES)

        rates = dict(FALLBACK_RATES)
        rates.update({
            code.upper(): float(value)
            for code, value in raw.items()
            if isinstance(value, (int, float)) and value > 0
        })
        rates["USD"] = 1.0
        self._cached, self._fetched_at = rates, now
        logger.debug("Fetched %d exchange rates", len(raw))
        return rates
