"""
Tests for settings loading, the cron scheduler wrapper and the default providers.
"""

import aiohttp
import pytest

from signals.pricing import FALLBACK_RATES
from watchcore import app as app_module
from watchcore.app import DAILY_JOB_ID, MonitorApp, scheduled_run
from watchcore.config import ENV_OVERRIDES, Settings, load_settings
from watchcore.infra.scheduler import Scheduler, validate_cron_expression
from watchcore.models import ChangeRecord, Severity, SignalType
from watchcore.providers import ExchangeRateProvider, HttpExplanationProvider, LocalEvidenceStore


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:
    def test_yaml_values(self, tmp_path, clean_env):
        config = tmp_path / "monitor.yml"
        config.write_text(
            "scheduler:\n"
            "  max_total_checks: 10\n"
            "  signals: [pricing, branding]\n"
            "guardrail:\n"
            "  max_failures: 5\n"
            "plans:\n"
            "  pro:\n"
            "    daily_crawl_cap: 100\n"
        )
        settings = load_settings(str(config))
        assert settings.scheduler.max_total_checks == 10
        assert settings.scheduler.signals == [SignalType.PRICING, SignalType.BRANDING]
        assert settings.guardrail.max_failures == 5
        assert settings.guardrail.volatile_rate == 0.7
        assert settings.plans == {"pro": {"daily_crawl_cap": 100}}

    def test_environment_overrides_yaml(self, tmp_path, clean_env):
        config = tmp_path / "monitor.yml"
        config.write_text("storage:\n  db_path: from-yaml.db\n")
        clean_env.setenv("DB_PATH", "from-env.db")
        clean_env.setenv("SCHEDULER_CRON", "30 5 * * *")
        settings = load_settings(str(config))
        assert settings.storage.db_path == "from-env.db"
        assert settings.scheduler.cron == "30 5 * * *"

    def test_missing_file_uses_defaults(self, tmp_path, clean_env):
        settings = load_settings(str(tmp_path / "absent.yml"))
        assert settings == Settings()

    def test_concurrency_is_bounded(self):
        with pytest.raises(ValueError):
            Settings.model_validate({"scheduler": {"concurrency": 10}})


class TestCronScheduler:
    @pytest.mark.parametrize("expression,valid", [
        ("0 6 * * *", True),
        ("*/15 * * * 1-5", True),
        ("0 6 * *", False),
        ("61 6 * * *", False),
    ])
    def test_validate_cron_expression(self, expression, valid):
        assert validate_cron_expression(expression) is valid

    async def test_app_registers_daily_job(self):
        scheduler = Scheduler(enable_persistence=False)
        monitor = MonitorApp()
        await scheduler.start()
        try:
            monitor.schedule(scheduler)
            jobs = scheduler.list_jobs()
            assert DAILY_JOB_ID in jobs
            assert jobs[DAILY_JOB_ID]["next_run"] is not None
            assert app_module._active is monitor
        finally:
            await scheduler.stop()
            await monitor.close()
        assert app_module._active is None

    async def test_invalid_cron_is_rejected(self):
        scheduler = Scheduler(enable_persistence=False)
        with pytest.raises(ValueError):
            scheduler.add_cron_job(scheduled_run, "not a cron")

    async def test_scheduled_run_without_app(self):
        assert await scheduled_run() is None


class FakeHttp:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def post_json(self, url, data, **kwargs):
        self.calls.append((url, data, kwargs))
        if self.error:
            raise self.error
        return self.response

    async def get_json(self, url, **kwargs):
        self.calls.append((url, None, kwargs))
        if self.error:
            raise self.error
        return self.response


CHANGE = ChangeRecord(
    signal=SignalType.PRICING, kind="price_increase", field="plans.pro.price",
    old_value="$29/mo", new_value="$39/mo", severity=Severity.HIGH, score=0.9,
    description="Pro price increased by 34%",
)


class TestProviders:
    async def test_local_evidence_store(self, tmp_path):
        store = LocalEvidenceStore(str(tmp_path / "evidence"))
        path = await store.upload("t-pro", "us", b"\x89PNG")
        assert path.startswith(str(tmp_path / "evidence" / "t-pro" / "us"))
        assert path.endswith(".png")
        with open(path, "rb") as f:
            assert f.read() == b"\x89PNG"

    async def test_explanation_provider_posts_change(self):
        http = FakeHttp({"explanation": "Globex is moving upmarket."})
        provider = HttpExplanationProvider(http, "https://explain.test/v1", "secret")
        assert await provider.explain(CHANGE, "Globex") == "Globex is moving upmarket."

        url, payload, kwargs = http.calls[0]
        assert url == "https://explain.test/v1"
        assert payload["competitor"] == "Globex"
        assert payload["before"] == "$29/mo"
        assert kwargs["headers"] == {"Authorization": "Bearer secret"}

    @pytest.mark.parametrize("http", [
        FakeHttp({"explanation": "   "}),
        FakeHttp(["not", "a", "dict"]),
        FakeHttp(error=aiohttp.ClientConnectionError("refused")),
    ])
    async def test_explanation_provider_failures(self, http):
        provider = HttpExplanationProvider(http, "https://explain.test/v1")
        assert await provider.explain(CHANGE, "Globex") is None

    async def test_exchange_rates_without_endpoint_use_fallback(self):
        assert await ExchangeRateProvider().rates() == FALLBACK_RATES

    async def test_exchange_rates_are_fetched_once_and_cached(self):
        http = FakeHttp({"base": "USD", "rates": {"inr": 84.0, "EUR": 0.9, "BAD": "x"}})
        provider = ExchangeRateProvider(http, "https://rates.test/latest")
        rates = await provider.rates()
        assert rates["INR"] == 84.0
        assert rates["EUR"] == 0.9
        assert rates["GBP"] == FALLBACK_RATES["GBP"]
        assert "BAD" not in rates
        assert await provider.rates() == rates
        assert len(http.calls) == 1

    @pytest.mark.parametrize("http", [
        FakeHttp({"base": "USD"}),
        FakeHttp(error=aiohttp.ClientConnectionError("refused")),
    ])
    async def test_exchange_rate_failures_fall_back(self, http):
        provider = ExchangeRateProvider(http, "https://rates.test/latest")
        assert await provider.rates() == FALLBACK_RATES
