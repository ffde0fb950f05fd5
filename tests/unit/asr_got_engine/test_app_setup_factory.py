import sys

import pytest
from loguru import logger

from asr_got_engine.app_setup import configure_logging, create_engine
from asr_got_engine.config import EngineSettings, LoggingConfig
from asr_got_engine.domain.models.common_types import ApiCredentials
from asr_got_engine.services.cost_guardrail import GuardrailLimits


# --- Test Fixtures ---
@pytest.fixture
def restore_logger():
    """Put loguru back to a plain stderr sink after the test reconfigures it."""
    yield
    logger.remove()
    logger.add(sys.stderr)


def test_credentials_from_env(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "gem-key")
    monkeypatch.delenv("PERPLEXITY_API_KEY", raising=False)

    creds = ApiCredentials.from_env()

    assert creds.reasoning_api_key.get_secret_value() == "gem-key"
    assert creds.search_api_key is None
    assert not creds.has_search
    assert "gem-key" not in repr(creds)


async def test_create_engine_uses_settings_and_injected_providers(reasoning_provider, search_provider):
    settings = EngineSettings(guardrail=GuardrailLimits(max_daily_cost=1.5))
    creds = ApiCredentials.model_validate({"reasoning_api_key": "abc"})

    async with create_engine(
        settings=settings,
        credentials=creds,
        reasoning_provider=reasoning_provider,
        search_provider=search_provider,
    ) as engine:
        assert engine.settings is settings
        assert engine.guardrail.get_limits().max_daily_cost == 1.5
        result = await engine.execute_stage(1, "What limits battery life?")

    assert result.stage == 1
    assert len(reasoning_provider.requests) == 1


def test_configure_logging_writes_file_sink(tmp_path, restore_logger):
    log_file = tmp_path / "logs" / "engine.log"

    configure_logging(LoggingConfig(level="debug", file_path=str(log_file), enable_console=False))
    logger.info("pipeline started")
    logger.remove()  # flushes the enqueued file sink

    contents = log_file.read_text()
    assert "Logger configured with level: DEBUG" in contents
    assert "pipeline started" in contents
