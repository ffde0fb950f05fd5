import pytest
import yaml

from asr_got_engine.config import (
    DEFAULT_SETTINGS_PATH,
    EngineSettings,
    PipelineParams,
    load_settings,
    validate_config_schema,
)


# --- Test Fixtures ---
@pytest.fixture
def settings_file(tmp_path):
    """A minimal settings YAML overriding a few pipeline and guardrail values."""
    data = {
        "app": {"name": "Test Engine"},
        "pipeline": {"hypotheses_per_dimension": 4, "dimensions": ["Scope", "Knowledge Gaps"]},
        "guardrail": {"max_daily_cost": 5.0},
    }
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def test_load_from_file(settings_file):
    settings = load_settings(settings_file)

    assert settings.app.name == "Test Engine"
    assert settings.pipeline.hypotheses_per_dimension == 4
    assert settings.pipeline.dimensions == ["Scope", "Knowledge Gaps"]
    assert settings.guardrail.max_daily_cost == 5.0
    # untouched sections keep their defaults
    assert settings.queue.max_concurrent == 3


def test_environment_overrides_file(settings_file, monkeypatch):
    monkeypatch.setenv("ASR_GOT_PIPELINE__HYPOTHESES_PER_DIMENSION", "5")

    settings = load_settings(settings_file)

    assert settings.pipeline.hypotheses_per_dimension == 5
    assert settings.pipeline.dimensions == ["Scope", "Knowledge Gaps"]


def test_bundled_settings_file_is_valid():
    assert DEFAULT_SETTINGS_PATH.exists()
    settings = load_settings()
    assert settings.pipeline.timeout_for(4) == 120.0
    assert settings.pipeline.timeout_for(1) == settings.pipeline.call_timeout_seconds


def test_missing_explicit_path(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "absent.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("pipeline: [unclosed\n")
    with pytest.raises(ValueError, match="Invalid YAML"):
        load_settings(path)


@pytest.mark.parametrize(
    "data",
    [
        {"unknown_section": {}},
        {"pipeline": {"hypotheses_per_dimension": 0}},
        {"guardrail": {"warning_threshold": 1.5}},
        {"queue": {"max_concurrent": 0}},
    ],
)
def test_schema_violations(data):
    with pytest.raises(ValueError):
        validate_config_schema(data)


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_settings(path).pipeline == PipelineParams()


def test_stage_timeouts():
    params = PipelineParams(call_timeout_seconds=10, stage_call_timeouts={7: 30})
    assert params.timeout_for(7) == 30
    assert params.timeout_for(3) == 10


def test_engine_settings_defaults():
    settings = EngineSettings()
    assert len(settings.pipeline.dimensions) == 7
    assert settings.pipeline.root_confidence == [0.8, 0.7, 0.6, 0.8]
