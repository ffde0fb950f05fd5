import threading
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.cost_guardrail import GuardrailLimits

DEFAULT_SETTINGS_PATH = Path(__file__).resolve().parents[2] / "config" / "settings.yaml"

DEFAULT_DIMENSIONS = [
    "Scope",
    "Objectives",
    "Constraints",
    "Data Needs",
    "Use Cases",
    "Potential Biases",
    "Knowledge Gaps",
]

_config_lock = threading.RLock()


class AppSettingsModel(BaseModel):
    name: str = "ASR-GoT Engine"
    version: str = "0.1.0"
    log_level: str = "INFO"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )
    file_path: Optional[str] = None
    rotation: str = "10 MB"
    enable_console: bool = True


class PipelineParams(BaseModel):
    """Tunable parameters of the nine reasoning stages."""

    dimensions: list[str] = Field(default_factory=lambda: list(DEFAULT_DIMENSIONS))
    hypotheses_per_dimension: int = Field(default=3, ge=1, le=10)
    evidence_per_hypothesis: int = Field(default=2, ge=1, le=10)
    root_confidence: list[float] = Field(default_factory=lambda: [0.8, 0.7, 0.6, 0.8])
    dimension_confidence: list[float] = Field(default_factory=lambda: [0.7, 0.8, 0.7, 0.7])
    hypothesis_confidence: list[float] = Field(default_factory=lambda: [0.6, 0.7, 0.6, 0.5])
    prune_confidence_threshold: float = Field(default=0.2, ge=0.0, le=1.0)
    prune_impact_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    edge_prune_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    merge_similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    subgraph_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    high_impact_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    bridge_similarity_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    default_max_tokens: int = Field(default=2000, gt=0)
    truncation_retry_multiplier: int = Field(default=2, ge=2)
    call_timeout_seconds: float = Field(default=60.0, gt=0)
    stage_call_timeouts: dict[int, float] = Field(default_factory=dict)

    def timeout_for(self, stage: int) -> float:
        return self.stage_call_timeouts.get(stage, self.call_timeout_seconds)


class QueueSettings(BaseModel):
    max_concurrent: int = Field(default=3, ge=1)
    max_queue_size: int = Field(default=100, ge=1)
    result_retention_seconds: float = Field(default=30.0, ge=0)


class ReasoningServiceSettings(BaseModel):
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.5-pro"
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    timeout_seconds: float = 120.0


class SearchServiceSettings(BaseModel):
    base_url: str = "https://api.perplexity.ai"
    model: str = "sonar"
    timeout_seconds: float = 60.0


class SettingsFileModel(BaseModel):
    """Schema for validating `settings.yaml`."""

    app: AppSettingsModel = Field(default_factory=AppSettingsModel)
    pipeline: PipelineParams = Field(default_factory=PipelineParams)
    guardrail: GuardrailLimits = Field(default_factory=GuardrailLimits)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    reasoning: ReasoningServiceSettings = Field(default_factory=ReasoningServiceSettings)
    search: SearchServiceSettings = Field(default_factory=SearchServiceSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(extra="forbid")


class EngineSettings(BaseSettings):
    """Central runtime settings loaded from YAML and environment."""

    app: AppSettingsModel = Field(default_factory=AppSettingsModel)
    pipeline: PipelineParams = Field(default_factory=PipelineParams)
    guardrail: GuardrailLimits = Field(default_factory=GuardrailLimits)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    reasoning: ReasoningServiceSettings = Field(default_factory=ReasoningServiceSettings)
    search: SearchServiceSettings = Field(default_factory=SearchServiceSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="ASR_GOT_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )


def validate_config_schema(config_data: dict) -> bool:
    """Validate settings data against the Pydantic schema."""

    try:
        SettingsFileModel.model_validate(config_data)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc
    return True


def load_settings(path: Optional[Union[str, Path]] = None) -> EngineSettings:
    """
    Load engine settings from a YAML file and environment variables.

    The YAML file (``path`` or ``config/settings.yaml`` when it exists) is
    validated against ``SettingsFileModel`` and used as the base; environment
    variables prefixed ``ASR_GOT_`` take precedence.

    Raises:
        FileNotFoundError: an explicit ``path`` does not exist.
        ValueError: the file is not valid YAML or fails schema validation.
    """
    data: dict[str, Any] = {}
    if path is not None:
        yaml_path = Path(path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")
    else:
        yaml_path = DEFAULT_SETTINGS_PATH
    if yaml_path.exists():
        with _config_lock, open(yaml_path) as fh:
            try:
                data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {yaml_path}: {exc}") from exc
        validate_config_schema(data)
    # init kwargs outrank env in pydantic-settings, so env overrides are
    # merged on top of the file data explicitly
    env_only = EngineSettings()
    merged = _deep_merge(data, env_only.model_dump(exclude_unset=True))
    return EngineSettings(**merged)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
