import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger  # type: ignore

from .config import EngineSettings, LoggingConfig, load_settings
from .domain.interfaces.evidence_provider import EvidenceProvider
from .domain.interfaces.reasoning_provider import ReasoningProvider
from .domain.models.common_types import ApiCredentials
from .domain.services.stage_engine import StageEngine
from .services.cost_guardrail import CostGuardrail


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """
    Replace loguru's default sink with the configured console and file sinks.

    Args:
        config: Logging settings. Defaults to ``LoggingConfig()``.
    """
    config = config or LoggingConfig()
    logger.remove()
    if config.enable_console:
        logger.add(
            sys.stderr,
            level=config.level.upper(),
            format=config.format,
            colorize=True,
        )
    if config.file_path:
        Path(config.file_path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            config.file_path,
            level=config.level.upper(),
            rotation=config.rotation,
            format=config.format,
            colorize=False,
            enqueue=True,
        )
    logger.info("Logger configured with level: {}", config.level.upper())


def create_engine(
    settings: Optional[EngineSettings] = None,
    credentials: Optional[ApiCredentials] = None,
    config_path: Optional[Union[str, Path]] = None,
    reasoning_provider: Optional[ReasoningProvider] = None,
    search_provider: Optional[EvidenceProvider] = None,
) -> StageEngine:
    """
    Build a ``StageEngine`` with explicitly constructed collaborators.

    Settings come from ``config_path`` (or the default settings file) when not
    given; credentials come from the environment when not given.
    """
    settings = settings or load_settings(config_path)
    credentials = credentials or ApiCredentials.from_env()
    guardrail = CostGuardrail(settings.guardrail)
    engine = StageEngine(
        credentials=credentials,
        settings=settings,
        guardrail=guardrail,
        reasoning_provider=reasoning_provider,
        search_provider=search_provider,
    )
    logger.info(f"StageEngine created for app '{settings.app.name}' v{settings.app.version}")
    return engine
