import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv

from .app_setup import configure_logging, create_engine
from .config import load_settings
from .domain.models.common_types import StageResult
from .domain.services.exceptions import PipelineError
from .domain.services.stage_engine import LAST_STAGE
from .services.cost_guardrail import CostGuardrail

app = typer.Typer(add_completion=False, help="ASR-GoT staged reasoning engine")


def _load_env() -> None:
    if Path(".env").exists():
        load_dotenv(".env")


async def _run(query: str, through: int, config: Optional[Path], as_json: bool) -> None:
    settings = load_settings(config)
    configure_logging(settings.logging)
    async with create_engine(settings=settings) as engine:
        last: Optional[StageResult] = None
        for stage_number in range(1, through + 1):
            last = await engine.execute_stage(stage_number, query)
            if not as_json:
                flag = " (fallback)" if last.metadata.get("fallback_used") else ""
                typer.secho(
                    f"[{stage_number}/{through}] {last.metadata.get('summary', '')}{flag}",
                    fg="green",
                )
        if as_json and last is not None:
            typer.echo(last.model_dump_json(indent=2))
        elif last is not None:
            typer.echo("")
            typer.echo(last.content)


@app.command()
def run(
    query: str = typer.Argument(..., help="Research question to analyse"),
    through: int = typer.Option(LAST_STAGE, "--through", "-t", min=1, max=LAST_STAGE, help="Last stage to execute"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a settings YAML file"),
    as_json: bool = typer.Option(False, "--json", help="Print the final StageResult as JSON"),
) -> None:
    """Run the reasoning pipeline for QUERY through the given stage."""
    _load_env()
    try:
        asyncio.run(_run(query, through, config, as_json))
    except (PipelineError, FileNotFoundError, ValueError) as e:
        typer.secho(f"Error: {e}", fg="red", err=True)
        raise typer.Exit(1)


@app.command()
def usage(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a settings YAML file"),
) -> None:
    """Print the configured cost guardrail limits."""
    _load_env()
    try:
        settings = load_settings(config)
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"Error: {e}", fg="red", err=True)
        raise typer.Exit(1)
    limits = CostGuardrail(settings.guardrail).get_limits()
    typer.echo(json.dumps(limits.model_dump(), indent=2))


if __name__ == "__main__":
    app()
