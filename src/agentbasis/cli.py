"""
agentbasis CLI - inspect the resolved configuration and test connectivity.

    agentbasis config [--json]   resolved config (api key masked)
    agentbasis ping              send one span and flush it
"""

import asyncio
import json
import sys
from pathlib import Path

import click

from ._version import __version__
from .config.loader import load_config
from .core.client import AgentBasis
from .core.spans import SpanOutcome
from .errors import ConfigurationError

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 3

PING_SPAN_NAME = "agentbasis.ping"

_config_option = click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML configuration file (default: $AGENTBASIS_CONFIG)",
)


@click.group()
@click.version_option(version=__version__, prog_name="agentbasis")
def main() -> None:
    """agentbasis - telemetry SDK for LLM-powered agents."""
    pass


@main.command("config")
@_config_option
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
def show_config(config_path: Path | None, as_json: bool) -> None:
    """Print the resolved configuration."""
    try:
        config = load_config(config_path=config_path)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    values = config.model_dump(mode="json")
    values["api_key"] = config.masked_api_key()

    if as_json:
        click.echo(json.dumps(values, indent=2))
        return

    width = max(len(key) for key in values)
    for key, value in values.items():
        click.echo(f"  {key.ljust(width)}  {value}")


async def _ping(timeout_ms: int) -> bool:
    client = AgentBasis.get_instance()
    handle = client.spans.start_span(PING_SPAN_NAME)
    client.spans.end_span(handle, SpanOutcome())
    try:
        return await AgentBasis.flush(timeout_ms)
    finally:
        await AgentBasis.shutdown()


@main.command()
@_config_option
@click.option("--timeout-ms", default=10_000, show_default=True, type=click.IntRange(min=100))
def ping(config_path: Path | None, timeout_ms: int) -> None:
    """Send one span to the backend and flush it."""
    try:
        client = AgentBasis.init(config_path=config_path)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    target = client.config.base_url if client.config.exporter == "http" else client.config.exporter
    if asyncio.run(_ping(timeout_ms)):
        click.echo(f"OK: span delivered to {target}")
        sys.exit(EXIT_SUCCESS)

    click.echo(f"FAILED: could not deliver span to {target}", err=True)
    sys.exit(EXIT_FAILED)


if __name__ == "__main__":
    main()
