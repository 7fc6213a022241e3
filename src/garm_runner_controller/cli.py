"""
Command-line interface for the GARM runner controller.

Loads and validates configuration, runs the alignment loop, and offers
one-shot inspection and alignment of a single pool.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import typer
import yaml
from pydantic import ValidationError

from .controllers.pool_controller import GarmRunnerController
from .models.config import ControllerConfiguration
from .models.runner import AlignmentOutcome, Runner
from .utils.garm_client import GarmError


def _log_processors(renderer: Any) -> List[Any]:
    """Processor chain shared by the JSON and console log formats."""
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


structlog.configure(
    processors=_log_processors(structlog.processors.JSONRenderer()),
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

app = typer.Typer(
    name="garm-runner-controller",
    help="Idle runner alignment for GARM pools",
    no_args_is_help=True
)

logger = structlog.get_logger()

PASSWORD_ENV = "GARM_PASSWORD"


def load_configuration(config_path: str) -> ControllerConfiguration:
    """
    Load and validate configuration from file.

    The GARM password may be left out of the file and supplied through
    the ``GARM_PASSWORD`` environment variable instead.

    Raises:
        typer.Exit: If configuration is missing or invalid
    """
    config_file = Path(config_path)
    if not config_file.exists():
        typer.echo(f"Error: Configuration file not found: {config_path}", err=True)
        raise typer.Exit(1)

    try:
        with open(config_file, "r") as f:
            if config_path.endswith(".json"):
                config_data = json.load(f)
            else:
                config_data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        typer.echo(f"Error loading configuration: {e}", err=True)
        raise typer.Exit(1)

    if not isinstance(config_data, dict):
        typer.echo("Error loading configuration: expected a mapping at the top level", err=True)
        raise typer.Exit(1)

    garm = config_data.get("garm")
    if isinstance(garm, dict) and not garm.get("password") and os.environ.get(PASSWORD_ENV):
        garm["password"] = os.environ[PASSWORD_ENV]

    try:
        return ControllerConfiguration(**config_data)
    except ValidationError as e:
        typer.echo("Configuration validation error:", err=True)
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"])
            typer.echo(f"  {location}: {error['msg']}", err=True)
        raise typer.Exit(1)


def setup_logging(log_level: str, log_format: str = "json") -> None:
    """Route structlog through stdlib logging at ``log_level``."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level.upper(), logging.INFO))

    if log_format == "console":
        structlog.configure(processors=_log_processors(structlog.dev.ConsoleRenderer()))


def _config_option() -> Any:
    return typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Controller configuration file (YAML or JSON)",
        envvar="GARM_CONTROLLER_CONFIG"
    )


def sample_configuration() -> Dict[str, Any]:
    return {
        "garm": {
            "server": "https://garm.example.com",
            "username": "admin",
            "password": "REPLACE_WITH_ACTUAL_PASSWORD",
            "init": True,
            "email": "admin@example.com",
            "tls_verify": True,
            "request_timeout": 30
        },
        "operator": {
            "sync_runners_interval": 30,
            "min_idle_runners_age": 600,
            "pool_concurrency": 4,
            "call_timeout": 120,
            "pool_source": "static",
            "watch_namespace": "",
            "metrics_port": 8080,
            "enable_metrics": True,
            "log_level": "INFO"
        },
        "pools": [
            {
                "name": "ubuntu-small",
                "id": "REPLACE_WITH_GARM_POOL_ID",
                "min_idle_runners": 2
            }
        ]
    }


@app.command()
def run(
    config: str = _config_option(),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level", "-l",
        help="Logging level (defaults to operator.log_level)",
        envvar="LOG_LEVEL"
    ),
    log_format: str = typer.Option(
        "json",
        "--log-format",
        help="Log format (json or console)",
        envvar="LOG_FORMAT"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Validate configuration without starting controller"
    )
) -> None:
    """
    Start the GARM runner controller.
    """
    controller_config = load_configuration(config)
    setup_logging(log_level or controller_config.operator.log_level, log_format)

    if dry_run:
        typer.echo("Configuration validation successful (dry run)")
        typer.echo(f"Pool source: {controller_config.operator.pool_source.value}")
        typer.echo(f"Pools configured: {len(controller_config.pools)}")
        return

    controller = GarmRunnerController(controller_config)
    try:
        asyncio.run(_run_controller(controller))
    except KeyboardInterrupt:
        typer.echo("\nShutdown requested by user")
    except Exception as e:
        typer.echo(f"Controller failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def validate(
    config: str = _config_option()
) -> None:
    """
    Validate configuration file without starting the controller.
    """
    controller_config = load_configuration(config)

    typer.echo("Configuration validation successful")
    typer.echo(f"GARM server: {controller_config.garm.server}")
    typer.echo(f"Pool source: {controller_config.operator.pool_source.value}")
    typer.echo(f"Minimum idle age: {controller_config.operator.min_idle_runners_age}s")
    for pool in controller_config.pools:
        typer.echo(f"  {pool.name} ({pool.id}): min_idle_runners={pool.min_idle_runners}")

    if not controller_config.garm.tls_verify:
        typer.echo("Warning: TLS verification is disabled", err=True)


@app.command()
def generate_config(
    output: str = typer.Option(
        "config.yaml",
        "--output", "-o",
        help="Output configuration file path"
    ),
    format: str = typer.Option(
        "yaml",
        "--format", "-f",
        help="Configuration format (yaml or json)"
    )
) -> None:
    """
    Generate a sample configuration file.
    """
    sample_config = sample_configuration()

    try:
        with open(Path(output), "w") as f:
            if format.lower() == "json":
                json.dump(sample_config, f, indent=2)
            else:
                yaml.safe_dump(sample_config, f, default_flow_style=False, indent=2, sort_keys=False)
    except OSError as e:
        typer.echo(f"Failed to generate configuration: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Sample configuration generated: {output}")
    typer.echo("Please update the GARM server, credentials and pool IDs before use")


@app.command()
def align(
    pool: str = typer.Argument(..., help="Pool name or GARM pool ID"),
    config: str = _config_option(),
    apply: bool = typer.Option(
        False,
        "--apply",
        help="Delete the selected runners instead of only listing them"
    )
) -> None:
    """
    Align the idle runners of one pool once.
    """
    controller_config = load_configuration(config)
    try:
        pool_config = controller_config.pool(pool)
    except KeyError:
        typer.echo(f"Pool not found in configuration: {pool}", err=True)
        raise typer.Exit(1)

    controller = GarmRunnerController(controller_config)
    try:
        outcome = asyncio.run(_align_once(controller, pool_config, dry_run=not apply))
    except GarmError as e:
        typer.echo(f"Alignment failed: {e}", err=True)
        raise typer.Exit(1)

    _print_outcome(pool_config.name, outcome)
    if outcome.report.failed:
        raise typer.Exit(2)


@app.command()
def runners(
    pool: str = typer.Argument(..., help="Pool name or GARM pool ID"),
    config: str = _config_option(),
    format: str = typer.Option(
        "table",
        "--format", "-f",
        help="Output format (table or json)"
    )
) -> None:
    """
    List the runners of a pool.
    """
    controller_config = load_configuration(config)
    try:
        pool_id = controller_config.pool(pool).id
    except KeyError:
        pool_id = pool

    controller = GarmRunnerController(controller_config)
    try:
        pool_runners = asyncio.run(_fetch_once(controller, pool_id))
    except GarmError as e:
        typer.echo(f"Listing runners failed: {e}", err=True)
        raise typer.Exit(1)

    if format.lower() == "json":
        typer.echo(json.dumps([r.model_dump(mode="json") for r in pool_runners], indent=2))
        return

    typer.echo(f"{'NAME':<40} {'STATUS':<16} {'RUNNER STATUS':<14} UPDATED")
    for runner in pool_runners:
        typer.echo(
            f"{runner.name:<40} {runner.status.value:<16} "
            f"{runner.runner_status.value:<14} {runner.updated_at.isoformat()}"
        )


def _print_outcome(pool_name: str, outcome: AlignmentOutcome) -> None:
    typer.echo(f"Pool {pool_name}: {outcome.runners} runners, {outcome.idle} idle")
    if not outcome.selected:
        typer.echo("Nothing to remove")
        return

    verb = "Would remove" if outcome.dry_run else "Selected"
    typer.echo(f"{verb} {len(outcome.selected)} runner(s):")
    for name in outcome.selected:
        typer.echo(f"  - {name}")

    if not outcome.dry_run:
        typer.echo(f"Deleted: {len(outcome.report.deleted)}")
        for name, error in outcome.report.failed.items():
            typer.echo(f"Failed: {name}: {error}", err=True)


async def _align_once(controller: GarmRunnerController, pool, dry_run: bool) -> AlignmentOutcome:
    try:
        return await controller.align_pool(pool, dry_run=dry_run)
    finally:
        await controller.session.close()


async def _fetch_once(controller: GarmRunnerController, pool_id: str) -> List[Runner]:
    try:
        return await controller.fetch_pool_runners(pool_id)
    finally:
        await controller.session.close()


async def _run_controller(controller: GarmRunnerController) -> None:
    """Run the controller with proper async handling."""
    try:
        await controller.start()
    except Exception as e:
        logger.error("Controller error", error=str(e))
        raise
    finally:
        await controller.stop()


def main() -> None:
    """Main entry point for the CLI application."""
    app()


if __name__ == "__main__":
    main()
