from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import NoReturn, Optional

import typer

from .bridge.service import create_bridge_service
from .config import BridgeConfig, BridgeConfigError, load_bridge_config
from .core.logging_utils import LogConfig, log_event, setup_rotating_logger

LOGGER_NAME = "d2bs_bridge"
SERVICE_LOG_FILE = "bridge.log"

app = typer.Typer(add_completion=False, help="Bridge d2bs TCP clients to Discord threads.")


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def _load_config(path: Optional[Path], config_file: Optional[Path]) -> BridgeConfig:
    try:
        return load_bridge_config(path, config_path=config_file)
    except BridgeConfigError as exc:
        raise_exit(str(exc), cause=exc)


def build_logger(config: BridgeConfig) -> logging.Logger:
    log_path = None if config.containerized else config.log_dir / SERVICE_LOG_FILE
    return setup_rotating_logger(
        LOGGER_NAME,
        LogConfig(path=log_path, level=config.log_level, console=True),
    )


@app.command("start")
def start(
    path: Optional[Path] = typer.Option(
        None, "--path", help="Working directory holding .env and d2bs-bridge.yml"
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", help="YAML config file (overrides the default location)"
    ),
) -> None:
    """Run the TCP listener, delivery loop, sweeper and Discord gateway."""
    config = _load_config(path, config_file)
    logger = build_logger(config)
    log_event(logger, logging.INFO, "bridge.cli.start", root=str(config.root))
    service = create_bridge_service(config, logger=logger)
    try:
        asyncio.run(service.run_forever())
    except KeyboardInterrupt:
        typer.echo("Bridge stopped.")


@app.command("sweep")
def sweep(
    path: Optional[Path] = typer.Option(None, "--path", help="Working directory"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML config file"),
) -> None:
    """Delete expired archived threads once and exit."""
    config = _load_config(path, config_file)
    logger = build_logger(config)
    service = create_bridge_service(config, logger=logger)
    deleted = asyncio.run(service.run_sweep_once())
    typer.echo(f"Deleted {deleted} archived thread(s).")


@app.command("check-config")
def check_config(
    path: Optional[Path] = typer.Option(None, "--path", help="Working directory"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML config file"),
) -> None:
    """Validate configuration and print it with secrets redacted."""
    config = _load_config(path, config_file)
    typer.echo(json.dumps(config.redacted_summary(), indent=2))


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


__all__ = ["app", "main", "raise_exit"]
