#!/usr/bin/env python3
"""
hdb-wire Main Entry Point
=========================

Run SQL against a HANA server from the command line.

Usage:
    python -m hdb_wire query --config hdb.yaml "SELECT * FROM DUMMY"
    python -m hdb_wire query -H hana.example.com -p 30015 -u SYSTEM "SELECT 1 FROM DUMMY"

Examples:
    # Query with a config file
    hdb-wire query -c hdb.yaml "SELECT TABLE_NAME FROM TABLES"

    # Password from the environment
    HDB_PASSWORD=secret hdb-wire query -H localhost -u SYSTEM "SELECT 1 FROM DUMMY"

    # Generate sample config
    hdb-wire generate-config > hdb.yaml
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

import typer
import yaml

from hdb_wire import __version__
from hdb_wire.config import create_sample_config, load_params_with_env
from hdb_wire.connection import Connection
from hdb_wire.errors import HdbWireError
from hdb_wire.lob import Lob
from hdb_wire.params import ConnectParams
from hdb_wire.statement import ResultSetOutcome, RowsAffected, BatchOutcome

app = typer.Typer(
    name="hdb-wire",
    help="Command line client for SAP HANA",
    add_completion=False,
)


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


def setup_logging(level: str = "INFO"):
    """Configure logging"""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from asyncio
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def format_value(value) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, Lob):
        return repr(value)
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    return str(value)


async def run_query(params: ConnectParams, sql: str) -> list:
    """Execute one statement and return the output lines"""
    lines = []
    async with Connection(params) as connection:
        outcome = await connection.execute(sql)
        if isinstance(outcome, ResultSetOutcome):
            async with outcome.result_set as result_set:
                lines.append("\t".join(str(name) for name in result_set.columns))
                for row in await result_set.fetch_all(resolve_lobs=True):
                    lines.append("\t".join(format_value(value) for value in row))
        elif isinstance(outcome, RowsAffected):
            lines.append(f"{outcome.count} rows affected")
        elif isinstance(outcome, BatchOutcome):
            lines.append(f"{len(outcome.items)} statements executed")
        else:
            lines.append("OK")
    return lines


def version_callback(value: bool):
    if value:
        typer.echo(f"hdb-wire {__version__}")
        raise typer.Exit()


@app.command("generate-config")
def generate_config():
    """Generate a sample configuration file."""
    typer.echo(create_sample_config())


@app.command("query")
def query(
    sql: Annotated[str, typer.Argument(help="SQL statement to execute")],
    config: Annotated[
        Optional[Path],
        typer.Option(
            "-c",
            "--config",
            help="Path to YAML configuration file",
            exists=True,
            readable=True,
        ),
    ] = None,
    host: Annotated[
        str,
        typer.Option("-H", "--host", help="Server address"),
    ] = "localhost",
    port: Annotated[
        int,
        typer.Option("-p", "--port", help="Server SQL port"),
    ] = 30015,
    user: Annotated[
        str,
        typer.Option("-u", "--user", help="Database user"),
    ] = "SYSTEM",
    password: Annotated[
        Optional[str],
        typer.Option("-P", "--password", envvar="HDB_PASSWORD", help="Password"),
    ] = None,
    tls: Annotated[
        bool,
        typer.Option("--tls", help="Connect with TLS"),
    ] = False,
    log_level: Annotated[
        LogLevel,
        typer.Option("-l", "--log-level", help="Logging level"),
    ] = LogLevel.WARNING,
):
    """Execute one SQL statement and print the result."""
    setup_logging(log_level.value)
    logger = logging.getLogger(__name__)

    # Load or build parameters
    try:
        if config:
            params = load_params_with_env(str(config))
            logger.info(f"Loaded configuration from {config}")
        else:
            params = ConnectParams(host=host, port=port, user=user, password=password or "",
                                   use_tls=tls)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    try:
        lines = asyncio.run(run_query(params, sql))
    except HdbWireError as e:
        logger.error(f"Query failed: {e}")
        raise typer.Exit(1)

    for line in lines:
        typer.echo(line)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option("-v", "--version", callback=version_callback, is_eager=True, help="Show version"),
    ] = False,
):
    """Command line client for SAP HANA."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


if __name__ == "__main__":
    app()
