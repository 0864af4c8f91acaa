"""Convergence engine CLI (converge).

Usage:
    converge graph myinfra.tasks:build_tasks
    converge run myinfra.tasks:build_tasks --provider myinfra.cloud:Provider
    converge run myinfra.tasks:TASKS --provider myinfra.cloud:provider --output yaml

Exit codes:
    0  converged (with or without changes)
    1  one or more tasks failed
    2  malformed task graph, bad reference or invalid configuration
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from typing import Any, NoReturn

import click
import yaml

from .config import ConfigurationError, EngineConfig
from .errors import GraphMalformedError
from .graph import build_graph
from .main import LoadError, converge, load_provider, load_tasks, setup_logging

EXIT_TASK_FAILURES = 1
EXIT_USAGE = 2

OUTPUT_FORMATS = ("json", "yaml")
LOG_LEVELS = ("debug", "info", "warning", "error")


def render(report: dict[str, Any], output: str) -> str:
    """Serialize a report for stdout."""
    if output == "yaml":
        return yaml.safe_dump(report, sort_keys=False, default_flow_style=False)
    return json.dumps(report, indent=2, default=str)


def fail(message: str, code: int = EXIT_USAGE) -> NoReturn:
    """Print message to stderr and exit with code."""
    click.secho(f"Error: {message}", fg="red", err=True)
    raise SystemExit(code)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS),
    default="warning",
    show_default=True,
    help="Structured log verbosity (logs go to stderr).",
)
def cli(log_level: str) -> None:
    """Declarative resource convergence engine.

    \b
    TASKS and --provider are import references (module:attribute) naming
    an object or a zero-argument callable that returns one.
    """
    setup_logging(getattr(logging, log_level.upper()))


@cli.command()
@click.argument("tasks_ref", metavar="TASKS")
def graph(tasks_ref: str) -> None:
    """Print tasks in dependency order."""
    try:
        tasks = load_tasks(tasks_ref)
        dependency_graph = build_graph(tasks)
        order = dependency_graph.topological_sort()
    except (LoadError, GraphMalformedError) as e:
        fail(str(e))

    for name in order:
        deps = dependency_graph.nodes[name].depends_on
        line = f"{name} ({tasks[name].kind})"
        if deps:
            line += f" <- {', '.join(sorted(deps))}"
        click.echo(line)


@cli.command()
@click.argument("tasks_ref", metavar="TASKS")
@click.option(
    "--provider", "provider_ref", required=True, help="Provider reference (module:attribute)."
)
@click.option(
    "--output",
    type=click.Choice(OUTPUT_FORMATS),
    default="json",
    show_default=True,
    help="Run report format.",
)
@click.option(
    "--no-fail-fast",
    is_flag=True,
    help="Keep starting independent tasks after a failure (overrides CONVERGE_FAIL_FAST).",
)
@click.option(
    "--max-concurrency",
    type=int,
    default=None,
    help="Reconciliations in flight (default from CONVERGE_MAX_CONCURRENCY).",
)
def run(
    tasks_ref: str,
    provider_ref: str,
    output: str,
    no_fail_fast: bool,
    max_concurrency: int | None,
) -> None:
    """Converge TASKS against the provider and print the run report."""
    try:
        config = EngineConfig.from_env()
        overrides: dict[str, Any] = {}
        if no_fail_fast:
            overrides["fail_fast"] = False
        if max_concurrency is not None:
            overrides["max_concurrency"] = max_concurrency
        if overrides:
            config = dataclasses.replace(config, **overrides)
    except ConfigurationError as e:
        fail(str(e))

    try:
        tasks = load_tasks(tasks_ref)
        provider = load_provider(provider_ref)
        result = asyncio.run(converge(tasks, provider, config))
    except (LoadError, GraphMalformedError) as e:
        fail(str(e))

    click.echo(render(result.to_dict(), output))

    if not result.success:
        click.secho(f"Convergence failed: {result.status.value}", fg="red", err=True)
        raise SystemExit(EXIT_TASK_FAILURES)
