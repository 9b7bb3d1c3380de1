"""CLI entry point for sagaflow.

Provides ``run``, ``inspect``, ``validate`` and ``backoff`` sub-commands
using Click and Rich for output formatting.

Pipelines are referenced as ``module:attribute`` where the attribute is
either a :class:`~sagaflow.pipeline.Pipeline` or a zero-argument
callable returning one.

Usage::

    sagaflow run shop.checkout:pipeline --context order_id=42 --rollback
    sagaflow inspect shop.checkout:build_pipeline
    sagaflow validate shop.checkout:pipeline --strict
    sagaflow backoff exponential --initial 100 --max 5000 --attempts 8
"""

from __future__ import annotations

import importlib
import logging
import os
import random
import sys
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from sagaflow.errors import ConfigError
from sagaflow.pipeline import Pipeline
from sagaflow.pipeline.validator import ValidationLevel, has_errors, validate_pipeline
from sagaflow.result import Err
from sagaflow.retry.backoff import BackoffStrategy, delay
from sagaflow.retry.engine import build_backoff

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def coerce_value(raw: str) -> str | int | float | bool:
    """Coerce a raw ``--context`` string to its typed form."""
    if raw.lower() in ("true", "false"):
        return raw.lower() == "true"
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        pass
    return raw


def _parse_context(pairs: tuple[str, ...]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(
                f"expected KEY=VALUE, got {pair!r}", param_hint="--context"
            )
        data[key.strip()] = coerce_value(raw.strip())
    return data


def load_pipeline(target: str) -> Pipeline:
    """Resolve ``module:attribute`` to a pipeline.

    The current directory is importable so local modules can be used.

    Raises:
        click.BadParameter: If the target cannot be imported or does not
            produce a :class:`Pipeline`.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise click.BadParameter(
            f"expected MODULE:ATTRIBUTE, got {target!r}", param_hint="TARGET"
        )
    cwd = os.getcwd()
    if cwd not in sys.path:
        sys.path.insert(0, cwd)
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise click.BadParameter(
            f"cannot import {module_name!r}: {exc}", param_hint="TARGET"
        ) from exc

    obj: Any = module
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as exc:
            raise click.BadParameter(
                f"{module_name!r} has no attribute {attr!r}", param_hint="TARGET"
            ) from exc

    if not isinstance(obj, Pipeline) and callable(obj):
        obj = obj()
    if not isinstance(obj, Pipeline):
        raise click.BadParameter(
            f"{target!r} is not a Pipeline (got {type(obj).__name__})",
            param_hint="TARGET",
        )
    return obj


@click.group()
@click.version_option(package_name="sagaflow")
def main() -> None:
    """sagaflow: run saga-style step pipelines with rollback and retry."""
    load_dotenv()


@main.command()
@click.argument("target")
@click.option(
    "--context",
    "-c",
    "context_pairs",
    multiple=True,
    metavar="KEY=VALUE",
    help="Initial context entry (repeatable).",
)
@click.option("--rollback", is_flag=True, help="Unwind completed steps on failure.")
@click.option(
    "--timeout",
    type=click.IntRange(min=0),
    default=None,
    metavar="MS",
    help="Deadline in milliseconds.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def run(
    target: str,
    context_pairs: tuple[str, ...],
    rollback: bool,
    timeout: int | None,
    verbose: bool,
) -> None:
    """Execute a pipeline and print its final context."""
    _setup_logging(verbose)

    try:
        pipeline = load_pipeline(target).merge_context(_parse_context(context_pairs))
    except ConfigError as exc:
        console.print(f"[red]Invalid configuration:[/red] {escape(str(exc))}")
        raise SystemExit(1) from exc

    findings = validate_pipeline(pipeline)
    if has_errors(findings):
        console.print("[red]Pipeline validation failed:[/red]")
        for f in findings:
            console.print(f"  {escape(str(f))}")
        raise SystemExit(1)

    for f in findings:
        if f.level == ValidationLevel.WARNING:
            console.print(f"[yellow]Warning:[/yellow] {escape(str(f))}")

    console.print(
        f"[bold green]Running pipeline:[/bold green] {len(pipeline.steps)} steps"
    )
    if timeout is not None:
        result = pipeline.run_with_timeout(timeout, rollback=rollback)
    elif pipeline.cleanups:
        result = pipeline.run_with_ensure(rollback=rollback)
    elif rollback:
        result = pipeline.run_with_rollback()
    else:
        result = pipeline.run()

    if isinstance(result, Err):
        console.print(f"[red]Pipeline failed:[/red] {escape(repr(result.error))}")
        raise SystemExit(1)

    console.print("[bold green]Pipeline completed.[/bold green]")
    _print_context(result.value)


@main.command()
@click.argument("target")
def inspect(target: str) -> None:
    """List the steps of a pipeline without running it."""
    pipeline = load_pipeline(target)
    console.print(escape(pipeline.to_string()))

    if not pipeline.steps:
        return

    table = Table(title="Pending Steps")
    table.add_column("#", justify="right")
    table.add_column("Step", style="cyan")
    table.add_column("Rollback")
    table.add_column("Retry")

    for index, info in enumerate(pipeline.inspect_steps(), start=1):
        table.add_row(
            str(index),
            escape(info.name),
            "yes" if info.has_rollback else "",
            "yes" if info.has_retry else "",
        )

    console.print(table)


@main.command()
@click.argument("target")
@click.option("--strict", is_flag=True, help="Treat warnings as errors.")
def validate(target: str, strict: bool) -> None:
    """Validate a pipeline without executing it."""
    pipeline = load_pipeline(target)
    findings = validate_pipeline(pipeline)

    if not findings:
        console.print("[green]Pipeline is valid.[/green]")
        return

    table = Table(title="Validation Results")
    table.add_column("Level", style="bold")
    table.add_column("Step")
    table.add_column("Message")

    for f in findings:
        level_style = {
            ValidationLevel.ERROR: "red",
            ValidationLevel.WARNING: "yellow",
        }.get(f.level, "blue")
        table.add_row(
            f"[{level_style}]{f.level.value}[/{level_style}]",
            escape(f.step_name or ""),
            escape(f.message),
        )

    console.print(table)

    blocking = [f for f in findings if f.level != ValidationLevel.INFO]
    if has_errors(findings) or (strict and blocking):
        raise SystemExit(1)


@main.command()
@click.argument(
    "strategy",
    type=click.Choice([s.value for s in BackoffStrategy], case_sensitive=False),
)
@click.option("--initial", type=click.IntRange(min=0), default=100, help="Initial delay (ms).")
@click.option("--max", "max_delay", type=click.IntRange(min=0), default=30_000, help="Delay cap (ms).")
@click.option("--jitter", type=click.FloatRange(0.0, 1.0), default=0.0, help="Jitter factor.")
@click.option("--attempts", type=click.IntRange(min=1), default=5, help="Attempts to show.")
@click.option("--seed", type=int, default=None, help="Seed for randomized strategies.")
def backoff(
    strategy: str,
    initial: int,
    max_delay: int,
    jitter: float,
    attempts: int,
    seed: int | None,
) -> None:
    """Print the delays a backoff strategy produces."""
    try:
        spec = build_backoff(strategy, initial=initial, max_delay=max_delay, jitter=jitter)
    except ValueError as exc:
        console.print(f"[red]Invalid backoff:[/red] {escape(str(exc))}")
        raise SystemExit(1) from exc

    rng = random.Random(seed) if seed is not None else None
    table = Table(title=f"Backoff: {spec.strategy_name}")
    table.add_column("Attempt", justify="right")
    table.add_column("Delay (ms)", justify="right")
    table.add_column("Total (ms)", justify="right")

    previous: int | None = None
    total = 0
    for attempt in range(1, attempts + 1):
        wait = delay(spec, attempt, previous, rng=rng)
        previous = wait
        total += wait
        table.add_row(str(attempt), str(wait), str(total))

    console.print(table)


def _print_context(data: dict[str, Any]) -> None:
    """Print the final pipeline context in a table."""
    if not data:
        return

    table = Table(title="Final Context")
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    for key, value in sorted(data.items()):
        table.add_row(escape(key), escape(str(value)[:200]))

    console.print(table)


if __name__ == "__main__":
    main()
