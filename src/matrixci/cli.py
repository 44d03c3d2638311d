# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from matrixci.config import DEFAULT_CONFIG_FILES, discover_config, load_config
from matrixci.errors import AggregateFailure, ConfigError
from matrixci.model import ExecutionPlan
from matrixci.resolver import filter_plans, resolve_matrix
from matrixci.runner import DEFAULT_WORK_DIR, default_workers, run_matrix
from matrixci.cache import DEFAULT_CACHE_DIR
from matrixci.toolchains import host_triple as detect_host_triple
from matrixci.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def _resolve_or_exit(config_arg: str | None, only: tuple[str, ...]) -> tuple[Path, str, list[ExecutionPlan]]:
    """
    Discover, parse and resolve the matrix. Any ConfigError ends the
    process before a single cell is dispatched.
    """
    console = get_console()
    try:
        path = discover_config(config_arg)
        config = load_config(path)
        plans = resolve_matrix(config)
    except ConfigError as e:
        console.print_error(
            "Invalid matrix configuration",
            e.reason,
            suggestion=(
                "Every cell needs a toolchain version and a target variable in env.\n"
                "Without --config the matrix is looked up as: " + ", ".join(DEFAULT_CONFIG_FILES)
            ),
        )
        sys.exit(EXIT_CONFIG)

    selected = filter_plans(plans, only)
    if not selected:
        console.print_error(
            "No cells selected",
            f"--only {', '.join(only)} matched none of: "
            + ", ".join(sorted({p.target for p in plans})),
        )
        sys.exit(EXIT_CONFIG)
    return path, config.defaults.language, selected


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    envvar="MATRIXCI_DEBUG",
    help="Enable debug mode (show stack traces and full step output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: run one build/test procedure across a toolchain x target matrix."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--config", "config_arg", default=None, help="Matrix file (.yml/.yaml/.py)")
@click.option(
    "--workers",
    default=None,
    type=click.IntRange(min=1),
    envvar="MATRIXCI_WORKERS",
    help="Cells run in parallel (default: CPU count - 1; 1 runs serially)",
)
@click.option(
    "--step-timeout",
    default=None,
    type=click.FloatRange(min=0, min_open=True),
    envvar="MATRIXCI_STEP_TIMEOUT",
    help="Seconds before a single step is killed (default: no timeout)",
)
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, envvar="MATRIXCI_CACHE_DIR", show_default=True, help="Cache directory")
@click.option("--cache/--no-cache", "use_cache", default=True, show_default=True, help="Restore/save the cache policy's directories")
@click.option("--cache-keep", default=3, type=click.IntRange(min=1), show_default=True, help="Artifacts kept per cache scope")
@click.option("--work-dir", default=DEFAULT_WORK_DIR, show_default=True, help="Per-cell scratch directory root")
@click.option("--host-triple", default=None, help="Host target triple (default: detected from rustc)")
@click.option("--image", default=None, help="Run every step inside this Docker image")
@click.option("--provision/--no-provision", default=True, show_default=True, help="Install toolchains, components and targets before each cell")
@click.option("--only", multiple=True, help="Only run cells whose target matches (repeatable)")
@click.pass_context
def run(ctx, config_arg, workers, step_timeout, cache_dir, use_cache, cache_keep, work_dir, host_triple, image, provision, only):
    """Run every matrix cell and report one verdict."""
    console = get_console()
    path, language, plans = _resolve_or_exit(config_arg, only)

    if workers is None:
        workers = default_workers()
    if host_triple is None:
        host_triple = detect_host_triple()
        console.print_debug(f"host triple: {host_triple}")

    try:
        console.print_run_started(
            config=path.name,
            language=language,
            cell_count=len(plans),
            workers=min(workers, len(plans)),
        )
        verdict = run_matrix(
            plans,
            repo_root=path.resolve().parent,
            work_dir=work_dir,
            cache_root=cache_dir if use_cache else None,
            cache_keep=cache_keep,
            max_workers=workers,
            step_timeout=step_timeout,
            host_triple=host_triple,
            image=image,
            provision=provision,
            console=console,
        )
        console.print_results(verdict)
        verdict.raise_for_failure()
    except AggregateFailure as e:
        console.print_debug(str(e))
        sys.exit(EXIT_FAILED)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--config", "config_arg", default=None, help="Matrix file (.yml/.yaml/.py)")
@click.option("--only", multiple=True, help="Only show cells whose target matches (repeatable)")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print plans as JSON")
def plan(config_arg, only, as_json):
    """Resolve the matrix and print one execution plan per cell."""
    console = get_console()
    _path, _language, plans = _resolve_or_exit(config_arg, only)
    if as_json:
        click.echo(json.dumps([p.to_dict() for p in plans], indent=2))
        return
    console.print_plans(plans)


@cli.command()
@click.option("--config", "config_arg", default=None, help="Matrix file (.yml/.yaml/.py)")
def validate(config_arg):
    """Parse and resolve the matrix without running anything."""
    console = get_console()
    path, _language, plans = _resolve_or_exit(config_arg, ())
    console.print_info(f"{path.name}: OK ({len(plans)} cell(s))")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
