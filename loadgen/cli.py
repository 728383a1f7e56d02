"""CLI entry point for running load tests."""

import sys

import click

from loadgen.loader import ConfigValidationError, load_config
from loadgen.log import setup_logging
from loadgen.report import handle_summary, write_reports
from loadgen.runner import run

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_CONFIG_ERROR = 2


@click.group()
def main():
    """loadgen -- drive staged virtual-user load against HTTP endpoints."""


@main.command("run")
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True),
    help="Path to a run configuration file (YAML or JSON).",
)
@click.option(
    "--out-dir",
    default=None,
    type=click.Path(),
    help="Directory for summary.json and summary.txt. Nothing is written if omitted.",
)
@click.option(
    "--log-level",
    default="info",
    type=click.Choice(["debug", "info", "warning", "error"]),
    help="Minimum level for structured log events.",
)
def run_cmd(config_path, out_dir, log_level):
    """Run a load test and report whether its thresholds held."""
    setup_logging(log_level)
    try:
        config = load_config(config_path)
    except ConfigValidationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    summary = run(config)
    artifacts = handle_summary(summary, config.summary)
    click.echo(artifacts["summary.txt"], nl=False)

    if out_dir:
        for path in write_reports(artifacts, out_dir):
            click.echo(f"Report written to {path}")

    sys.exit(EXIT_PASS if summary.passed else EXIT_THRESHOLD_BREACH)


@main.command()
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True),
    help="Path to a run configuration file (YAML or JSON).",
)
def validate(config_path):
    """Check a run configuration without running it."""
    try:
        config = load_config(config_path)
    except ConfigValidationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    total = sum(s.duration for s in config.stages)
    click.echo(
        f"OK: {config.name} -- {len(config.stages)} stage(s), {total:g}s, "
        f"{len(config.endpoints)} endpoint(s), {len(config.thresholds)} threshold(s)"
    )


if __name__ == "__main__":
    main()
