"""CLI entrypoint for convergent."""

import logging
import signal
import sys
import threading
from contextlib import contextmanager

import click

from convergent.aws.client import EC2Client
from convergent.config import Settings, load_settings
from convergent.context import RunContext
from convergent.errors import ConvergentError, RemovalRuleSyntaxError
from convergent.executor import collect_deletions, run_deletions, run_tasks
from convergent.formatter import format_json, format_markdown, format_table
from convergent.integrations.github import post_to_github_pr
from convergent.integrations.slack import post_to_slack
from convergent.manifest import load_manifest
from convergent.removal import parse_removal_rule
from convergent.targets import APITarget, DryRunTarget

FORMATTERS = {
    "table": format_table,
    "json": format_json,
    "markdown": format_markdown,
}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(2)


@contextmanager
def _cancel_on_interrupt(run_ctx: RunContext):
    """Ctrl-C stops new tasks from starting; running ones finish."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        click.echo("Interrupted: waiting for running tasks to finish...", err=True)
        run_ctx.cancel("interrupted")

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _run_options(f):
    options = [
        click.argument("manifest", type=click.Path(exists=True, dir_okay=False)),
        click.option("--region", default=None, help="AWS region."),
        click.option(
            "--max-concurrent",
            type=click.IntRange(1, 50),
            default=None,
            help="Max tasks running at once.",
        ),
        click.option("--timeout", type=float, default=None, help="Wall-clock budget in seconds."),
        click.option(
            "--tolerate-skipped",
            is_flag=True,
            help="Run tasks whose dependencies were skipped.",
        ),
        click.option(
            "--format",
            "output_format",
            type=click.Choice(["table", "json", "markdown"]),
            default="table",
            help="Output format.",
        ),
        click.option("--redact-values", is_flag=True, help="Hide field values in the report."),
        click.option("--prune", is_flag=True, help="Also remove objects matched by removal rules."),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _prepare(settings: Settings, manifest, region, max_concurrent, timeout, tolerate_skipped):
    try:
        tasks = load_manifest(manifest)
        options = settings.run_options(
            max_workers=max_concurrent,
            timeout=timeout,
            tolerate_skipped_dependencies=tolerate_skipped or None,
        )
    except ConvergentError as e:
        _fail(str(e))
    cloud = EC2Client(region=region or settings.region)
    return tasks, options, cloud


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON settings file.",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity.")
@click.pass_context
def main(ctx, config_path, verbose):
    """Reconcile cloud resources with a desired-state manifest."""
    try:
        settings = load_settings(config_path)
    except ConvergentError as e:
        _fail(str(e))
    level = "DEBUG" if verbose > 1 else "INFO" if verbose else settings.log_level
    configure_logging(level)
    ctx.obj = settings


@main.command()
@_run_options
@click.option(
    "--detailed-exitcode",
    is_flag=True,
    help="Exit 1 when changes are pending.",
)
@click.option("--post-slack", is_flag=True, help="Post the plan to the Slack webhook.")
@click.option("--post-github-pr", type=int, default=None, help="Post the plan as a PR comment.")
@click.pass_obj
def plan(
    settings,
    manifest,
    region,
    max_concurrent,
    timeout,
    tolerate_skipped,
    output_format,
    redact_values,
    prune,
    detailed_exitcode,
    post_slack,
    post_github_pr,
):
    """Show what apply would change, without changing anything."""
    tasks, options, cloud = _prepare(
        settings, manifest, region, max_concurrent, timeout, tolerate_skipped
    )
    target = DryRunTarget()
    run_ctx = RunContext(target=target, cloud=cloud, options=options)

    try:
        with _cancel_on_interrupt(run_ctx):
            result = run_tasks(run_ctx, tasks)
            if prune and result.success:
                run_deletions(run_ctx, collect_deletions(run_ctx, tasks))
    except ConvergentError as e:
        _fail(str(e))

    deletions = target.deletions()
    click.echo(FORMATTERS[output_format](result, deletions, redact=redact_values))

    if post_slack:
        if not settings.slack_webhook:
            _fail("CONVERGENT_SLACK_WEBHOOK env var not set.")
        post_to_slack(
            report=format_markdown(result, deletions, redact=redact_values),
            webhook_url=settings.slack_webhook,
            success=result.success,
        )

    if post_github_pr is not None:
        if not settings.github_token or not settings.github_repo:
            _fail("GITHUB_TOKEN and GITHUB_REPO env vars required.")
        post_to_github_pr(
            body=format_markdown(result, deletions, redact=redact_values),
            repo=settings.github_repo,
            pr_number=post_github_pr,
            token=settings.github_token,
        )

    if not result.success:
        sys.exit(2)
    sys.exit(1 if detailed_exitcode and target.has_changes() else 0)


@main.command()
@_run_options
@click.pass_obj
def apply(
    settings,
    manifest,
    region,
    max_concurrent,
    timeout,
    tolerate_skipped,
    output_format,
    redact_values,
    prune,
):
    """Apply the manifest to the cloud."""
    tasks, options, cloud = _prepare(
        settings, manifest, region, max_concurrent, timeout, tolerate_skipped
    )
    run_ctx = RunContext(target=APITarget(), cloud=cloud, options=options)

    deletions = []
    deletion_result = None
    try:
        with _cancel_on_interrupt(run_ctx):
            result = run_tasks(run_ctx, tasks)
            if prune and result.success:
                deletions = collect_deletions(run_ctx, tasks)
                deletion_result = run_deletions(run_ctx, deletions)
    except ConvergentError as e:
        _fail(str(e))

    formatter = FORMATTERS[output_format]
    click.echo(formatter(result, deletions, redact=redact_values, title="Apply"))

    if deletion_result is not None and not deletion_result.success:
        for failure in deletion_result.failures:
            click.echo(f"Deletion failed: {failure}", err=True)
        sys.exit(2)
    sys.exit(0 if result.success else 2)


@main.command("check-rule")
@click.argument("rules", nargs=-1, required=True)
def check_rule(rules):
    """Parse removal rules and print how they are understood."""
    failed = False
    for text in rules:
        try:
            rule = parse_removal_rule(text)
        except RemovalRuleSyntaxError as e:
            click.echo(f"Error: {e}", err=True)
            failed = True
            continue
        click.echo(f"{text}: {rule}")
    sys.exit(2 if failed else 0)
