"""CLI entrypoint for the lumen execution engine."""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click
from dotenv import find_dotenv, load_dotenv

from lumen_agent.config import ConfigError, load_loop_config, load_oracle_settings
from lumen_agent.constants import DEFAULT_REPORTS_DIR, ENV_DEBUG
from lumen_agent.errors import LumenError

# Load .env file on CLI startup
load_dotenv(find_dotenv(usecwd=True))


@click.group()
@click.version_option(package_name="lumen-agent")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool):
    """Lumen - resilient plan execution with secret redaction and command policy."""
    debug = verbose or os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes", "on")
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _confirm_approver(command: str, verdict) -> bool:
    click.echo(f"\n  Command:  {command}", err=True)
    click.echo(f"  Risk:     {verdict.risk} ({verdict.reason})", err=True)
    return click.confirm("  Run this command?", default=False, err=True)


@cli.command()
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--dry-run", is_flag=True, help="Classify commands but never execute them.")
@click.option("--auto-approve", is_flag=True, help="Auto-approve medium-risk commands.")
@click.option("--allow-dangerous", is_flag=True, help="With --auto-approve, also auto-approve high-risk commands.")
@click.option("--max-iterations", type=int, default=None, help="Iteration budget for the run.")
@click.option("--max-failures", type=int, default=None, help="Consecutive failures before the plan is reassessed.")
@click.option("--timeout-ms", type=int, default=None, help="Per-command timeout in milliseconds.")
@click.option("--verify", is_flag=True, help="Ask the oracle to verify the result when the plan completes.")
@click.option("--graph/--no-graph", default=False, help="Run through the LangGraph trace harness.")
@click.option(
    "--report-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_REPORTS_DIR,
    show_default=True,
    help="Directory for run reports.",
)
@click.option("--interactive/--no-interactive", default=False, help="Prompt before commands that need approval.")
def run(
    plan_file: Path,
    dry_run: bool,
    auto_approve: bool,
    allow_dangerous: bool,
    max_iterations: Optional[int],
    max_failures: Optional[int],
    timeout_ms: Optional[int],
    verify: bool,
    graph: bool,
    report_dir: Path,
    interactive: bool,
):
    """Execute a plan file (YAML or JSON) with the resilient loop."""
    from lumen_agent.plan_runner import run_plan

    try:
        config = load_loop_config(
            # Unset flags fall through to the LUMEN_* environment
            dry_run=dry_run or None,
            auto_approve=auto_approve or None,
            allow_dangerous=allow_dangerous or None,
            max_iterations=max_iterations,
            max_consecutive_failures=max_failures,
            timeout_ms=timeout_ms,
            verify=verify or None,
        )
        summary, report_path = run_plan(
            plan_file,
            output_dir=report_dir,
            config=config,
            approver=_confirm_approver if interactive else None,
            use_graph=graph,
        )
    except (LumenError, ConfigError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo("Execution complete.")
    click.echo(f"  State:          {summary.state}")
    click.echo(f"  Steps:          {len(summary.completed_steps)}/{summary.total_steps}")
    click.echo(f"  Iterations:     {summary.iterations}")
    click.echo(f"  Failures:       {summary.failure_count}")
    click.echo(f"  Reassessments:  {summary.reassessments}")
    click.echo(f"  Success rate:   {summary.success_rate:.1f}%")
    if summary.error:
        click.echo(f"  Error:          {summary.error}")
    if summary.verification is not None:
        click.echo(f"  Verified:       {'yes' if summary.verification.fulfilled else 'no'}")
    click.echo(f"  Report:         {report_path}")

    if not summary.success:
        raise SystemExit(1)


@cli.command()
@click.argument("command")
@click.option("--auto-approve", is_flag=True, help="Classify as if auto-approve were on.")
@click.option("--allow-dangerous", is_flag=True, help="Classify as if dangerous auto-approval were on.")
def classify(command: str, auto_approve: bool, allow_dangerous: bool):
    """Show the policy verdict for COMMAND without running it."""
    from lumen_agent.policy_gate import classify as classify_command

    verdict = classify_command(command, auto_approve=auto_approve, allow_dangerous=allow_dangerous)
    click.echo(f"Classification: {verdict.classification}")
    click.echo(f"Risk:           {verdict.risk}")
    click.echo(f"Reason:         {verdict.reason}")
    if verdict.matched_rule:
        click.echo(f"Rule:           {verdict.matched_rule}")
    click.echo(f"Ruleset:        {verdict.ruleset_version}")


@cli.command()
@click.argument("text", required=False)
def redact(text: Optional[str]):
    """Print TEXT (or stdin) with secrets replaced by placeholders."""
    from lumen_agent.secret_vault import redact as redact_text

    if text is None:
        text = sys.stdin.read()

    safe, mapping = redact_text(text)
    click.echo(safe)
    click.echo(f"Secrets found: {len(mapping)}", err=True)
    for token in mapping.tokens():
        click.echo(f"  {token}", err=True)


@cli.command()
def rules():
    """List the policy rule table."""
    from lumen_agent.policy_gate import RULESET_VERSION, all_rules

    click.echo(f"Policy ruleset {RULESET_VERSION}")
    click.echo("")
    for rule in all_rules():
        click.echo(f"  [{rule.severity:<7}] {rule.rule_id:<26} {rule.description}")


@cli.command()
@click.argument("plan_name")
@click.option(
    "--report-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_REPORTS_DIR,
    show_default=True,
    help="Directory containing run reports.",
)
def status(plan_name: str, report_dir: Path):
    """Show run history for PLAN_NAME (the plan file's stem)."""
    from lumen_agent.observe import print_summary

    print_summary(plan_name, reports_dir=report_dir)


@cli.command()
def check_config():
    """Check if loop and oracle environment settings are valid."""
    try:
        config = load_loop_config()
        settings = load_oracle_settings(require_api_key=True)
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)

    click.echo("Configuration loaded successfully!")
    for key, value in config.to_dict().items():
        click.echo(f"  {key}: {value}")
    click.echo("  OPENROUTER_API_KEY: [set]")
    click.echo(f"  oracle model: {settings.model}")
    click.echo(f"  oracle timeout: {settings.timeout_s}s")
    click.echo(f"  tracing: {'on' if settings.tracing else 'off'}")


if __name__ == "__main__":
    cli()
