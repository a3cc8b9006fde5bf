"""Thin plan runner.

Loads a plan file, runs the resilient loop, writes a report.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

from lumen_agent.command_runner import Approver, CommandRunner
from lumen_agent.config import LoopConfig, load_loop_config, load_oracle_settings
from lumen_agent.constants import DEFAULT_REPORTS_DIR
from lumen_agent.execution_state import LoopSummary
from lumen_agent.iteration_loop import ResilientLoop
from lumen_agent.model_client import get_openrouter_client
from lumen_agent.oracle import OpenRouterOracle, Oracle
from lumen_agent.plan import load_plan_file
from lumen_agent.policy_gate import RULESET_VERSION, PolicyGate
from lumen_agent.secret_vault import redact

logger = logging.getLogger(__name__)


def build_oracle(run_id: str = "") -> OpenRouterOracle:
    """Construct the OpenRouter-backed oracle from environment settings."""
    settings = load_oracle_settings(require_api_key=True)
    client = get_openrouter_client(settings.openrouter_api_key)
    return OpenRouterOracle(
        client=client,
        model=settings.model,
        timeout=settings.timeout_s,
        trace=settings.tracing,
        run_id=run_id,
    )


def build_runner(config: LoopConfig, approver: Optional[Approver] = None) -> CommandRunner:
    """CommandRunner whose gate follows the loop config's approval flags."""
    return CommandRunner(
        gate=PolicyGate(
            auto_approve=config.auto_approve,
            allow_dangerous=config.allow_dangerous,
        ),
        approver=approver,
        timeout_ms=config.timeout_ms,
        dry_run=config.dry_run,
    )


def write_execution_report(
    summary: LoopSummary,
    plan_file: Path,
    output_dir: Path,
    start_time: datetime,
    end_time: datetime,
    config: LoopConfig,
) -> Path:
    """
    Write a structured run report to disk.

    Report format: JSON with the full loop summary.
    Filename: {plan_stem}_{timestamp}.json

    Commands and outputs in the summary are already masked; the serialised
    report is redacted once more so secrets typed into the plan itself
    never land on disk.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = end_time.strftime("%Y%m%d_%H%M%S")
    report_path = output_dir / f"{plan_file.stem}_{timestamp}.json"

    report = {
        "plan_name": plan_file.stem,
        "plan_file": str(plan_file),
        "state": summary.state,
        "success": summary.success,
        "config": config.to_dict(),
        "ruleset_version": RULESET_VERSION,
        "summary": summary.to_dict(),
        "start_time": start_time.isoformat(),
        "end_time": end_time.isoformat(),
        "duration_seconds": (end_time - start_time).total_seconds(),
    }

    safe_text, _ = redact(json.dumps(report, indent=2, default=str))
    report_path.write_text(safe_text)

    return report_path


def run_plan(
    plan_file: Path,
    output_dir: Optional[Path] = None,
    config: Optional[LoopConfig] = None,
    oracle: Optional[Oracle] = None,
    runner: Optional[CommandRunner] = None,
    approver: Optional[Approver] = None,
    use_graph: bool = False,
) -> Tuple[LoopSummary, Path]:
    """
    Main entry point: load plan, run the loop, write report.

    Args:
        plan_file: Plan as YAML or JSON (list of steps or {"steps": [...], "context": "..."})
        output_dir: Directory for run reports (default: ./execution/reports/)
        config: Loop settings (default: load_loop_config())
        oracle: Decision capability (default: OpenRouter-backed, needs OPENROUTER_API_KEY)
        runner: Command runner (default: built from config)
        approver: Interactive approval callback for the default runner
        use_graph: If True, run through the LangGraph trace harness

    Returns:
        (summary, report_path)

    Raises:
        PlanMalformed: If the plan file cannot be read or parsed
        ConfigError: If configuration is invalid or the API key is missing
    """
    if output_dir is None:
        output_dir = Path(DEFAULT_REPORTS_DIR)
    if config is None:
        config = load_loop_config()

    raw_plan = load_plan_file(plan_file)
    global_context = raw_plan.get("context") if isinstance(raw_plan, dict) else None

    start_time = datetime.now()
    run_id = f"{plan_file.stem}_{start_time.strftime('%Y%m%d_%H%M%S')}"

    if oracle is None:
        oracle = build_oracle(run_id=run_id)
    if runner is None:
        runner = build_runner(config, approver=approver)

    loop = ResilientLoop(oracle, runner=runner, config=config)

    if use_graph:
        from lumen_agent.loop_graph import run_loop_graph
        summary = run_loop_graph(loop, raw_plan, global_context=global_context)
    else:
        summary = loop.run(raw_plan, global_context=global_context)

    end_time = datetime.now()

    report_path = write_execution_report(
        summary=summary,
        plan_file=plan_file,
        output_dir=output_dir,
        start_time=start_time,
        end_time=end_time,
        config=config,
    )
    logger.info("Run %s finished (%s), report: %s", run_id, summary.state, report_path)

    return summary, report_path
