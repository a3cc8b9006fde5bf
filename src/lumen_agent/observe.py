"""Minimal observation surface over run reports.

Read-only.
"""

import json
from pathlib import Path
from typing import Optional

from lumen_agent.constants import DEFAULT_REPORTS_DIR


def find_reports(plan_name: str, reports_dir: Path) -> list[dict]:
    """Find all run reports for a plan name."""
    reports = []

    if not reports_dir.exists():
        return reports

    for f in reports_dir.glob(f"{plan_name}_*.json"):
        try:
            data = json.loads(f.read_text())
        except (json.JSONDecodeError, IOError):
            continue
        if data.get("plan_name") != plan_name:
            continue
        data["_report_file"] = str(f)
        reports.append(data)

    # Most recent first
    reports.sort(key=lambda r: r.get("start_time", ""), reverse=True)
    return reports


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 1:
        return f"{seconds*1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    else:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"


def print_summary(plan_name: str, reports_dir: Optional[Path] = None) -> None:
    """Print a human-readable summary of a plan's run history."""
    if reports_dir is None:
        reports_dir = Path(DEFAULT_REPORTS_DIR)

    reports = find_reports(plan_name, reports_dir)

    print("=" * 60)
    print(f"PLAN SUMMARY: {plan_name}")
    print("=" * 60)
    print()

    if not reports:
        print("No run reports found.")
        print()
        print(f"Searched: {reports_dir}")
        return

    latest = reports[0]
    summary = latest.get("summary", {})
    print("LATEST RUN")
    print("-" * 40)
    print(f"  State:          {latest['state']}")
    print(f"  Steps:          {len(summary.get('completed_steps', []))}/{summary.get('total_steps', 0)}")
    print(f"  Iterations:     {summary.get('iterations', 0)}")
    print(f"  Failures:       {summary.get('failure_count', 0)}")
    print(f"  Recoveries:     {len(summary.get('recovery_attempts', []))}")
    print(f"  Reassessments:  {summary.get('reassessments', 0)}")
    print(f"  Success rate:   {summary.get('success_rate', 0.0):.1f}%")
    print(f"  Duration:       {format_duration(latest['duration_seconds'])}")
    print(f"  Time:           {latest['start_time'][:19]}")
    print()

    failures = summary.get("failures", [])
    if failures:
        print("  Last failures:")
        for failure in failures[-3:]:
            print(f"    [{failure.get('error_type')}] {failure.get('step', '')[:40]}: {failure.get('error', '')[:60]}")
        print()

    verification = summary.get("verification")
    if verification:
        print("VERIFICATION")
        print("-" * 40)
        print(f"  Fulfilled:   {'yes' if verification.get('fulfilled') else 'no'}")
        for issue in verification.get("issues", [])[:5]:
            print(f"    - {issue[:70]}")
        print()

    if len(reports) > 1:
        print("HISTORY")
        print("-" * 40)
        print(f"  Runs:  {len(reports)}")
        for r in reports[:5]:
            status_icon = "✓" if r.get("success") else "✗"
            print(f"    {status_icon} {r['start_time'][:16]} - {r['state']}")
        if len(reports) > 5:
            print(f"    ... and {len(reports) - 5} more")
        print()

    print("VERDICT")
    print("-" * 40)
    if latest.get("success"):
        if verification and not verification.get("fulfilled"):
            print("  ◐ COMPLETED WITH ISSUES - All steps ran, verification flagged gaps")
        else:
            print("  ✓ COMPLETE - All steps executed")
    elif latest["state"] == "aborted":
        print(f"  ✗ ABORTED - {summary.get('error') or 'run stopped early'}")
    else:
        print("  ✗ EXHAUSTED - Iteration budget spent before the plan finished")
    print()
