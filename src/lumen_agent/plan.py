"""Plan input: load plan files and normalise them into Step records."""

import json
from pathlib import Path
from typing import Any, List

import yaml

from lumen_agent.errors import PlanMalformed
from lumen_agent.execution_state import Step

# Keys accepted as the description of a rich step record, in priority order
DESCRIPTION_KEYS = ("description", "stepDescription", "step_description", "title", "step")

# Rich-record fields carried along as advisory metadata
METADATA_KEYS = {
    "canRunInParallel": "parallel_hint",
    "can_run_in_parallel": "parallel_hint",
    "dependsOn": "depends_on",
    "depends_on": "depends_on",
    "riskLevel": "risk_level",
    "risk_level": "risk_level",
    "verificationCommand": "verification_command",
    "rollbackCommand": "rollback_command",
    "title": "title",
}


def _step_from_record(record: Any, index: int) -> Step:
    step_id = f"step-{index + 1}"

    if isinstance(record, str):
        if not record.strip():
            raise PlanMalformed(f"Step {index + 1} is empty")
        return Step(step_id=step_id, description=record.strip())

    if isinstance(record, dict):
        description = None
        for key in DESCRIPTION_KEYS:
            value = record.get(key)
            if isinstance(value, str) and value.strip():
                description = value.strip()
                break
        if description is None:
            raise PlanMalformed(
                f"Step {index + 1} has no description (expected one of: {', '.join(DESCRIPTION_KEYS)})"
            )

        command = record.get("command")
        if command is not None and not isinstance(command, str):
            raise PlanMalformed(f"Step {index + 1} command must be a string")

        explicit_id = record.get("stepId") or record.get("step_id") or record.get("id")
        metadata = {
            target: record[source]
            for source, target in METADATA_KEYS.items()
            if source in record
        }
        return Step(
            step_id=str(explicit_id) if explicit_id else step_id,
            description=description,
            command=command or None,
            metadata=metadata,
        )

    raise PlanMalformed(
        f"Step {index + 1} must be a string or a record, got {type(record).__name__}"
    )


def normalize_plan(plan: Any) -> List[Step]:
    """
    Normalise a plan into an ordered list of pending Steps.

    Accepted shapes:
        - ["step one", "step two"]
        - [{"description": "..."}, {"stepDescription": "...", "command": "..."}]
        - {"steps": [...]} (planner response)

    Raises:
        PlanMalformed: If the plan is not one of the shapes above, is empty,
                       or contains a step without a description.
    """
    if isinstance(plan, dict):
        if "steps" not in plan:
            raise PlanMalformed("Invalid plan format: record has no 'steps' field")
        plan = plan["steps"]

    if not isinstance(plan, (list, tuple)):
        raise PlanMalformed(f"Invalid plan format: expected a list of steps, got {type(plan).__name__}")

    if not plan:
        raise PlanMalformed("Plan has no steps")

    steps = [_step_from_record(record, i) for i, record in enumerate(plan)]

    seen = set()
    for step in steps:
        if step.step_id in seen:
            raise PlanMalformed(f"Duplicate step id: {step.step_id}")
        seen.add(step.step_id)

    return steps


def load_plan_file(plan_file: Path) -> Any:
    """
    Load a raw plan from YAML or JSON.

    The result still has to go through normalize_plan().
    """
    content = plan_file.read_text()

    if plan_file.suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            if hasattr(e, "problem_mark") and e.problem_mark:
                mark = e.problem_mark
                raise PlanMalformed(
                    f"YAML parse error at line {mark.line + 1}, column {mark.column + 1}: {e.problem or 'syntax error'}"
                )
            raise PlanMalformed(f"YAML parse error: {e}")
    elif plan_file.suffix == ".json":
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise PlanMalformed(f"JSON parse error: {e}")
    else:
        raise PlanMalformed(f"Unsupported file type: {plan_file.suffix}. Use .yaml, .yml, or .json")

    if data is None:
        raise PlanMalformed("Plan file is empty")

    return data
