"""Resilient iteration loop.

Drives a plan to completion one step at a time:

1. Ask the oracle for an action for the step at the cursor.
2. Commands are restored, gated and executed; code and messages count as done.
3. Success advances the cursor. Failure retries the same step after one
   oracle-proposed recovery action.
4. After max_consecutive_failures failures in a row the unexecuted tail is
   sent back to the oracle and replaced by its revision.
5. Stops when the plan is done (completed), the iteration budget runs out
   (exhausted), or the plan is malformed / the run is cancelled (aborted).

Oracle and runner failures are never fatal; they feed the failure counters.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from lumen_agent.command_runner import STATUS_DRY_RUN, STATUS_SUCCESS, CommandResult, CommandRunner
from lumen_agent.config import LoopConfig
from lumen_agent.constants import (
    MAX_VERIFICATION_ISSUES,
    RESULT_PREVIEW_CHARS,
    STEP_PROMPT_FAILURES,
)
from lumen_agent.errors import LumenError, PlanMalformed, SecretMappingMiss
from lumen_agent.execution_state import (
    ABORTED,
    COMPLETED,
    EXHAUSTED,
    FAILED,
    RUNNING,
    SUCCESS,
    CompletedStep,
    ExecutionContext,
    FailureRecord,
    LoopSummary,
    RecoveryAttempt,
    Step,
    Verification,
)
from lumen_agent.oracle import Action, CodeAction, CommandAction, MessageAction, Oracle
from lumen_agent.plan import normalize_plan
from lumen_agent.policy_gate import PolicyGate
from lumen_agent.secret_vault import SecretMapping, SecretVault

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], None]

PHASE_ATTEMPT = "attempt"
PHASE_RECOVER = "recover"
PHASE_REASSESS = "reassess"
PHASE_FINISH = "finish"


@dataclass
class StepOutcome:
    success: bool
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


@dataclass
class LoopRun:
    """Mutable state of one loop invocation."""
    plan: List[Step]
    original_plan: List[str]
    context: ExecutionContext
    cursor: int = 0
    iteration: int = 0
    next_step_number: int = 1
    superseded: List[Step] = field(default_factory=list)
    pending_phase: Optional[str] = None
    last_outcome: Optional[StepOutcome] = None
    cancelled: bool = False
    state: str = RUNNING

    @property
    def current_step(self) -> Step:
        return self.plan[self.cursor]

    @property
    def remaining(self) -> List[Step]:
        return self.plan[self.cursor:]


# =============================================================================
# PROMPTS
# =============================================================================

def _preview(value: Any) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text[:RESULT_PREVIEW_CHARS]


def build_step_prompt(step: Step, context: ExecutionContext) -> str:
    lines = []
    if context.global_context:
        lines.append(f"Background:\n{context.global_context}\n")

    if context.completed_steps:
        lines.append("Previously completed steps:")
        for i, done in enumerate(context.completed_steps, 1):
            lines.append(f"{i}. {done.step} -> {done.status}")
            if done.result:
                lines.append(f"   Result: {_preview(done.result)}")

    if context.failures:
        lines.append("\nRecent failures to be aware of:")
        for failure in context.failures[-STEP_PROMPT_FAILURES:]:
            lines.append(f"- {failure.step}: {failure.error}")

    lines.append(f"\nCurrent step to execute: {step.description}")
    if step.command:
        lines.append(f"Suggested command: {step.command}")
    lines.append(
        "\nExecute this step. If it requires a terminal command, reply with a command action. "
        "If it requires code, reply with a code action."
    )
    return "\n".join(lines)


def build_recovery_prompt(step: Step, outcome: StepOutcome, context: ExecutionContext) -> str:
    failure_info = {
        "error": outcome.error,
        "error_type": outcome.error_type,
        "details": outcome.details,
    }
    return (
        "A step failed during execution. Analyze the failure and propose one action "
        "that gets past it.\n\n"
        f"Failed Step: {step.description}\n\n"
        f"Failure Information:\n{json.dumps(failure_info, indent=2, default=str)}\n\n"
        f"Previous Context:\n{len(context.completed_steps)} steps completed successfully "
        "before this failure.\n\n"
        "Your action could be an alternative approach, a fix for the error, a workaround, "
        "or a preparatory command needed before the step is retried."
    )


def build_reassess_prompt(remaining: List[Step], context: ExecutionContext) -> str:
    plan_lines = "\n".join(f"{i}. {s.description}" for i, s in enumerate(remaining, 1))
    failure_lines = "\n".join(
        f"- [iteration {f.iteration}] {f.step}: {f.error}" for f in context.failures
    )
    return (
        "The current execution plan has encountered repeated failures. Reassess the "
        "remaining steps and produce an improved list.\n\n"
        f"Remaining Plan:\n{plan_lines}\n\n"
        "Execution History:\n"
        f"Completed: {len(context.completed_steps)} steps\n"
        f"Failed: {len(context.failures)} times\n\n"
        f"Failure History:\n{failure_lines}\n\n"
        "Analyze what went wrong, consider alternative approaches and break complex "
        "steps into simpler ones. The revised steps replace the remaining plan."
    )


def build_verification_prompt(original_plan: List[str], context: ExecutionContext) -> str:
    request = "\n".join(f"{i}. {s}" for i, s in enumerate(original_plan, 1))
    work = "\n".join(
        f"Step {i}: {done.step}\nStatus: {done.status}\nResult: {_preview(done.result)}\n"
        for i, done in enumerate(context.completed_steps, 1)
    )
    prompt = (
        "Review the completed work and verify whether the original request was fully "
        "fulfilled.\n\n"
        f"ORIGINAL REQUEST (Steps to complete):\n{request}\n\n"
        f"COMPLETED WORK:\n{work}"
    )
    if context.failures:
        failures = "\n".join(f"- {f.step}: {f.error}" for f in context.failures)
        prompt += f"\nFAILURES ENCOUNTERED:\n{failures}\n"
    return prompt


# =============================================================================
# LOOP
# =============================================================================

class ResilientLoop:
    """Sequential, failure-tolerant plan executor."""

    def __init__(
        self,
        oracle: Oracle,
        runner: Optional[CommandRunner] = None,
        vault: Optional[SecretVault] = None,
        config: Optional[LoopConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.oracle = oracle
        self.config = config or LoopConfig()
        self.runner = runner or CommandRunner(
            gate=PolicyGate(
                auto_approve=self.config.auto_approve,
                allow_dangerous=self.config.allow_dangerous,
            ),
            timeout_ms=self.config.timeout_ms,
            dry_run=self.config.dry_run,
        )
        self.vault = vault or SecretVault()
        self.on_progress = on_progress
        self.cancel_event = cancel_event

    # --- public entry point ---

    def run(self, plan: Any, global_context: Optional[str] = None) -> LoopSummary:
        """
        Execute a plan and return a complete summary.

        Never raises for step, oracle or runner failures. A malformed plan
        yields an ``aborted`` summary without executing anything.
        """
        try:
            loop_run = self.start(plan, global_context)
        except PlanMalformed as e:
            return self.aborted_summary(e)

        while True:
            phase = self.next_phase(loop_run)
            if phase == PHASE_FINISH:
                break
            if phase == PHASE_ATTEMPT:
                self.attempt(loop_run)
            elif phase == PHASE_RECOVER:
                self.recover(loop_run)
            elif phase == PHASE_REASSESS:
                self.reassess(loop_run)

        return self.finish(loop_run)

    # --- phases (also used as graph nodes) ---

    def start(self, plan: Any, global_context: Optional[str] = None) -> LoopRun:
        steps = normalize_plan(plan)
        loop_run = LoopRun(
            plan=steps,
            original_plan=[s.description for s in steps],
            context=ExecutionContext(global_context=global_context),
            next_step_number=len(steps) + 1,
        )
        logger.info(
            "Resilient loop started: %d steps, max %d iterations, reassess after %d consecutive failures",
            len(steps),
            self.config.max_iterations,
            self.config.max_consecutive_failures,
        )
        return loop_run

    def next_phase(self, loop_run: LoopRun) -> str:
        """Decide what the loop does next."""
        if loop_run.pending_phase is not None:
            return loop_run.pending_phase
        if loop_run.cursor >= len(loop_run.plan):
            return PHASE_FINISH
        if loop_run.iteration >= self.config.max_iterations:
            return PHASE_FINISH
        if self.cancel_event is not None and self.cancel_event.is_set():
            loop_run.cancelled = True
            return PHASE_FINISH
        return PHASE_ATTEMPT

    def attempt(self, loop_run: LoopRun) -> StepOutcome:
        """Run one iteration against the step at the cursor."""
        loop_run.iteration += 1
        step = loop_run.current_step
        ctx = loop_run.context

        logger.info(
            "Iteration %d | Step %d/%d | %s",
            loop_run.iteration,
            loop_run.cursor + 1,
            len(loop_run.plan),
            self._safe(step.description),
        )

        step.begin_attempt()
        outcome = self._execute_step(step, loop_run)
        loop_run.last_outcome = outcome

        if outcome.success:
            step.status = SUCCESS
            ctx.completed_steps.append(
                CompletedStep(
                    step=step.description,
                    step_id=step.step_id,
                    iteration=loop_run.iteration,
                    status=SUCCESS,
                    result=outcome.result,
                )
            )
            ctx.consecutive_failures = 0
            loop_run.cursor += 1
            loop_run.pending_phase = None
            logger.info("Step %s completed", step.step_id)
            self._emit({
                "type": "success",
                "step": step.description,
                "step_id": step.step_id,
                "iteration": loop_run.iteration,
                "progress": loop_run.cursor / len(loop_run.plan) * 100,
            })
            return outcome

        step.status = FAILED
        ctx.consecutive_failures += 1
        ctx.failures.append(
            FailureRecord(
                step=step.description,
                step_id=step.step_id,
                iteration=loop_run.iteration,
                error=outcome.error or "Unknown error",
                error_type=outcome.error_type or "LumenError",
                details=outcome.details,
            )
        )
        logger.warning(
            "Step %s failed (consecutive failures: %d): %s",
            step.step_id,
            ctx.consecutive_failures,
            outcome.error,
        )
        self._emit({
            "type": "failure",
            "step": step.description,
            "step_id": step.step_id,
            "iteration": loop_run.iteration,
            "consecutive_failures": ctx.consecutive_failures,
            "error": outcome.error,
        })

        if ctx.consecutive_failures >= self.config.max_consecutive_failures:
            loop_run.pending_phase = PHASE_REASSESS
        else:
            loop_run.pending_phase = PHASE_RECOVER
        return outcome

    def recover(self, loop_run: LoopRun) -> Optional[RecoveryAttempt]:
        """
        Ask the oracle for one recovery action and try it once.

        The cursor does not move; the failed step is retried next iteration.
        An oracle error or refusal just ends this recovery attempt.
        """
        loop_run.pending_phase = None
        step = loop_run.current_step
        outcome = loop_run.last_outcome or StepOutcome(success=False)

        prompt = build_recovery_prompt(step, outcome, loop_run.context)
        safe_prompt, mapping = self.vault.redact(prompt)
        try:
            action = self.oracle.next_action(
                safe_prompt,
                self._oracle_context("recovery", loop_run, step),
            )
        except Exception as e:
            logger.warning("Recovery for %s failed: %s", step.step_id, e)
            return None

        if action is None:
            logger.info("Oracle declined to propose a recovery for %s", step.step_id)
            return None

        attempt = RecoveryAttempt(
            step=step.description,
            step_id=step.step_id,
            iteration=loop_run.iteration,
            solution=self._describe(action),
            action_kind=action.kind,
        )

        if isinstance(action, CommandAction):
            logger.info("Executing recovery command for %s", step.step_id)
            try:
                result = self._run_command(action, mapping, step)
                attempt.status = result.status
            except Exception as e:
                logger.warning("Recovery command for %s raised: %s", step.step_id, e)
                attempt.error = str(e)

        loop_run.context.recovery_attempts.append(attempt)
        self._emit({
            "type": "recovery",
            "step": step.description,
            "step_id": step.step_id,
            "iteration": loop_run.iteration,
            "solution": attempt.solution,
        })
        return attempt

    def reassess(self, loop_run: LoopRun) -> List[Step]:
        """
        Replace the unexecuted tail with the oracle's revision.

        An oracle failure or an empty revision keeps the tail as it is.
        Either way the consecutive-failure counter resets.
        """
        loop_run.pending_phase = None
        ctx = loop_run.context
        remaining = loop_run.remaining
        logger.warning(
            "Threshold reached: %d consecutive failures, reassessing %d remaining steps",
            ctx.consecutive_failures,
            len(remaining),
        )

        prompt = build_reassess_prompt(remaining, ctx)
        safe_prompt, mapping = self.vault.redact(prompt)
        revised: List[str] = []
        try:
            proposed = self.oracle.revise_plan(
                safe_prompt,
                self._oracle_context("reassess", loop_run, loop_run.current_step),
            )
            revised = [
                self.vault.substitute(s, mapping).text
                for s in proposed or []
                if isinstance(s, str) and s.strip()
            ]
        except Exception as e:
            loop_run.current_step.warnings.append(f"OracleFailure during reassessment: {e}")
            logger.warning("Reassessment failed, continuing with original plan: %s", e)

        if revised:
            new_steps = []
            for description in revised:
                new_steps.append(
                    Step(
                        step_id=f"step-{loop_run.next_step_number}",
                        description=description.strip(),
                        metadata={"revision": ctx.reassessments + 1},
                    )
                )
                loop_run.next_step_number += 1
            loop_run.superseded.extend(remaining)
            loop_run.plan = loop_run.plan[:loop_run.cursor] + new_steps
            logger.info("Plan reassessed: %d steps replace %d", len(new_steps), len(remaining))
        else:
            logger.warning("No usable revision, keeping the remaining plan")

        ctx.reassessments += 1
        ctx.consecutive_failures = 0
        self._emit({
            "type": "reassessment",
            "iteration": loop_run.iteration,
            "new_step_count": len(loop_run.plan) - loop_run.cursor,
        })
        return loop_run.remaining

    def finish(self, loop_run: LoopRun) -> LoopSummary:
        ctx = loop_run.context
        all_completed = loop_run.cursor >= len(loop_run.plan)
        if all_completed:
            loop_run.state = COMPLETED
        elif loop_run.cancelled:
            loop_run.state = ABORTED
        else:
            loop_run.state = EXHAUSTED

        total = len(loop_run.plan)
        success_rate = (len(ctx.completed_steps) / total) * 100 if total else 0.0

        logger.info(
            "Execution summary: %d completed, %d failures, %d recovery attempts, "
            "%d reassessments, %d iterations, %.1f%% success rate",
            len(ctx.completed_steps),
            len(ctx.failures),
            len(ctx.recovery_attempts),
            ctx.reassessments,
            loop_run.iteration,
            success_rate,
        )

        verification = None
        if self.config.verify and all_completed:
            verification = self._verify(loop_run)

        return LoopSummary(
            success=all_completed,
            state=loop_run.state,
            completed_steps=list(ctx.completed_steps),
            failure_count=len(ctx.failures),
            failures=list(ctx.failures),
            recovery_attempts=list(ctx.recovery_attempts),
            reassessments=ctx.reassessments,
            iterations=loop_run.iteration,
            success_rate=success_rate,
            total_steps=total,
            reached_max_iterations=(
                not all_completed and loop_run.iteration >= self.config.max_iterations
            ),
            cancelled=loop_run.cancelled,
            error="Cancelled" if loop_run.cancelled and not all_completed else None,
            steps=list(loop_run.plan),
            superseded_steps=list(loop_run.superseded),
            verification=verification,
        )

    def aborted_summary(self, error: Exception) -> LoopSummary:
        logger.error("Plan rejected, nothing executed: %s", error)
        return LoopSummary(
            success=False,
            state=ABORTED,
            completed_steps=[],
            failure_count=0,
            failures=[],
            recovery_attempts=[],
            reassessments=0,
            iterations=0,
            success_rate=0.0,
            total_steps=0,
            error=str(error),
        )

    # --- internals ---

    def _execute_step(self, step: Step, loop_run: LoopRun) -> StepOutcome:
        prompt = build_step_prompt(step, loop_run.context)
        safe_prompt, mapping = self.vault.redact(prompt)

        try:
            action = self.oracle.next_action(
                safe_prompt,
                self._oracle_context("step", loop_run, step),
            )
        except Exception as e:
            return StepOutcome(
                success=False,
                error=f"Oracle failed: {e}",
                error_type="OracleFailure",
            )

        if action is None:
            return StepOutcome(
                success=False,
                error="Oracle declined to act on this step",
                error_type="OracleFailure",
            )

        return self._perform(action, step, mapping)

    def _perform(self, action: Action, step: Step, mapping: SecretMapping) -> StepOutcome:
        if isinstance(action, CodeAction):
            return StepOutcome(success=True, result={"code": action.code, "language": action.language})
        if isinstance(action, MessageAction):
            return StepOutcome(success=True, result={"message": action.text})
        if not isinstance(action, CommandAction):
            return StepOutcome(
                success=False,
                error=f"Unsupported action: {type(action).__name__}",
                error_type="OracleFailure",
            )

        try:
            result = self._run_command(action, mapping, step)
        except Exception as e:
            return StepOutcome(
                success=False,
                error=f"Command runner failed: {e}",
                error_type="ExecutionError",
            )

        if result.status == STATUS_SUCCESS:
            return StepOutcome(success=True, result=result.to_dict())
        if result.status == STATUS_DRY_RUN and not (result.verdict and result.verdict.is_blocked):
            return StepOutcome(success=True, result=result.to_dict())

        error_type = "PolicyBlocked"
        error = result.message
        try:
            result.raise_for_status()
        except LumenError as e:
            error_type = type(e).__name__
            error = str(e)
        return StepOutcome(
            success=False,
            error=error,
            error_type=error_type,
            details=result.to_dict(),
        )

    def _run_command(self, action: CommandAction, mapping: SecretMapping, step: Step) -> CommandResult:
        restored = self.vault.substitute(action.command, mapping)
        if restored.unresolved:
            miss = SecretMappingMiss(restored.unresolved)
            step.warnings.append(str(miss))
            logger.warning("Step %s: %s", step.step_id, miss)
        return self.runner.run(
            restored.text,
            timeout_ms=self.config.timeout_ms,
            dry_run=self.config.dry_run,
            secrets=mapping,
            reasoning=action.reasoning,
        )

    def _verify(self, loop_run: LoopRun) -> Verification:
        prompt = build_verification_prompt(loop_run.original_plan, loop_run.context)
        safe_prompt, _ = self.vault.redact(prompt)
        try:
            verification = self.oracle.verify(
                safe_prompt,
                {
                    "purpose": "verify",
                    "iteration": loop_run.iteration,
                    "history_items": len(loop_run.context.completed_steps),
                },
            )
        except Exception as e:
            logger.warning("Verification failed: %s", e)
            return Verification(fulfilled=False, issues=[f"Verification error: {e}"])

        verification.issues = list(verification.issues)[:MAX_VERIFICATION_ISSUES]
        if verification.fulfilled:
            logger.info("Verification passed")
        else:
            logger.warning("Verification issues detected: %d", len(verification.issues))
        return verification

    def _oracle_context(self, purpose: str, loop_run: LoopRun, step: Step) -> Dict[str, Any]:
        return {
            "purpose": purpose,
            "iteration": loop_run.iteration,
            "step_id": step.step_id,
            "attempt": step.attempt_count,
            "history_items": len(loop_run.context.completed_steps) + len(loop_run.context.failures),
        }

    def _describe(self, action: Action) -> str:
        if isinstance(action, CommandAction):
            return action.reasoning or action.command
        if isinstance(action, CodeAction):
            return action.code
        return action.text

    def _safe(self, text: str) -> str:
        return self.vault.redact(text)[0]

    def _emit(self, event: Dict[str, Any]) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(event)
        except Exception as e:
            logger.warning("Progress callback failed on %s event: %s", event.get("type"), e)


def execute_plan_with_resilience(
    plan_response: Any,
    oracle: Oracle,
    config: Optional[LoopConfig] = None,
    runner: Optional[CommandRunner] = None,
    global_context: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> LoopSummary:
    """Run any planner response shape (list, {"steps": [...]}, step records)."""
    loop = ResilientLoop(oracle, runner=runner, config=config, on_progress=on_progress)
    return loop.run(plan_response, global_context=global_context)
