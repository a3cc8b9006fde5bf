"""Execution state for the resilient iteration loop."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Step lifecycle: PENDING -> EXECUTING -> SUCCESS | FAILED
PENDING = "pending"
EXECUTING = "executing"
SUCCESS = "success"
FAILED = "failed"

# Loop run states
RUNNING = "running"
COMPLETED = "completed"
EXHAUSTED = "exhausted"
ABORTED = "aborted"


@dataclass
class Step:
    step_id: str
    description: str
    command: Optional[str] = None
    status: str = PENDING  # PENDING | EXECUTING | SUCCESS | FAILED
    attempt_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def begin_attempt(self) -> None:
        if self.status == SUCCESS:
            raise ValueError(f"Step {self.step_id} already succeeded")
        self.status = EXECUTING
        self.attempt_count += 1

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "description": self.description,
            "command": self.command,
            "status": self.status,
            "attempt_count": self.attempt_count,
            "metadata": self.metadata,
            "warnings": self.warnings,
        }


@dataclass
class CompletedStep:
    step: str
    step_id: str
    iteration: int
    status: str
    result: Any = None

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "step_id": self.step_id,
            "iteration": self.iteration,
            "status": self.status,
            "result": self.result,
        }


@dataclass
class FailureRecord:
    step: str
    step_id: str
    iteration: int
    error: str
    error_type: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "step_id": self.step_id,
            "iteration": self.iteration,
            "error": self.error,
            "error_type": self.error_type,
            "details": self.details,
        }


@dataclass
class RecoveryAttempt:
    step: str
    step_id: str
    iteration: int
    solution: str
    action_kind: Optional[str] = None
    status: Optional[str] = None  # command status when the recovery ran a command
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "step_id": self.step_id,
            "iteration": self.iteration,
            "solution": self.solution,
            "action_kind": self.action_kind,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class Verification:
    """Structured fulfilment judgment. Advisory only."""
    fulfilled: bool
    issues: List[str] = field(default_factory=list)
    analysis: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "fulfilled": self.fulfilled,
            "issues": list(self.issues),
            "analysis": self.analysis,
        }


@dataclass
class ExecutionContext:
    """Owned by exactly one loop run. Not shared, not persisted."""
    completed_steps: List[CompletedStep] = field(default_factory=list)
    failures: List[FailureRecord] = field(default_factory=list)
    recovery_attempts: List[RecoveryAttempt] = field(default_factory=list)
    reassessments: int = 0
    consecutive_failures: int = 0
    global_context: Optional[str] = None


@dataclass
class LoopSummary:
    success: bool
    state: str
    completed_steps: List[CompletedStep]
    failure_count: int
    failures: List[FailureRecord]
    recovery_attempts: List[RecoveryAttempt]
    reassessments: int
    iterations: int
    success_rate: float
    total_steps: int
    reached_max_iterations: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    steps: List[Step] = field(default_factory=list)
    superseded_steps: List[Step] = field(default_factory=list)
    verification: Optional[Verification] = None

    @property
    def completed(self) -> bool:
        return self.state == COMPLETED

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "completed": self.completed,
            "state": self.state,
            "reached_max_iterations": self.reached_max_iterations,
            "cancelled": self.cancelled,
            "error": self.error,
            "total_steps": self.total_steps,
            "completed_steps": [s.to_dict() for s in self.completed_steps],
            "failure_count": self.failure_count,
            "failures": [f.to_dict() for f in self.failures],
            "recovery_attempts": [r.to_dict() for r in self.recovery_attempts],
            "reassessments": self.reassessments,
            "iterations": self.iterations,
            "success_rate": self.success_rate,
            "steps": [s.to_dict() for s in self.steps],
            "superseded_steps": [s.to_dict() for s in self.superseded_steps],
            "verification": self.verification.to_dict() if self.verification else None,
        }
