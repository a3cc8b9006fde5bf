"""Command execution behind the policy gate.

Runs a command exactly as given, under a wall-clock timeout, and reports a
structured CommandResult. Never raises for command failures; the status says
what happened.
"""

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from lumen_agent.audit import AuditRecord, AuditSink, LoggingAuditSink
from lumen_agent.constants import DEFAULT_TIMEOUT_MS
from lumen_agent.errors import ExecutionError, ExecutionTimeout, PolicyBlocked, PolicyDenied
from lumen_agent.policy_gate import PolicyGate, PolicyVerdict
from lumen_agent.secret_vault import SecretMapping

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_BLOCKED = "blocked"
STATUS_DENIED = "denied"
STATUS_DRY_RUN = "dry-run"
STATUS_TIMEOUT = "timeout"

# (display_command, verdict) -> approved?
Approver = Callable[[str, PolicyVerdict], bool]


@dataclass
class CommandResult:
    """Outcome of one command attempt."""
    status: str
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0
    message: str = ""
    verdict: Optional[PolicyVerdict] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    def raise_for_status(self) -> None:
        """Raise the taxonomy error matching a failed status."""
        if self.status == STATUS_BLOCKED:
            raise PolicyBlocked(self.verdict, self.message or None)
        if self.status == STATUS_DENIED:
            raise PolicyDenied(self.verdict, self.message or None)
        if self.status == STATUS_TIMEOUT:
            raise ExecutionTimeout(self)
        if self.status == STATUS_ERROR:
            raise ExecutionError(self)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "command": self.command,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "message": self.message,
            "policy_verdict": self.verdict.to_dict() if self.verdict else None,
        }


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill the shell and everything it started."""
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
        except PermissionError:
            pass
    proc.kill()


class CommandRunner:
    """Classifies, optionally asks for approval, then runs shell commands."""

    def __init__(
        self,
        gate: Optional[PolicyGate] = None,
        audit_sink: Optional[AuditSink] = None,
        approver: Optional[Approver] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        dry_run: bool = False,
        cwd: Optional[str] = None,
    ):
        self.gate = gate or PolicyGate()
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.approver = approver
        self.timeout_ms = timeout_ms
        self.dry_run = dry_run
        self.cwd = cwd

    def run(
        self,
        command: str,
        timeout_ms: Optional[int] = None,
        dry_run: Optional[bool] = None,
        secrets: Optional[SecretMapping] = None,
        reasoning: str = "",
    ) -> CommandResult:
        """
        Classify and execute a command.

        Args:
            command: Command text with secrets already restored
            timeout_ms: Wall-clock limit; overrides the runner default
            dry_run: Classify only, never spawn; overrides the runner default
            secrets: Mapping used to mask restored values in the result and audit record
            reasoning: Why the oracle chose this command (audit only)

        Returns:
            CommandResult. Every result is handed to the audit sink first.
        """
        timeout_ms = timeout_ms if timeout_ms is not None else self.timeout_ms
        dry_run = self.dry_run if dry_run is None else dry_run
        mask = secrets.mask if secrets is not None else (lambda text: text)
        display = mask(command)

        verdict = self.gate.classify(command)

        if dry_run:
            note = "Dry run: command not executed"
            if verdict.is_blocked:
                note = f"Dry run: command would be blocked ({verdict.matched_rule})"
            result = CommandResult(
                status=STATUS_DRY_RUN,
                command=display,
                message=note,
                verdict=verdict,
            )
        elif verdict.is_blocked:
            result = CommandResult(
                status=STATUS_BLOCKED,
                command=display,
                message=f"Blocked by rule {verdict.matched_rule}: {verdict.reason}",
                verdict=verdict,
            )
        elif verdict.needs_approval and not self._approved(display, verdict):
            result = CommandResult(
                status=STATUS_DENIED,
                command=display,
                message=f"Approval required and not granted: {verdict.reason}",
                verdict=verdict,
            )
        else:
            result = self._execute(command, timeout_ms, verdict)
            result.command = display
            result.stdout = mask(result.stdout)
            result.stderr = mask(result.stderr)

        self.audit_sink.record(
            AuditRecord(
                command=result.command,
                status=result.status,
                stdout=result.stdout,
                stderr=result.stderr,
                message=result.message,
                reasoning=reasoning,
                policy_verdict=verdict.to_dict(),
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
            )
        )
        return result

    def _approved(self, display: str, verdict: PolicyVerdict) -> bool:
        if self.approver is None:
            return False
        return bool(self.approver(display, verdict))

    def _execute(self, command: str, timeout_ms: int, verdict: PolicyVerdict) -> CommandResult:
        """Spawn the shell. Kills the whole process group on timeout."""
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                cwd=self.cwd,
                start_new_session=hasattr(os, "killpg"),
            )
        except OSError as e:
            return CommandResult(
                status=STATUS_ERROR,
                command=command,
                stderr=str(e),
                exit_code=None,
                duration_ms=int((time.monotonic() - start) * 1000),
                message=f"Could not start command: {e}",
                verdict=verdict,
            )

        try:
            stdout, stderr = proc.communicate(timeout=timeout_ms / 1000.0)
        except subprocess.TimeoutExpired:
            _kill_process_tree(proc)
            stdout, stderr = proc.communicate()
            return CommandResult(
                status=STATUS_TIMEOUT,
                command=command,
                stdout=stdout or "",
                stderr=stderr or "",
                exit_code=proc.returncode,
                duration_ms=int((time.monotonic() - start) * 1000),
                message=f"Execution timed out after {timeout_ms}ms",
                verdict=verdict,
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        if proc.returncode == 0:
            status = STATUS_SUCCESS
            message = ""
        else:
            status = STATUS_ERROR
            message = f"Command exited with code {proc.returncode}"

        return CommandResult(
            status=status,
            command=command,
            stdout=stdout or "",
            stderr=stderr or "",
            exit_code=proc.returncode,
            duration_ms=duration_ms,
            message=message,
            verdict=verdict,
        )
