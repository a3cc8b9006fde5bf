"""Error taxonomy for the execution engine.

Only PlanMalformed ends a loop run early. Everything else is either reported
(SecretMappingMiss) or folded into the loop's failure accounting.
"""

from typing import Optional, Sequence


class LumenError(Exception):
    """Base class for engine errors."""
    pass


class SecretMappingMiss(LumenError):
    """Placeholders that could not be restored at substitution time."""

    def __init__(self, tokens: Sequence[str]):
        self.tokens = tuple(tokens)
        super().__init__(
            f"{len(self.tokens)} unresolved placeholder(s): {', '.join(self.tokens)}"
        )


class PolicyBlocked(LumenError):
    """Command matched a destructive rule. Never retried as-is."""

    def __init__(self, verdict, message: Optional[str] = None):
        self.verdict = verdict
        super().__init__(message or f"Command blocked: {verdict.reason}")


class PolicyDenied(LumenError):
    """Command required approval and approval was withheld."""

    def __init__(self, verdict, message: Optional[str] = None):
        self.verdict = verdict
        super().__init__(message or f"Approval denied: {verdict.reason}")


class ExecutionTimeout(LumenError):
    """Command was killed after exceeding its wall-clock timeout."""

    def __init__(self, result):
        self.result = result
        super().__init__(f"Command timed out after {result.duration_ms}ms")


class ExecutionError(LumenError):
    """Command exited nonzero or could not be spawned."""

    def __init__(self, result):
        self.result = result
        detail = (result.stderr or "").strip().splitlines()
        suffix = f": {detail[-1]}" if detail else ""
        super().__init__(f"Command failed with exit code {result.exit_code}{suffix}")


class OracleFailure(LumenError):
    """The oracle failed or returned a malformed response."""
    pass


class PlanMalformed(LumenError):
    """The input plan cannot be normalised into a list of steps."""
    pass
