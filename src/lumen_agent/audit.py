"""Audit sink interface.

The engine emits one AuditRecord per command attempt. Storage and formatting
belong to whoever implements the sink.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class AuditRecord:
    """One command attempt. Commands and outputs are always in redacted form."""
    command: str
    status: str
    stdout: str = ""
    stderr: str = ""
    message: str = ""
    reasoning: str = ""
    policy_verdict: Optional[Dict[str, Any]] = None
    exit_code: Optional[int] = None
    duration_ms: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "command": self.command,
            "status": self.status,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "message": self.message,
            "reasoning": self.reasoning,
            "policy_verdict": self.policy_verdict,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
        }


class AuditSink(ABC):
    """Receives audit records. Never expected to persist anything itself."""

    @abstractmethod
    def record(self, entry: AuditRecord) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes a one-line summary per command to the ``lumen_agent.audit`` logger."""

    def record(self, entry: AuditRecord) -> None:
        logger.info(
            "[AUDIT] %s - %s - %s",
            entry.timestamp,
            entry.status or "unknown",
            entry.command or "no command",
        )


class MemoryAuditSink(AuditSink):
    """Keeps records in memory for callers that inspect them after a run."""

    def __init__(self):
        self.records: List[AuditRecord] = []

    def record(self, entry: AuditRecord) -> None:
        self.records.append(entry)

    def statuses(self) -> List[str]:
        return [r.status for r in self.records]
