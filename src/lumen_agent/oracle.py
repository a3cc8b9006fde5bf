"""Oracle boundary: the external capability that decides what to do.

The loop only talks to the abstract Oracle, so tests can swap in a
deterministic stand-in. Every prompt handed to an Oracle has already been
redacted.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import jsonschema

from lumen_agent.errors import OracleFailure
from lumen_agent.execution_state import Verification
from lumen_agent.model_client import Message, ModelClient, ModelClientError, compute_token_budget, traced_complete
from lumen_agent.schemas import (
    ACTION_SCHEMA,
    LEGACY_ACTION_SCHEMA,
    PLAN_REVISION_SCHEMA,
    VERIFICATION_SCHEMA,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandAction:
    command: str
    reasoning: str = ""
    kind: str = "command"


@dataclass(frozen=True)
class CodeAction:
    code: str
    language: str = ""
    kind: str = "code"


@dataclass(frozen=True)
class MessageAction:
    text: str
    kind: str = "message"


Action = Union[CommandAction, CodeAction, MessageAction]


class Oracle(ABC):
    """Abstract decision-making capability."""

    @abstractmethod
    def next_action(self, prompt: str, context: Dict[str, Any]) -> Optional[Action]:
        """
        Decide the action for a step (or a recovery attempt).

        Returns:
            The action, or None when the oracle declines.

        Raises:
            OracleFailure: On failed or malformed responses
        """
        pass

    @abstractmethod
    def revise_plan(self, prompt: str, context: Dict[str, Any]) -> List[str]:
        """Return replacement step descriptions for the unexecuted tail."""
        pass

    @abstractmethod
    def verify(self, prompt: str, context: Dict[str, Any]) -> Verification:
        """Judge whether the original plan was fulfilled."""
        pass


def _validate(payload: Any, schema: dict, what: str) -> None:
    try:
        jsonschema.Draft7Validator(schema).validate(payload)
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "(root)"
        raise OracleFailure(f"Malformed {what}: {e.message} at {path}")


def parse_action(payload: Any) -> Action:
    """
    Build an Action from a decoded oracle reply.

    Accepts the ``kind`` format and the older ``choice`` format
    (terminalCommand / code / response).
    """
    if isinstance(payload, dict) and "choice" in payload and "kind" not in payload:
        _validate(payload, LEGACY_ACTION_SCHEMA, "action")
        choice = payload["choice"]
        if choice == "terminalCommand":
            command = payload.get("terminalCommand") or ""
            if not command.strip():
                raise OracleFailure("Malformed action: terminalCommand is empty")
            return CommandAction(command=command, reasoning=payload.get("commandReasoning", ""))
        if choice == "code":
            return CodeAction(code=payload.get("code", ""))
        return MessageAction(text=payload.get("response", ""))

    _validate(payload, ACTION_SCHEMA, "action")
    kind = payload["kind"]
    if kind == "command":
        return CommandAction(command=payload["command"], reasoning=payload.get("reasoning", ""))
    if kind == "code":
        return CodeAction(code=payload["code"], language=payload.get("language", ""))
    return MessageAction(text=payload["text"])


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_NUMBERED_LINE_RE = re.compile(r"^\s*\d+[.)]\s*(.+)$")


def extract_json(content: str) -> Any:
    """Decode JSON from a reply, tolerating markdown fences."""
    text = content.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise OracleFailure(f"Reply is not valid JSON: {e}")


def parse_numbered_steps(text: str) -> List[str]:
    """Pull "1. do x" style lines out of free text."""
    steps = []
    for line in text.splitlines():
        m = _NUMBERED_LINE_RE.match(line)
        if m and m.group(1).strip():
            steps.append(m.group(1).strip())
    return steps


ACTION_SYSTEM_PROMPT = """You are an operations agent executing one step of a plan on a real machine.
Reply with a single JSON object and nothing else, in one of these forms:
{"kind": "command", "command": "<shell command>", "reasoning": "<why>"}
{"kind": "code", "code": "<source>", "language": "<language>"}
{"kind": "message", "text": "<answer>"}

Rules:
- Placeholders like {{PASSWORD_1}} stand for real secrets. Use them verbatim; never guess values.
- Prefer read-only commands when they are enough.
- One command per reply."""

REVISION_SYSTEM_PROMPT = """You are a planner revising the remaining steps of a plan after repeated failures.
Reply with a single JSON object and nothing else:
{"steps": ["<step description>", ...], "reasoning": "<what changed and why>"}"""

VERIFICATION_SYSTEM_PROMPT = """You are a reviewer checking whether completed work fulfils the original plan.
Reply with a single JSON object and nothing else:
{"fulfilled": true|false, "issues": ["<issue>", ...], "analysis": "<short assessment>"}"""


class OpenRouterOracle(Oracle):
    """Oracle backed by a chat model via a ModelClient."""

    TEMPERATURES = {"step": 0.5, "recovery": 0.7, "reassess": 0.8, "verify": 0.5}

    def __init__(
        self,
        client: ModelClient,
        model: str,
        timeout: float = 30.0,
        trace: bool = False,
        run_id: str = "",
    ):
        self.client = client
        self.model = model
        self.timeout = timeout
        self.trace = trace
        self.run_id = run_id

    def _complete(self, system_prompt: str, prompt: str, context: Dict[str, Any]) -> str:
        purpose = context.get("purpose", "step")
        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=prompt),
        ]
        temperature = self.TEMPERATURES.get(purpose)
        try:
            if self.trace:
                result = traced_complete(
                    self.client,
                    messages,
                    self.model,
                    timeout=self.timeout,
                    purpose=purpose,
                    run_id=self.run_id,
                    history_items=context.get("history_items", 0),
                    temperature=temperature,
                    step_id=context.get("step_id"),
                )
            else:
                result = self.client.complete(
                    messages=messages,
                    model=self.model,
                    timeout=self.timeout,
                    max_tokens=compute_token_budget(purpose, context.get("history_items", 0)),
                    temperature=temperature,
                )
        except ModelClientError as e:
            raise OracleFailure(str(e)) from e
        return result.content

    def next_action(self, prompt: str, context: Dict[str, Any]) -> Optional[Action]:
        content = self._complete(ACTION_SYSTEM_PROMPT, prompt, context)
        return parse_action(extract_json(content))

    def revise_plan(self, prompt: str, context: Dict[str, Any]) -> List[str]:
        content = self._complete(REVISION_SYSTEM_PROMPT, prompt, context)
        try:
            payload = extract_json(content)
            _validate(payload, PLAN_REVISION_SCHEMA, "plan revision")
            return [s.strip() for s in payload["steps"] if s.strip()]
        except OracleFailure:
            steps = parse_numbered_steps(content)
            if not steps:
                raise
            logger.debug("Plan revision was not JSON, used %d numbered lines", len(steps))
            return steps

    def verify(self, prompt: str, context: Dict[str, Any]) -> Verification:
        content = self._complete(VERIFICATION_SYSTEM_PROMPT, prompt, context)
        try:
            payload = extract_json(content)
            _validate(payload, VERIFICATION_SCHEMA, "verification")
        except OracleFailure as e:
            return Verification(
                fulfilled=False,
                issues=[f"Verification reply could not be parsed: {e}"],
                analysis=content,
            )
        return Verification(
            fulfilled=payload["fulfilled"],
            issues=list(payload["issues"]),
            analysis=payload.get("analysis"),
        )
