"""Tests for the oracle boundary (fake model client, no network)."""

import httpx
import pytest

from lumen_agent.errors import OracleFailure
from lumen_agent.model_client import (
    MAX_OUTPUT_TOKENS,
    CompletionResult,
    ModelClient,
    Message,
    ModelClientError,
    OpenRouterClient,
    compute_token_budget,
)
from lumen_agent.oracle import (
    CodeAction,
    CommandAction,
    MessageAction,
    OpenRouterOracle,
    extract_json,
    parse_action,
    parse_numbered_steps,
)


class CannedClient(ModelClient):
    """Returns queued replies and records what it was sent."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests = []

    def complete(self, messages, model, timeout=30.0, max_tokens=None, temperature=None):
        self.requests.append({
            "messages": messages,
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return CompletionResult(content=reply, model=model)


def make_oracle(*replies, **kwargs):
    client = CannedClient(*replies)
    return OpenRouterOracle(client, model="test/model", **kwargs), client


# =============================================================================
# TESTS - Action parsing
# =============================================================================

class TestParseAction:
    """Reply payload -> Action."""

    def test_command(self):
        action = parse_action({"kind": "command", "command": "ls", "reasoning": "look"})
        assert action == CommandAction(command="ls", reasoning="look")

    def test_code(self):
        action = parse_action({"kind": "code", "code": "print(1)", "language": "python"})
        assert action == CodeAction(code="print(1)", language="python")

    def test_message(self):
        assert parse_action({"kind": "message", "text": "hi"}) == MessageAction(text="hi")

    def test_legacy_terminal_command(self):
        """The older choice format is accepted."""
        action = parse_action({
            "choice": "terminalCommand",
            "terminalCommand": "df -h",
            "commandReasoning": "disk",
        })
        assert action == CommandAction(command="df -h", reasoning="disk")

    def test_legacy_response(self):
        action = parse_action({"choice": "response", "response": "nothing to do"})
        assert action == MessageAction(text="nothing to do")

    def test_legacy_empty_command_rejected(self):
        with pytest.raises(OracleFailure, match="empty"):
            parse_action({"choice": "terminalCommand", "terminalCommand": "  "})

    def test_missing_field_rejected(self):
        with pytest.raises(OracleFailure, match="Malformed action"):
            parse_action({"kind": "command"})

    def test_unknown_kind_rejected(self):
        with pytest.raises(OracleFailure):
            parse_action({"kind": "dance", "text": "x"})

    def test_non_object_rejected(self):
        with pytest.raises(OracleFailure):
            parse_action(["ls"])


class TestReplyHelpers:
    """JSON extraction and numbered-line fallback."""

    def test_extract_plain_json(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_extract_fenced_json(self):
        assert extract_json('Here:\n```json\n{"a": 1}\n```\n') == {"a": 1}

    def test_extract_invalid(self):
        with pytest.raises(OracleFailure, match="not valid JSON"):
            extract_json("sure, run ls")

    def test_numbered_steps(self):
        text = "Plan:\n1. check disk\n2) free space\nnotes\n3. restart"
        assert parse_numbered_steps(text) == ["check disk", "free space", "restart"]


# =============================================================================
# TESTS - OpenRouterOracle
# =============================================================================

class TestOpenRouterOracle:
    """Oracle calls through a ModelClient."""

    def test_next_action(self):
        oracle, client = make_oracle('{"kind": "command", "command": "ls"}')
        action = oracle.next_action("list files", {"purpose": "step"})
        assert action == CommandAction(command="ls")
        request = client.requests[0]
        assert request["messages"][0].role == "system"
        assert request["messages"][1].content == "list files"
        assert request["temperature"] == OpenRouterOracle.TEMPERATURES["step"]
        assert request["max_tokens"] == compute_token_budget("step")

    def test_client_error_becomes_oracle_failure(self):
        oracle, _ = make_oracle(ModelClientError("API error: quota"))
        with pytest.raises(OracleFailure, match="quota"):
            oracle.next_action("x", {"purpose": "step"})

    def test_revise_plan_json(self):
        oracle, _ = make_oracle('{"steps": ["a", "b"], "reasoning": "split"}')
        assert oracle.revise_plan("x", {"purpose": "reassess"}) == ["a", "b"]

    def test_revise_plan_numbered_fallback(self):
        oracle, _ = make_oracle("1. first\n2. second")
        assert oracle.revise_plan("x", {"purpose": "reassess"}) == ["first", "second"]

    def test_revise_plan_garbage(self):
        oracle, _ = make_oracle("no idea")
        with pytest.raises(OracleFailure):
            oracle.revise_plan("x", {"purpose": "reassess"})

    def test_verify(self):
        oracle, _ = make_oracle('{"fulfilled": true, "issues": [], "analysis": "all good"}')
        verdict = oracle.verify("x", {"purpose": "verify"})
        assert verdict.fulfilled is True
        assert verdict.analysis == "all good"

    def test_verify_unparsable(self):
        """An unparsable judgment is never read as success."""
        oracle, _ = make_oracle("Looks complete to me!")
        verdict = oracle.verify("x", {"purpose": "verify"})
        assert verdict.fulfilled is False
        assert "could not be parsed" in verdict.issues[0]

    def test_traced_call_sets_token_budget(self, monkeypatch):
        """Traced calls pass a purpose-based max_tokens."""
        monkeypatch.delenv("LANGSMITH_TRACING", raising=False)
        monkeypatch.delenv("LANGCHAIN_TRACING_V2", raising=False)
        oracle, client = make_oracle('{"kind": "message", "text": "ok"}', trace=True, run_id="r1")
        oracle.next_action("x", {"purpose": "recovery"})
        assert client.requests[0]["max_tokens"] == compute_token_budget("recovery")


# =============================================================================
# TESTS - Transport
# =============================================================================

class TestModelClient:
    """Token budgets and OpenRouter error mapping."""

    def test_budget_grows_with_history(self):
        assert compute_token_budget("reassess", 10) > compute_token_budget("reassess", 0)

    def test_budget_clamped(self):
        assert compute_token_budget("verify", 10_000) == MAX_OUTPUT_TOKENS

    def test_step_budget_ignores_history(self):
        assert compute_token_budget("step", 50) == compute_token_budget("step", 0)

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        with pytest.raises(ModelClientError, match="OPENROUTER_API_KEY"):
            OpenRouterClient()

    def test_timeout_mapped(self, monkeypatch):
        client = OpenRouterClient(api_key="test-key")

        def _timeout(*args, **kwargs):
            raise httpx.ReadTimeout("slow")

        monkeypatch.setattr(client, "_make_request", _timeout)
        with pytest.raises(ModelClientError, match="timed out"):
            client.complete([], model="m", timeout=1.0)

    @pytest.mark.parametrize("status,expected", [
        (401, "authentication failed"),
        (429, "rate limited"),
        (500, "API error: 500 bad key"),
    ])
    def test_status_errors_mapped(self, monkeypatch, status, expected):
        client = OpenRouterClient(api_key="test-key")
        request = httpx.Request("POST", OpenRouterClient.BASE_URL)
        response = httpx.Response(status, json={"error": {"message": "bad key"}}, request=request)

        def _fail(*args, **kwargs):
            raise httpx.HTTPStatusError("failed", request=request, response=response)

        monkeypatch.setattr(client, "_make_request", _fail)
        with pytest.raises(ModelClientError, match=expected):
            client.complete([], model="m")

    def test_payload_json_mode(self):
        client = OpenRouterClient(api_key="test-key")
        payload = client.build_payload([Message(role="user", content="hi")], "m", max_tokens=10)
        assert payload["response_format"] == {"type": "json_object"}
        assert payload["max_tokens"] == 10
        assert "temperature" not in payload

    def test_empty_choices(self, monkeypatch):
        client = OpenRouterClient(api_key="test-key")
        monkeypatch.setattr(client, "_make_request", lambda *a, **k: {"choices": []})
        with pytest.raises(ModelClientError, match="No choices"):
            client.complete([], model="m")

    def test_content_returned(self, monkeypatch):
        client = OpenRouterClient(api_key="test-key")
        payload = {"model": "m", "choices": [{"message": {"content": "{}"}}], "usage": {"total_tokens": 3}}
        monkeypatch.setattr(client, "_make_request", lambda *a, **k: payload)
        result = client.complete([], model="m")
        assert result.content == "{}"
        assert result.usage == {"total_tokens": 3}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
