"""Chat-completion transport for the oracle.

Everything sent through here has already been redacted by the loop.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


# =============================================================================
# TOKEN BUDGETS
# =============================================================================

# Output tokens per oracle purpose before history scaling
PURPOSE_BUDGET = {
    "step": 2000,
    "recovery": 1500,
    "reassess": 3000,
    "verify": 2500,
}
FALLBACK_BUDGET = 1000

# Extra output per replayed history item, for purposes that summarise history
HISTORY_BUDGET_PER_ITEM = 100
HISTORY_SCALED_PURPOSES = frozenset({"reassess", "verify"})

MAX_OUTPUT_TOKENS = 16000


def compute_token_budget(purpose: str, history_items: int = 0) -> int:
    """
    max_tokens for one oracle call.

    Step and recovery replies are a single action, so their budget is flat.
    Revisions and verdicts grow with the number of completed steps and
    failures replayed in the prompt. Always clamped to MAX_OUTPUT_TOKENS.
    """
    budget = PURPOSE_BUDGET.get(purpose, FALLBACK_BUDGET)
    if purpose in HISTORY_SCALED_PURPOSES:
        budget += HISTORY_BUDGET_PER_ITEM * max(history_items, 0)
    return min(budget, MAX_OUTPUT_TOKENS)


# =============================================================================
# INTERFACE
# =============================================================================

@dataclass
class Message:
    role: str  # "system" or "user"
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class CompletionResult:
    content: str
    model: str
    usage: Optional[Dict[str, Any]] = None


class ModelClientError(Exception):
    """Transport-level failure; the oracle turns it into OracleFailure."""


class ModelClient(ABC):
    """Anything that can answer a list of chat messages."""

    @abstractmethod
    def complete(
        self,
        messages: List[Message],
        model: str,
        timeout: float = 30.0,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> CompletionResult:
        """Return the assistant reply or raise ModelClientError."""


# =============================================================================
# OPENROUTER
# =============================================================================

class OpenRouterClient(ModelClient):
    """
    OpenRouter chat completions over httpx.

    Replies are requested in JSON mode since every oracle prompt asks for a
    JSON object.
    """

    BASE_URL = "https://openrouter.ai/api/v1/chat/completions"
    APP_TITLE = "Lumen Agent"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key or os.environ.get("OPENROUTER_API_KEY")
        if not self.api_key:
            raise ModelClientError("OPENROUTER_API_KEY environment variable is required.")
        self.base_url = base_url or self.BASE_URL

    def build_payload(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "response_format": {"type": "json_object"},
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": self.APP_TITLE,
        }

    def _make_request(self, payload: dict, headers: dict, timeout: float) -> dict:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(self.base_url, headers=headers, json=payload)
            response.raise_for_status()
            return response.json()

    def complete(
        self,
        messages: List[Message],
        model: str,
        timeout: float = 30.0,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> CompletionResult:
        payload = self.build_payload(messages, model, max_tokens=max_tokens, temperature=temperature)
        logger.debug("OpenRouter request: model=%s max_tokens=%s temperature=%s", model, max_tokens, temperature)

        try:
            data = self._make_request(payload, self._headers(), timeout)
        except httpx.HTTPStatusError as e:
            raise ModelClientError(_status_error_message(e.response)) from e
        except httpx.TimeoutException as e:
            raise ModelClientError(f"Oracle request timed out after {timeout}s") from e
        except httpx.RequestError as e:
            raise ModelClientError(f"Network error: {e}") from e

        choices = data.get("choices") or []
        if not choices:
            raise ModelClientError("No choices in API response")

        content = (choices[0].get("message") or {}).get("content") or ""
        if not content:
            raise ModelClientError("Empty content in API response")

        return CompletionResult(content=content, model=data.get("model", model), usage=data.get("usage"))


def _status_error_message(response: httpx.Response) -> str:
    try:
        detail = response.json().get("error", {}).get("message") or response.reason_phrase
    except ValueError:
        detail = response.reason_phrase

    if response.status_code == 401:
        return f"API error: authentication failed, check OPENROUTER_API_KEY ({detail})"
    if response.status_code == 429:
        return f"API error: rate limited ({detail})"
    return f"API error: {response.status_code} {detail}"


def get_openrouter_client(api_key: Optional[str] = None) -> OpenRouterClient:
    return OpenRouterClient(api_key=api_key)


# =============================================================================
# TRACING
# =============================================================================

def traced_complete(
    client: ModelClient,
    messages: List[Message],
    model: str,
    timeout: float = 30.0,
    purpose: str = "step",
    run_id: str = "",
    history_items: int = 0,
    temperature: Optional[float] = None,
    step_id: Optional[str] = None,
) -> CompletionResult:
    """
    One oracle call inside a LangSmith span, with the purpose's token budget.

    The span is named "oracle_{purpose}" and tagged with the run and step so
    a run's oracle traffic can be filtered in LangSmith. Inputs are the
    redacted messages the loop built.
    """
    from langsmith import traceable

    max_tokens = compute_token_budget(purpose, history_items)

    @traceable(
        name=f"oracle_{purpose}",
        run_type="llm",
        tags=[purpose],
        metadata={
            "model": model,
            "run_id": run_id,
            "step_id": step_id,
            "max_tokens": max_tokens,
            "history_items": history_items,
        },
    )
    def _oracle_call(messages: List[dict], model: str) -> dict:
        result = client.complete(
            [Message(**m) for m in messages],
            model=model,
            timeout=timeout,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return {"content": result.content, "model": result.model, "usage": result.usage}

    output = _oracle_call([m.to_dict() for m in messages], model)
    return CompletionResult(content=output["content"], model=output["model"], usage=output.get("usage"))
