import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional

import httpx

from querypilot.core.config import settings

logger = logging.getLogger(__name__)


# =========================
# Transcript / turns
# =========================
@dataclass
class ModelToolRequest:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelTurn:
    """One assistant turn: optional prose plus the tools it asked for."""

    text: str = ""
    tool_requests: List[ModelToolRequest] = field(default_factory=list)
    stop_reason: Optional[str] = None


@dataclass
class TranscriptTurn:
    role: Literal["user", "assistant", "tool"]
    content: str = ""
    tool_requests: List[ModelToolRequest] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    is_error: bool = False


class ModelClientError(Exception):
    """A model request failed; `message` is safe to show to the user."""

    def __init__(self, message: str, error_code: str, is_retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.is_retryable = is_retryable


class ModelClient(ABC):
    @abstractmethod
    async def next_turn(
        self,
        system: str,
        transcript: List[TranscriptTurn],
        tools: List[Dict[str, Any]],
    ) -> ModelTurn:
        """Ask the model for its next turn given the whole transcript."""

    async def aclose(self) -> None:
        return None


# =========================
# Anthropic Messages API
# =========================
def to_anthropic_messages(transcript: List[TranscriptTurn]) -> List[Dict[str, Any]]:
    """
    Convert transcript turns into Messages API `messages`.

    Tool results travel as `tool_result` blocks inside a user message, and
    consecutive turns with the same API role are merged, since the API
    expects user and assistant messages to alternate.
    """
    messages: List[Dict[str, Any]] = []

    for turn in transcript:
        if turn.role == "tool":
            role = "user"
            blocks = [
                {
                    "type": "tool_result",
                    "tool_use_id": turn.tool_call_id,
                    "content": turn.content,
                    "is_error": turn.is_error,
                }
            ]
        elif turn.role == "assistant":
            role = "assistant"
            blocks = []
            if turn.content:
                blocks.append({"type": "text", "text": turn.content})
            for request in turn.tool_requests:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": request.id,
                        "name": request.name,
                        "input": request.arguments,
                    }
                )
        else:
            role = "user"
            blocks = [{"type": "text", "text": turn.content}]

        if not blocks:
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})

    return messages


def parse_model_turn(data: Dict[str, Any]) -> ModelTurn:
    texts = []
    requests = []
    for block in data.get("content") or []:
        if block.get("type") == "text":
            texts.append(block.get("text", ""))
        elif block.get("type") == "tool_use":
            requests.append(
                ModelToolRequest(
                    id=block["id"],
                    name=block["name"],
                    arguments=block.get("input") or {},
                )
            )
    return ModelTurn(
        text="".join(texts).strip(),
        tool_requests=requests,
        stop_reason=data.get("stop_reason"),
    )


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("message") or response.text[:200]
    return response.text[:200]


def translate_http_error(status_code: int, detail: str) -> ModelClientError:
    if status_code == 401:
        return ModelClientError(
            "Invalid API key. Please check your Anthropic API key in settings.",
            "auth_error",
        )
    if status_code == 429:
        return ModelClientError(
            "Rate limit exceeded. Please wait a moment and try again.",
            "rate_limit",
            is_retryable=True,
        )
    if status_code == 529:
        return ModelClientError(
            "Anthropic API is overloaded. Please try again in a few moments.",
            "overloaded",
            is_retryable=True,
        )
    if status_code >= 500:
        return ModelClientError(
            f"Model server error: {detail}", "server_error", is_retryable=True
        )
    return ModelClientError(f"Model API error: {detail}", "api_error")


class AnthropicModelClient(ModelClient):
    """Tool-calling model client for the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        model: str = settings.AGENT_MODEL,
        api_url: str = settings.ANTHROPIC_API_URL,
        max_tokens: int = settings.AGENT_MAX_TOKENS,
        timeout: float = settings.LLM_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.max_tokens = max_tokens
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    def build_payload(
        self,
        system: str,
        transcript: List[TranscriptTurn],
        tools: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": to_anthropic_messages(transcript),
        }
        if tools:
            payload["tools"] = tools
        return payload

    async def next_turn(
        self,
        system: str,
        transcript: List[TranscriptTurn],
        tools: List[Dict[str, Any]],
    ) -> ModelTurn:
        payload = self.build_payload(system, transcript, tools)
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": settings.ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        logger.debug(
            f"Model request: model={self.model}, messages={len(payload['messages'])}"
        )

        try:
            response = await self._client.post(self.api_url, json=payload, headers=headers)
        except httpx.ConnectError as error:
            logger.error(f"Cannot connect to model API at {self.api_url}: {error}")
            raise ModelClientError(
                "Cannot connect to the model API", "unavailable", is_retryable=True
            )
        except httpx.TimeoutException:
            logger.error("Model request timed out")
            raise ModelClientError("Model request timed out", "timeout", is_retryable=True)
        except httpx.RequestError as error:
            logger.error(f"Model request error: {error}")
            raise ModelClientError(
                "Failed to communicate with the model API", "request_error", is_retryable=True
            )

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.error(f"Model HTTP error: {response.status_code} - {detail}")
            raise translate_http_error(response.status_code, detail)

        try:
            data = response.json()
        except json.JSONDecodeError as error:
            raise ModelClientError(f"Model response parsing error: {error}", "parse_error")

        return parse_model_turn(data)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


ModelClientFactory = Callable[[str], ModelClient]


def get_model_client_factory() -> ModelClientFactory:
    """Dependency: builds a model client from a per-request API key."""
    return AnthropicModelClient
