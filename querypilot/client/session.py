"""
AGENT SESSION - drives agent runs from the client side

    send_message(prompt)
        -> POST /ai-agent (streamed)
        -> frames folded into the ProgressStore
        -> on a clean `complete`: run the finalized SQL once

Only one run is in flight per session; starting another cancels the
previous one. A cancelled run applies nothing.
"""

import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel

from querypilot.ai_feature.cancellation import CancellationToken, RunCancelled
from querypilot.ai_feature.events import CompleteEvent, ErrorEvent
from querypilot.ai_feature.models import RunStatus
from querypilot.client.decoder import FrameDecoder
from querypilot.client.progress import AgentProgress, ProgressStore, RunFailed, RunStarted
from querypilot.core.config import settings
from querypilot.core.schemas import SchemaTable

logger = logging.getLogger(__name__)

CONTINUE_PREFIX = "Continue working on the goal: "
STOPPED_MESSAGE = "Agent stopped."
INCOMPLETE_STREAM_MESSAGE = "Agent stream ended before the run completed"

QueryRunner = Callable[[str], Awaitable[Dict[str, Any]]]


class AgentSessionError(Exception):
    pass


class RunOutcome(str, Enum):
    APPLIED = "applied"
    COMPLETED = "completed"
    HALTED = "halted"
    ERRORED = "errored"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = ""
    sql: Optional[str] = None
    previous_sql: Optional[str] = None
    explanation: Optional[str] = None
    error: Optional[str] = None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)


class HttpQueryRunner:
    """Runs SQL through the service's POST /query endpoint."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        connection_string: Optional[str] = None,
        path: str = "/query",
    ):
        self.http = http
        self.connection_string = connection_string
        self.path = path

    async def __call__(self, sql: str) -> Dict[str, Any]:
        response = await self.http.post(
            self.path, json={"connectionString": self.connection_string, "sql": sql}
        )
        if response.status_code >= 400:
            raise AgentSessionError(_error_detail(response))
        return response.json()


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class AgentSession:
    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: Optional[str] = None,
        connection_string: Optional[str] = None,
        schema: Optional[List[SchemaTable]] = None,
        max_steps: Optional[int] = None,
        query_runner: Optional[QueryRunner] = None,
        agent_path: str = "/ai-agent",
    ):
        self.http = http
        self.api_key = api_key
        self.connection_string = connection_string
        self.schema = schema
        self.max_steps = max_steps
        self.query_runner = query_runner or HttpQueryRunner(http, connection_string)
        self.agent_path = agent_path

        self.messages: List[ChatMessage] = []
        self.current_sql: Optional[str] = None
        self.last_query_result: Optional[Dict[str, Any]] = None
        self.store = ProgressStore()
        self._token: Optional[CancellationToken] = None

    @property
    def progress(self) -> Optional[AgentProgress]:
        return self.store.state

    @property
    def is_running(self) -> bool:
        return self._token is not None and not self._token.cancelled

    # =========================
    # Public operations
    # =========================
    async def send_message(self, prompt: str) -> RunOutcome:
        if not prompt.strip():
            return RunOutcome.REJECTED
        return await self._run(prompt.strip(), goal=prompt.strip())

    async def continue_run(self) -> RunOutcome:
        progress = self.store.state
        if progress is None or not progress.can_continue:
            return RunOutcome.REJECTED
        # The goal of a continuation stays the original request
        return await self._run(f"{CONTINUE_PREFIX}{progress.goal}", goal=progress.goal)

    def cancel(self) -> None:
        if self.is_running:
            self._token.cancel()
            self._add_message("system", STOPPED_MESSAGE)
        self._token = None
        self.store.clear()

    def start_new_conversation(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None
        self.messages = []
        self.current_sql = None
        self.last_query_result = None
        self.store.clear()

    async def run_query(self, sql: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Run a query by hand (defaults to the current SQL)."""
        sql = sql or self.current_sql
        if not sql:
            return None
        return await self._execute(sql)

    # =========================
    # Internals
    # =========================
    def _add_message(self, role: str, content: str = "", **fields) -> ChatMessage:
        message = ChatMessage(role=role, content=content, **fields)
        self.messages.append(message)
        return message

    def _conversation_history(self) -> List[Dict[str, str]]:
        history = []
        for message in self.messages:
            if message.role == "user":
                history.append({"role": "user", "content": message.content})
            elif message.role == "assistant":
                history.append(
                    {
                        "role": "assistant",
                        "content": json.dumps(
                            {"sql": message.sql, "explanation": message.explanation}
                        ),
                    }
                )
        return history

    def _request_body(self, prompt: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "prompt": prompt,
            "apiKey": self.api_key,
            "connectionString": self.connection_string,
            "conversationHistory": self._conversation_history(),
            "previousSql": self.current_sql,
        }
        if self.schema is not None:
            body["schema"] = [table.model_dump(by_alias=True) for table in self.schema]
        if self.max_steps is not None:
            body["maxSteps"] = self.max_steps
        return body

    async def _execute(self, sql: str) -> Optional[Dict[str, Any]]:
        try:
            result = await self.query_runner(sql)
        except (AgentSessionError, httpx.HTTPError) as error:
            self._add_message("system", f"Query error: {error}")
            return None
        self.last_query_result = result
        self._add_message(
            "system",
            f"Query executed: {result.get('rowCount')} rows in {result.get('executionTime')}ms",
        )
        return result

    async def _run(self, prompt: str, goal: str) -> RunOutcome:
        if self._token is not None:
            self._token.cancel()
        token = CancellationToken()
        self._token = token

        body = self._request_body(prompt)
        self._add_message("user", prompt)
        self.store.dispatch(
            RunStarted(goal=goal, max_steps=self.max_steps or settings.MAX_AGENT_STEPS)
        )

        try:
            saw_complete, saw_error = await self._stream(body, token)
        except RunCancelled:
            logger.info("Agent run cancelled")
            return RunOutcome.CANCELLED
        except (AgentSessionError, httpx.HTTPError) as error:
            return self._fail(token, str(error) or type(error).__name__)

        if token.cancelled:
            return RunOutcome.CANCELLED
        if not saw_complete:
            return self._fail(token, INCOMPLETE_STREAM_MESSAGE)

        progress = self.store.state
        if saw_error or progress.status == RunStatus.ERRORED:
            self._token = None
            self._add_message("assistant", error=progress.error or "Agent run failed")
            return RunOutcome.ERRORED

        if progress.finalized_sql:
            self._add_message(
                "assistant",
                progress.explanation or "",
                sql=progress.finalized_sql,
                previous_sql=self.current_sql,
                explanation=progress.explanation,
            )
            self.current_sql = progress.finalized_sql
            try:
                await token.guard(self._execute(progress.finalized_sql))
            except RunCancelled:
                return RunOutcome.CANCELLED
            self._token = None
            return RunOutcome.APPLIED

        self._token = None
        if progress.reached_step_limit:
            self._add_message(
                "system",
                f"Agent reached {progress.max_steps} step limit. "
                "Continue to let it keep trying.",
            )
            return RunOutcome.HALTED
        return RunOutcome.COMPLETED

    async def _stream(self, body: Dict[str, Any], token: CancellationToken):
        request = self.http.build_request("POST", self.agent_path, json=body)
        response = await token.guard(self.http.send(request, stream=True))

        saw_complete = False
        saw_error = False
        try:
            if response.status_code >= 400:
                await token.guard(response.aread())
                raise AgentSessionError(_error_detail(response))

            decoder = FrameDecoder()
            chunks = response.aiter_bytes()
            while True:
                chunk = await token.guard(_next_chunk(chunks))
                events = decoder.feed(chunk) if chunk is not None else decoder.flush()
                for event in events:
                    # A listener may cancel the run while a batch is being folded
                    token.raise_if_cancelled()
                    self.store.dispatch(event)
                    if isinstance(event, ErrorEvent):
                        saw_error = True
                    elif isinstance(event, CompleteEvent):
                        saw_complete = True
                if chunk is None:
                    break
        finally:
            await response.aclose()

        return saw_complete, saw_error

    def _fail(self, token: CancellationToken, error: str) -> RunOutcome:
        if token.cancelled:
            return RunOutcome.CANCELLED
        self._token = None
        self.store.dispatch(RunFailed(error=error))
        self._add_message("assistant", error=error)
        return RunOutcome.ERRORED
