from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict

from querypilot.core.schemas import CamelModel, ConversationTurn


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =========================
# Enums
# =========================
class ToolCallStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class RunStatus(str, Enum):
    """Terminal states of one agent run (Idle/Running are never reported)."""

    COMPLETED = "completed"
    HALTED = "halted"
    ERRORED = "errored"
    CANCELLED = "cancelled"


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class InvalidToolCallTransition(Exception):
    pass


# =========================
# GOAL
# =========================
class AgentGoal(CamelModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    previous_sql: Optional[str] = None
    previous_context: Optional[str] = None
    conversation_history: List[ConversationTurn] = []

    @property
    def is_follow_up(self) -> bool:
        return bool(self.previous_sql)


# =========================
# TOOL RESULTS / CALLS
# =========================
class ToolResult(CamelModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Dict[str, Any]) -> "ToolResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, data: Optional[Dict[str, Any]] = None) -> "ToolResult":
        return cls(success=False, error=error, data=data)

    def payload(self) -> Dict[str, Any]:
        """What the model sees as the tool's output."""
        body: Dict[str, Any] = {"success": self.success}
        if self.data:
            body.update(self.data)
        if self.error is not None:
            body["error"] = self.error
        return body


class ToolCall(CamelModel):
    """
    One tool invocation, kept for audit and rendering.

    Status only moves pending -> running -> success|error, through
    start() and finish(); anything else raises InvalidToolCallTransition.
    """

    id: str
    tool_name: str
    args: Dict[str, Any] = {}
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    status: ToolCallStatus = ToolCallStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def start(self) -> None:
        if self.status is not ToolCallStatus.PENDING:
            raise InvalidToolCallTransition(
                f"Tool call {self.id} cannot start from {self.status.value}"
            )
        self.status = ToolCallStatus.RUNNING
        self.started_at = utc_now()

    def finish(self, outcome: ToolResult) -> None:
        if self.status is not ToolCallStatus.RUNNING:
            raise InvalidToolCallTransition(
                f"Tool call {self.id} cannot finish from {self.status.value}"
            )
        self.result = outcome.payload()
        self.error = outcome.error
        self.status = ToolCallStatus.SUCCESS if outcome.success else ToolCallStatus.ERROR
        self.finished_at = utc_now()

    @property
    def is_terminal_state(self) -> bool:
        return self.status in (ToolCallStatus.SUCCESS, ToolCallStatus.ERROR)


# =========================
# RUN STATE
# =========================
class AgentState(CamelModel):
    goal: str
    status: Optional[RunStatus] = None
    current_step: int = 0
    max_steps: int
    has_completed_goal: bool = False
    current_sql: Optional[str] = None
    previous_sql: Optional[str] = None
    explanation: Optional[str] = None
    last_error: Optional[str] = None
    reached_step_limit: bool = False
    tool_calls: List[ToolCall] = []


# =========================
# TODOS
# =========================
class TodoItem(CamelModel):
    id: str
    text: str
    status: TodoStatus = TodoStatus.PENDING
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    added_during_execution: bool = False
