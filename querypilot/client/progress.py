"""
AGENT PROGRESS - the client-side projection of one run

    frames -> reduce(progress, event) -> AgentProgress -> subscribers

reduce() is pure: same starting progress and same events, same result.
ProgressStore keeps the latest projection and tells listeners about it.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import TypeAdapter

from querypilot.ai_feature.events import (
    AgentEvent,
    CompleteEvent,
    ErrorEvent,
    StepEvent,
    TextEvent,
    ToolCallResultEvent,
    ToolCallStartEvent,
)
from querypilot.ai_feature.models import RunStatus, TodoItem, TodoStatus, ToolCall, ToolCallStatus
from querypilot.ai_feature.tools import TERMINAL_TOOL, TODO_TOOL
from querypilot.core.config import settings
from querypilot.core.schemas import CamelModel


class AgentProgress(CamelModel):
    goal: str = ""
    current_step: int = 0
    max_steps: int = settings.MAX_AGENT_STEPS
    is_running: bool = False
    status: Optional[RunStatus] = None
    reached_step_limit: bool = False
    can_continue: bool = False
    tool_calls: List[ToolCall] = []
    streaming_text: str = ""
    todos: List[TodoItem] = []
    finalized_sql: Optional[str] = None
    explanation: Optional[str] = None
    error: Optional[str] = None
    completed: bool = False


# Local actions, dispatched by the session rather than decoded from frames
class RunStarted(CamelModel):
    goal: str
    max_steps: int


class RunFailed(CamelModel):
    error: str


ProgressAction = Union[AgentEvent, RunStarted, RunFailed]

_timestamp = TypeAdapter(Optional[datetime])


# =========================
# Todo list
# =========================
def _todo_from(raw: Dict[str, Any], added: bool = False) -> TodoItem:
    return TodoItem(
        id=raw["id"],
        text=raw.get("text", ""),
        status=raw.get("status", TodoStatus.PENDING),
        created_at=raw.get("createdAt"),
        added_during_execution=raw.get("addedDuringExecution", added),
    )


def apply_todo_result(todos: List[TodoItem], result: Dict[str, Any]) -> List[TodoItem]:
    """Fold one successful manage_todo result into the todo list."""
    action = result.get("action")

    if action == "create":
        return [_todo_from(raw) for raw in result.get("items") or []]
    if action == "add" and result.get("item"):
        return todos + [_todo_from(result["item"], added=True)]

    item_id = result.get("itemId")
    if action not in ("set_current", "complete", "skip") or item_id is None:
        return todos

    updated = []
    for todo in todos:
        if todo.id == item_id:
            if action == "set_current":
                todo = todo.model_copy(update={"status": TodoStatus.IN_PROGRESS})
            elif action == "complete":
                todo = todo.model_copy(
                    update={
                        "status": TodoStatus.COMPLETED,
                        "completed_at": _timestamp.validate_python(result.get("timestamp")),
                    }
                )
            else:
                todo = todo.model_copy(update={"status": TodoStatus.SKIPPED})
        elif action == "set_current" and todo.status == TodoStatus.IN_PROGRESS:
            todo = todo.model_copy(update={"status": TodoStatus.PENDING})
        updated.append(todo)
    return updated


# =========================
# Reducer
# =========================
def _upsert(tool_calls: List[ToolCall], tool_call: ToolCall) -> List[ToolCall]:
    for index, existing in enumerate(tool_calls):
        if existing.id == tool_call.id:
            return tool_calls[:index] + [tool_call] + tool_calls[index + 1:]
    return tool_calls + [tool_call]


def reduce(
    progress: Optional[AgentProgress], action: ProgressAction
) -> Optional[AgentProgress]:
    if isinstance(action, RunStarted):
        return AgentProgress(goal=action.goal, max_steps=action.max_steps, is_running=True)

    # A discarded projection stays discarded until the next run starts
    if progress is None:
        return None

    if isinstance(action, RunFailed):
        return progress.model_copy(update={"error": action.error, "is_running": False})

    if isinstance(action, StepEvent):
        if action.step <= progress.current_step:
            return progress
        return progress.model_copy(
            update={
                "current_step": action.step,
                "max_steps": action.max_steps,
                "streaming_text": "",
            }
        )

    if isinstance(action, TextEvent):
        text = action.text
        if progress.streaming_text:
            text = f"{progress.streaming_text}\n{text}"
        return progress.model_copy(update={"streaming_text": text})

    if isinstance(action, ToolCallStartEvent):
        if any(call.id == action.tool_call_id for call in progress.tool_calls):
            return progress
        running = ToolCall(
            id=action.tool_call_id,
            tool_name=action.tool_name,
            args=action.args,
            status=ToolCallStatus.RUNNING,
        )
        return progress.model_copy(update={"tool_calls": progress.tool_calls + [running]})

    if isinstance(action, ToolCallResultEvent):
        tool_call = action.tool_call
        update: Dict[str, Any] = {"tool_calls": _upsert(progress.tool_calls, tool_call)}
        if tool_call.status == ToolCallStatus.SUCCESS and tool_call.result:
            if tool_call.tool_name == TERMINAL_TOOL:
                update["finalized_sql"] = tool_call.result.get("sql")
                update["explanation"] = tool_call.result.get("explanation")
            elif tool_call.tool_name == TODO_TOOL:
                update["todos"] = apply_todo_result(progress.todos, tool_call.result)
        return progress.model_copy(update=update)

    if isinstance(action, ErrorEvent):
        return progress.model_copy(update={"error": action.error})

    if isinstance(action, CompleteEvent):
        state = action.state
        update = {
            "is_running": False,
            "completed": True,
            "status": state.status,
            "current_step": max(progress.current_step, state.current_step),
            "max_steps": state.max_steps,
            "reached_step_limit": state.reached_step_limit,
            "can_continue": state.reached_step_limit,
        }
        if progress.finalized_sql is None and state.has_completed_goal:
            update["finalized_sql"] = state.current_sql
            update["explanation"] = state.explanation
        return progress.model_copy(update=update)

    return progress


# =========================
# Store
# =========================
Listener = Callable[[Optional[AgentProgress]], None]


class ProgressStore:
    """Holds the latest AgentProgress and notifies subscribers on change."""

    def __init__(self):
        self._state: Optional[AgentProgress] = None
        self._listeners: List[Listener] = []

    @property
    def state(self) -> Optional[AgentProgress]:
        return self._state

    def dispatch(self, action: ProgressAction) -> Optional[AgentProgress]:
        self._state = reduce(self._state, action)
        self._notify()
        return self._state

    def clear(self) -> None:
        self._state = None
        self._notify()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._state)
