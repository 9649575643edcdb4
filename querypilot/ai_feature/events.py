"""
AGENT EVENT STREAM - event models and the `data: ` framing

Producer (the agent loop) and consumer (the session client) share these
models. One event per frame:

    data: {"type": "step", "step": 1, "maxSteps": 25}\n\n

and a final `data: [DONE]\n\n` once the `complete` event has been sent.
"""

from typing import Annotated, Any, AsyncIterator, Dict, Literal, Union

from pydantic import Field, TypeAdapter

from querypilot.ai_feature.models import AgentState, ToolCall
from querypilot.core.schemas import CamelModel

DONE_MARKER = "[DONE]"
DATA_PREFIX = "data: "
DONE_FRAME = f"{DATA_PREFIX}{DONE_MARKER}\n\n"


class StepEvent(CamelModel):
    type: Literal["step"] = "step"
    step: int
    max_steps: int


class TextEvent(CamelModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallStartEvent(CamelModel):
    type: Literal["tool_call_start"] = "tool_call_start"
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = {}


class ToolCallResultEvent(CamelModel):
    type: Literal["tool_call_result"] = "tool_call_result"
    tool_call: ToolCall


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    error: str


class CompleteEvent(CamelModel):
    type: Literal["complete"] = "complete"
    state: AgentState


AgentEvent = Annotated[
    Union[
        StepEvent,
        TextEvent,
        ToolCallStartEvent,
        ToolCallResultEvent,
        ErrorEvent,
        CompleteEvent,
    ],
    Field(discriminator="type"),
]

event_adapter = TypeAdapter(AgentEvent)

EVENT_TYPES = frozenset(
    ["step", "text", "tool_call_start", "tool_call_result", "error", "complete"]
)


def encode_frame(event: AgentEvent) -> str:
    return f"{DATA_PREFIX}{event.model_dump_json(by_alias=True)}\n\n"


async def encode_stream(events: AsyncIterator[AgentEvent]) -> AsyncIterator[str]:
    """Frame an event stream; the done marker follows a `complete` event only."""
    completed = False
    async for event in events:
        yield encode_frame(event)
        if isinstance(event, CompleteEvent):
            completed = True
    if completed:
        yield DONE_FRAME
