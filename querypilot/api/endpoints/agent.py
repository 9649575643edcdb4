import logging
from typing import Annotated, Callable

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from querypilot.ai_feature.cancellation import CancellationToken
from querypilot.ai_feature.events import encode_stream
from querypilot.ai_feature.executor import ToolExecutor
from querypilot.ai_feature.llm import ModelClientFactory, get_model_client_factory
from querypilot.ai_feature.models import AgentGoal
from querypilot.ai_feature.service import AgentLoop
from querypilot.ai_feature.tools import create_query_agent_tools
from querypilot.core.config import settings
from querypilot.core.database import DatabaseGateway, get_gateway_factory, resolve_database_url
from querypilot.core.schemas import AgentRunRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai-agent", tags=["Agent"])

model_factory_dep = Annotated[ModelClientFactory, Depends(get_model_client_factory)]
gateway_factory_dep = Annotated[Callable[[str], DatabaseGateway], Depends(get_gateway_factory)]

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("")
async def run_agent(
    payload: AgentRunRequest,
    model_factory: model_factory_dep,
    gateway_factory: gateway_factory_dep,
):
    """
    Run the query agent for one goal and stream its events.

    Each event is one `data: <json>` frame; `data: [DONE]` follows the
    final `complete` frame. Closing the connection cancels the run.
    """
    prompt = payload.prompt.strip()
    if not prompt:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required field: prompt",
        )

    api_key = payload.api_key or settings.ANTHROPIC_API_KEY
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="API key is required"
        )

    database_url = resolve_database_url(payload.connection_string)

    goal = AgentGoal(
        prompt=prompt,
        previous_sql=payload.previous_sql or None,
        previous_context=payload.previous_context or None,
        conversation_history=payload.conversation_history,
    )
    registry = create_query_agent_tools(gateway_factory(database_url), payload.tables)
    model = model_factory(api_key)
    loop = AgentLoop(
        model,
        ToolExecutor(registry),
        max_steps=payload.max_steps or settings.MAX_AGENT_STEPS,
    )
    token = CancellationToken()

    async def event_stream():
        try:
            async for frame in encode_stream(loop.run(goal, token)):
                yield frame
        finally:
            # Reached on normal end and on client disconnect alike
            token.cancel()
            await model.aclose()

    return StreamingResponse(
        event_stream(), media_type="text/event-stream", headers=SSE_HEADERS
    )


@router.get("")
async def agent_limits():
    """Default step budget, so clients can show progress against it."""
    return {"maxSteps": settings.MAX_AGENT_STEPS}
