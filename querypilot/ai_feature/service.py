"""
AGENT LOOP - the bounded, cancellable tool-calling state machine

One run:
    step -> model turn -> tools (sequential) -> step -> ... -> complete

Events are yielded as they happen, so the HTTP layer can stream them
straight to the client. The run ends when:
    - update_query_ui is called                    -> completed (goal met only if it succeeded)
    - the model answers without asking for tools   -> completed (or halted at the budget)
    - the step budget is spent                     -> halted
    - the model request fails                      -> error + complete (errored)
    - the caller cancels                           -> nothing more is yielded
"""

import json
import logging
import uuid
from typing import AsyncIterator, List, Optional

from querypilot.ai_feature.cancellation import CancellationToken, RunCancelled
from querypilot.ai_feature.events import (
    AgentEvent,
    CompleteEvent,
    ErrorEvent,
    StepEvent,
    TextEvent,
    ToolCallResultEvent,
    ToolCallStartEvent,
)
from querypilot.ai_feature.executor import ToolExecutor
from querypilot.ai_feature.governor import StepGovernor
from querypilot.ai_feature.llm import ModelClient, ModelClientError, ModelToolRequest, TranscriptTurn
from querypilot.ai_feature.models import AgentGoal, AgentState, RunStatus, ToolCall
from querypilot.ai_feature.prompts import build_system_prompt, build_user_message
from querypilot.ai_feature.run_logger import AgentRunLogger
from querypilot.ai_feature.tools import EXECUTE_QUERY_TOOL
from querypilot.core.config import settings

logger = logging.getLogger(__name__)

SKIPPED_TERMINAL_MESSAGE = (
    "Not executed: only the first update_query_ui call of a turn is processed."
)


def build_transcript(goal: AgentGoal) -> List[TranscriptTurn]:
    """Fresh transcript for one run: earlier conversation, then the goal."""
    transcript = [
        TranscriptTurn(role=turn.role.value, content=turn.content)
        for turn in goal.conversation_history
        if turn.content
    ]
    transcript.append(TranscriptTurn(role="user", content=build_user_message(goal)))
    return transcript


class AgentLoop:
    def __init__(
        self,
        model: ModelClient,
        executor: ToolExecutor,
        max_steps: int = settings.MAX_AGENT_STEPS,
    ):
        self.model = model
        self.executor = executor
        self.max_steps = max_steps

    def _schedule(self, requests: List[ModelToolRequest]):
        """
        Execution order for one turn: non-terminal calls as listed, then the
        first terminal call. Returns (to_run, skipped).
        """
        registry = self.executor.registry
        regular = [r for r in requests if not registry.is_terminal(r.name)]
        terminal = [r for r in requests if registry.is_terminal(r.name)]
        return regular + terminal[:1], terminal[1:]

    async def run(
        self,
        goal: AgentGoal,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[AgentEvent]:
        token = cancel_token or CancellationToken()
        governor = StepGovernor(self.max_steps)
        run_log = AgentRunLogger()

        state = AgentState(
            goal=goal.prompt,
            max_steps=self.max_steps,
            current_sql=goal.previous_sql,
            previous_sql=goal.previous_sql,
        )
        transcript = build_transcript(goal)
        system = build_system_prompt(goal)
        tool_definitions = self.executor.registry.definitions()

        run_log.log(0, f"Starting run (budget {self.max_steps}, follow-up={goal.is_follow_up})")
        terminal_invoked = False

        try:
            while True:
                token.raise_if_cancelled()

                if not governor.should_continue():
                    governor.mark_limit_reached()
                    state.status = RunStatus.HALTED
                    run_log.log(state.current_step, "Step budget spent", "warning")
                    break

                state.current_step = governor.record_step()
                yield StepEvent(step=state.current_step, max_steps=self.max_steps)

                turn = await token.guard(
                    self.model.next_turn(system, transcript, tool_definitions)
                )
                for request in turn.tool_requests:
                    request.id = request.id or f"call_{uuid.uuid4().hex}"
                transcript.append(
                    TranscriptTurn(
                        role="assistant",
                        content=turn.text,
                        tool_requests=turn.tool_requests,
                    )
                )
                if turn.text:
                    yield TextEvent(text=turn.text)

                if not turn.tool_requests:
                    state.status = (
                        RunStatus.COMPLETED if governor.should_continue() else RunStatus.HALTED
                    )
                    run_log.log(state.current_step, "Model answered without tools")
                    break

                to_run, skipped = self._schedule(turn.tool_requests)
                for request in to_run:
                    tool_call = ToolCall(
                        id=request.id,
                        tool_name=request.name,
                        args=request.arguments,
                    )
                    tool_call.start()
                    yield ToolCallStartEvent(
                        tool_call_id=tool_call.id,
                        tool_name=tool_call.tool_name,
                        args=tool_call.args,
                    )

                    outcome = await token.guard(
                        self.executor.execute(request.name, request.arguments)
                    )
                    tool_call.finish(outcome)
                    state.tool_calls.append(tool_call)
                    transcript.append(
                        TranscriptTurn(
                            role="tool",
                            content=json.dumps(tool_call.result, default=str),
                            tool_call_id=request.id,
                            is_error=not outcome.success,
                        )
                    )

                    if request.name == EXECUTE_QUERY_TOOL:
                        state.last_error = None if outcome.success else outcome.error

                    if self.executor.registry.is_terminal(request.name):
                        terminal_invoked = True
                        if outcome.success:
                            state.current_sql = outcome.data["sql"]
                            state.explanation = outcome.data.get("explanation")
                            state.has_completed_goal = True

                    run_log.log(
                        state.current_step,
                        f"{tool_call.tool_name} -> {tool_call.status.value}",
                        "info" if outcome.success else "warning",
                    )
                    yield ToolCallResultEvent(tool_call=tool_call)

                for request in skipped:
                    transcript.append(
                        TranscriptTurn(
                            role="tool",
                            content=SKIPPED_TERMINAL_MESSAGE,
                            tool_call_id=request.id,
                            is_error=True,
                        )
                    )

                # A terminal call ends the run even when it failed
                if terminal_invoked:
                    state.status = RunStatus.COMPLETED
                    break

        except RunCancelled:
            state.status = RunStatus.CANCELLED
            run_log.log(state.current_step, "Run cancelled", "warning")
            return
        except ModelClientError as error:
            state.status = RunStatus.ERRORED
            state.last_error = error.message
            run_log.log(state.current_step, f"Model request failed: {error.message}", "error")
            yield ErrorEvent(error=error.message)
        except Exception as error:
            logger.exception("Agent run failed")
            message = str(error) or type(error).__name__
            state.status = RunStatus.ERRORED
            state.last_error = message
            run_log.log(state.current_step, f"Run failed: {message}", "error")
            yield ErrorEvent(error=message)

        if state.status is not RunStatus.ERRORED:
            state.reached_step_limit = (
                not terminal_invoked and state.current_step >= state.max_steps
            )

        summary = run_log.get_summary(state.status.value)
        logger.info(
            f"Run {summary['run_id']} finished: status={summary['status']}, "
            f"steps={state.current_step}/{state.max_steps}, "
            f"duration={summary['duration_seconds']:.2f}s"
        )
        yield CompleteEvent(state=state)

    async def run_to_completion(
        self,
        goal: AgentGoal,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[AgentState]:
        """Drain a run and return its final state (None when cancelled)."""
        final_state = None
        async for event in self.run(goal, cancel_token):
            if isinstance(event, CompleteEvent):
                final_state = event.state
        return final_state
