import pytest

from querypilot.ai_feature.models import (
    AgentGoal,
    InvalidToolCallTransition,
    ToolCall,
    ToolCallStatus,
    ToolResult,
)


def test_tool_call_success_lifecycle():
    call = ToolCall(id="toolu_1", tool_name="execute_query", args={"sql": "SELECT 1"})
    assert call.status == ToolCallStatus.PENDING

    call.start()
    assert call.status == ToolCallStatus.RUNNING
    assert call.started_at is not None

    call.finish(ToolResult.ok({"rowCount": 1}))
    assert call.status == ToolCallStatus.SUCCESS
    assert call.result == {"success": True, "rowCount": 1}
    assert call.error is None
    assert call.finished_at >= call.started_at
    assert call.is_terminal_state


def test_tool_call_failure_keeps_error_and_hints():
    call = ToolCall(id="toolu_2", tool_name="execute_query")
    call.start()
    call.finish(ToolResult.fail("column \"nme\" does not exist", {"suggestion": "Check columns"}))

    assert call.status == ToolCallStatus.ERROR
    assert call.error == 'column "nme" does not exist'
    assert call.result["success"] is False
    assert call.result["suggestion"] == "Check columns"


def test_finish_before_start_is_rejected():
    call = ToolCall(id="toolu_3", tool_name="validate_query")

    with pytest.raises(InvalidToolCallTransition):
        call.finish(ToolResult.ok({}))


def test_tool_call_cannot_restart_or_finish_twice():
    call = ToolCall(id="toolu_4", tool_name="validate_query")
    call.start()

    with pytest.raises(InvalidToolCallTransition):
        call.start()

    call.finish(ToolResult.ok({"isValid": True}))
    with pytest.raises(InvalidToolCallTransition):
        call.finish(ToolResult.ok({"isValid": True}))


def test_tool_call_serializes_with_camel_case():
    call = ToolCall(id="toolu_5", tool_name="get_table_schema")
    dumped = call.model_dump(by_alias=True)

    assert dumped["toolName"] == "get_table_schema"
    assert "startedAt" in dumped


def test_goal_is_follow_up_only_with_previous_sql():
    assert AgentGoal(prompt="count users").is_follow_up is False
    assert AgentGoal(prompt="add email", previous_sql="SELECT 1").is_follow_up is True
