import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from querypilot.ai_feature.models import ToolResult
from querypilot.ai_feature.registry import ToolFailure, ToolRegistry

logger = logging.getLogger(__name__)


def _describe_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "arguments"
        problems.append(f"{location}: {item['msg']}")
    return "; ".join(problems)


class ToolExecutor:
    """
    Runs one tool by name and always answers with a ToolResult.

    Unknown tools, bad arguments, handler failures and unexpected handler
    exceptions all come back as `success=False`, so the loop can feed them
    to the model. Only task cancellation crosses this boundary.
    """

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def execute(
        self, tool_name: str, args: Optional[Dict[str, Any]] = None
    ) -> ToolResult:
        spec = self.registry.get(tool_name)
        if spec is None:
            available = ", ".join(self.registry.names())
            return ToolResult.fail(
                f"Unknown tool: {tool_name}",
                {"suggestion": f"Use one of the available tools: {available}"},
            )

        try:
            parsed = spec.args_model.model_validate(args or {})
        except ValidationError as error:
            return ToolResult.fail(
                f"Invalid arguments for {tool_name}: {_describe_validation_error(error)}"
            )

        try:
            data = await spec.handler(parsed)
        except ToolFailure as failure:
            logger.info(f"Tool {tool_name} failed: {failure.message}")
            return ToolResult.fail(failure.message, failure.data)
        except Exception as error:
            logger.exception(f"Tool {tool_name} raised unexpectedly")
            return ToolResult.fail(str(error) or type(error).__name__)

        return ToolResult.ok(data)
