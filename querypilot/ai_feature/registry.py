from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel

ToolHandler = Callable[[Any], Awaitable[Dict[str, Any]]]


class ToolFailure(Exception):
    """
    Raised by a tool handler for an expected, model-visible failure
    (bad SQL, missing table...). `data` carries hints such as a suggestion.
    """

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.data = data or {}


@dataclass
class ToolSpec:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: ToolHandler
    terminal: bool = False

    def definition(self) -> Dict[str, Any]:
        """Model-facing declaration: name, description and JSON schema."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.args_model.model_json_schema(),
        }


class ToolRegistry:
    """Maps tool names to their handlers and argument schemas."""

    def __init__(self, specs: Optional[List[ToolSpec]] = None):
        self._specs: Dict[str, ToolSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._specs[spec.name] = spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._specs.get(name)

    def names(self) -> List[str]:
        return list(self._specs)

    def definitions(self) -> List[Dict[str, Any]]:
        return [spec.definition() for spec in self._specs.values()]

    def is_terminal(self, name: str) -> bool:
        spec = self._specs.get(name)
        return spec is not None and spec.terminal

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)
