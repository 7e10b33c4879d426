"""Base tool interface.

Every tool declares its configuration and parameter list once.  The
callable schema shown to the model and the input validation performed by
the executor are both derived from that declaration, so they cannot drift
apart.  Validated input is parsed into the tool's pydantic ``input_model``
before the domain logic sees it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import pydantic
from pydantic import BaseModel

from chat_agent.contracts import ToolContext, ToolResult
from chat_agent.errors import ValidationError

logger = logging.getLogger(__name__)

# JSON-schema type → accepted Python types
_PY_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
}


def _matches(value: Any, json_type: str) -> bool:
    # bool is an int subclass; never accept it for numeric parameters
    if json_type in ("number", "integer") and isinstance(value, bool):
        return False
    return isinstance(value, _PY_TYPES[json_type])


@dataclass(frozen=True)
class ToolParameter:
    name: str
    type: str
    description: str
    required: bool = False
    default: Any = None
    examples: tuple[Any, ...] = ()
    items: dict[str, str] | None = None

    def __post_init__(self) -> None:
        if self.type not in _PY_TYPES:
            raise ValueError(f"Unsupported parameter type {self.type!r} for {self.name!r}")

    def to_property(self) -> dict[str, Any]:
        prop: dict[str, Any] = {"type": self.type, "description": self.description}
        if self.type == "array" and self.items:
            prop["items"] = dict(self.items)
        if self.examples:
            prop["examples"] = list(self.examples)
        if self.default is not None:
            prop["default"] = self.default
        return prop


@dataclass(frozen=True)
class ToolConfig:
    name: str
    description: str
    version: str = "1.0.0"
    enabled: bool = True
    timeout: float | None = None
    retries: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class BaseTool(ABC):
    """Abstract base for all agent tools.

    Subclasses set ``config``, ``parameters`` and optionally
    ``input_model``, and implement ``execute_internal``.  A tool that can
    serve a reduced answer when its primary path is unavailable sets
    ``has_fallback = True`` and overrides ``fallback``.
    """

    config: ToolConfig
    parameters: tuple[ToolParameter, ...] = ()
    input_model: type[BaseModel] | None = None
    has_fallback: bool = False

    @property
    def name(self) -> str:
        return self.config.name

    @abstractmethod
    async def execute_internal(self, params: Any, context: ToolContext) -> ToolResult:
        """Run the tool's domain logic on validated input."""
        ...

    async def fallback(self, params: Any, context: ToolContext) -> ToolResult:
        """Degraded answer used when retries are exhausted or the circuit is open."""
        raise NotImplementedError(f"Tool '{self.name}' declares no fallback")

    async def cleanup(self) -> None:
        """Release resources held by the tool.  Override if needed."""

    # ── Schema ───────────────────────────────────────────────────────

    def schema(self) -> dict[str, Any]:
        """Return ``{name, description, parameters}`` for the model."""
        return {
            "name": self.config.name,
            "description": self.config.description,
            "parameters": {
                "type": "object",
                "properties": {p.name: p.to_property() for p in self.parameters},
                "required": [p.name for p in self.parameters if p.required],
            },
        }

    # ── Validation ───────────────────────────────────────────────────

    def validate(self, payload: Any) -> Any:
        """Check ``payload`` against the declared parameters.

        Returns the parsed ``input_model`` instance (or the payload itself
        when the tool has no model).  Raises ``ValidationError``.
        """
        if not isinstance(payload, dict):
            raise ValidationError(f"Expected an object, got {type(payload).__name__}")

        for param in self.parameters:
            value = payload.get(param.name)
            if value is None:
                if param.required:
                    raise ValidationError(f"Missing required parameter '{param.name}'")
                continue
            if not _matches(value, param.type):
                raise ValidationError(
                    f"Parameter '{param.name}' must be of type {param.type}, "
                    f"got {type(value).__name__}"
                )
            if param.type == "array" and param.items and "type" in param.items:
                item_type = param.items["type"]
                if any(not _matches(item, item_type) for item in value):
                    raise ValidationError(
                        f"Items of '{param.name}' must be of type {item_type}"
                    )

        if self.input_model is None:
            return payload
        try:
            return self.input_model.model_validate(payload)
        except pydantic.ValidationError as exc:
            raise ValidationError(str(exc)) from exc
