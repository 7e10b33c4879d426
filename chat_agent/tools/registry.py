"""Tool registration, schema discovery and dispatch by name.

The registry owns one ``ResilientToolExecutor`` per tool, and with it that
tool's circuit breaker and usage metrics.  Those objects are shared by
every turn that calls the tool.
"""

from __future__ import annotations

import logging
from typing import Any

from chat_agent.contracts import ToolContext, ToolResult
from chat_agent.errors import ToolRegistrationError, ValidationError
from chat_agent.tools.base import BaseTool
from chat_agent.tools.circuit_breaker import CircuitBreaker
from chat_agent.tools.current_time import CurrentTimeTool
from chat_agent.tools.executor import ResilientToolExecutor, ToolUsageMetrics, UsageSink
from chat_agent.tools.web_search import WebSearchTool

logger = logging.getLogger(__name__)

TOOL_NOT_FOUND = "ToolNotFound"


class ToolRegistry:
    """Manages tool registration and invocation."""

    def __init__(
        self,
        *,
        usage_sink: UsageSink | None = None,
        **executor_options: Any,
    ) -> None:
        self._executors: dict[str, ResilientToolExecutor] = {}
        self._usage_sink = usage_sink
        self._executor_options = executor_options

    # ── Registration ─────────────────────────────────────────────────

    def register(self, tool: BaseTool) -> None:
        """Register ``tool`` under its unique name.

        Raises ``ToolRegistrationError`` on a duplicate name.  Disabled
        tools are skipped with a warning.
        """
        if tool.name in self._executors:
            raise ToolRegistrationError(f"Tool with name '{tool.name}' is already registered")
        if not tool.config.enabled:
            logger.warning("Tool '%s' is disabled and will not be registered", tool.name)
            return

        self._executors[tool.name] = ResilientToolExecutor(
            tool,
            breaker=CircuitBreaker(tool.name, ignore=(ValidationError,)),
            usage_sink=self._usage_sink,
            **self._executor_options,
        )
        logger.debug("Registered tool: %s", tool.name)

    def unregister(self, name: str) -> bool:
        removed = self._executors.pop(name, None) is not None
        if removed:
            logger.info("Tool '%s' unregistered", name)
        return removed

    # ── Lookup ───────────────────────────────────────────────────────

    def get(self, name: str) -> BaseTool | None:
        executor = self._executors.get(name)
        return executor.tool if executor else None

    def executor(self, name: str) -> ResilientToolExecutor | None:
        return self._executors.get(name)

    def names(self) -> list[str]:
        return list(self._executors)

    def is_available(self, name: str) -> bool:
        return name in self._executors

    def get_callable_schemas(self) -> list[dict[str, Any]]:
        """Schemas for every registered tool, in registration order."""
        return [executor.tool.schema() for executor in self._executors.values()]

    # ── Dispatch ─────────────────────────────────────────────────────

    async def execute_tool(
        self,
        name: str,
        payload: Any,
        context: ToolContext | None = None,
    ) -> ToolResult:
        """Run the named tool.  Never raises for tool-level failures."""
        executor = self._executors.get(name)
        if executor is None:
            logger.warning("Model requested unknown tool '%s'", name)
            return ToolResult(
                success=False,
                error=f"{TOOL_NOT_FOUND}: tool '{name}' is not registered",
                metadata={"error_type": TOOL_NOT_FOUND},
            )

        try:
            return await executor.execute(payload, context)
        except Exception as exc:
            logger.exception("Unexpected error executing tool '%s'", name)
            return ToolResult(success=False, error=f"Tool execution failed: {exc}")

    # ── Status ───────────────────────────────────────────────────────

    def get_all_metrics(self) -> dict[str, ToolUsageMetrics]:
        return {name: ex.metrics.snapshot() for name, ex in self._executors.items()}

    def get_tool_metrics(self, name: str) -> ToolUsageMetrics | None:
        executor = self._executors.get(name)
        return executor.metrics.snapshot() if executor else None

    def get_status(self) -> dict[str, Any]:
        return {
            "total_tools": len(self._executors),
            "tool_names": self.names(),
            "circuits": {
                name: ex.breaker.state.value for name, ex in self._executors.items()
            },
        }

    async def cleanup(self) -> None:
        for name, executor in self._executors.items():
            try:
                await executor.tool.cleanup()
            except Exception:
                logger.exception("Failed to clean up tool '%s'", name)


def create_tool_registry(usage_sink: UsageSink | None = None) -> ToolRegistry:
    """Build the registry with the default tool set."""
    registry = ToolRegistry(usage_sink=usage_sink)
    registry.register(WebSearchTool())
    registry.register(CurrentTimeTool())
    return registry
