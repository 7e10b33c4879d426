"""Current date/time tool.

Language models have no sense of "now"; this tool gives them the current
date and time plus a few relative references for resolving phrases like
"yesterday" or "last week".
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel

from chat_agent.contracts import ToolContext, ToolResult
from chat_agent.tools.base import BaseTool, ToolConfig, ToolParameter


class CurrentTimeInput(BaseModel):
    format: Literal["iso", "locale", "detailed"] = "detailed"


def _format_date(dt: datetime) -> str:
    return dt.strftime("%A, %d %B %Y")


class CurrentTimeTool(BaseTool):
    config = ToolConfig(
        name="get_current_time",
        description="Get the current date and time, since AI agents do not have time perception",
        timeout=5.0,
    )
    parameters = (
        ToolParameter(
            name="format",
            type="string",
            description="Format for the time output: iso, locale, or detailed",
            default="detailed",
            examples=("iso", "locale", "detailed"),
        ),
    )
    input_model = CurrentTimeInput

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))

    async def execute_internal(self, params: CurrentTimeInput, context: ToolContext) -> ToolResult:
        now = self._clock()

        if params.format == "iso":
            formatted = now.isoformat()
        elif params.format == "locale":
            formatted = now.strftime("%c")
        else:
            formatted = f"{_format_date(now)} at {now.strftime('%H:%M:%S %Z').strip()}"

        return ToolResult(
            success=True,
            data={
                "current_datetime": now.isoformat(),
                "current_date": now.date().isoformat(),
                "formatted": formatted,
                "timezone": now.tzname() or "UTC",
                "day_of_week": now.strftime("%A"),
                "month": now.strftime("%B"),
                "year": now.year,
                "relative_references": {
                    "today": _format_date(now),
                    "yesterday": _format_date(now - timedelta(days=1)),
                    "last_week": _format_date(now - timedelta(days=7)),
                },
            },
            metadata={"format": params.format},
        )
