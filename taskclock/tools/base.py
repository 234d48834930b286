"""Shared types for tools: parameter models, results, and the class-based tool ABC."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel


@dataclass
class ToolResult:
    """Outcome of one tool call.

    ``data`` is the JSON-shaped response; ``error`` carries a message the
    model can show the user.  Exactly one of them is meaningful.
    """

    data: dict[str, Any] | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class ToolParams(BaseModel):
    """Pydantic model describing a tool's arguments.

    ``model_json_schema()`` doubles as the tool's input schema.
    """


class BaseTool(ABC):
    """A tool whose handler needs state, such as a SchedulerEngine.

    Subclasses set the class attributes and implement ``execute``, which
    receives the validated arguments as keyword arguments::

        class PauseScheduleTool(BaseTool):
            name = "pause_schedule"
            description = "Pause or resume a schedule"
            category = "scheduler"
            params_model = PauseScheduleParams

            async def execute(self, **kwargs) -> ToolResult:
                ...

    Tools marked ``requires_confirmation`` change or destroy data; the
    calling layer should ask the user before running them.
    """

    name: str = ""
    description: str = ""
    category: str = ""
    params_model: type[ToolParams] | None = None
    requires_confirmation: bool = False

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult: ...
