"""Tool registry — maps stable tool names to handlers for the calling layer."""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from taskclock.tools.base import BaseTool, ToolParams, ToolResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    Handler = Callable[..., Awaitable[ToolResult]]

logger = logging.getLogger(__name__)

_EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass
class ToolDef:
    """A registered tool: its public metadata plus the handler behind it."""

    name: str
    description: str
    category: str
    handler: Handler
    params_model: type[ToolParams] | None = None
    requires_confirmation: bool = False

    def schema(self) -> dict[str, Any]:
        """Name, description and JSON input schema, as sent to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": (
                self.params_model.model_json_schema()
                if self.params_model is not None
                else dict(_EMPTY_SCHEMA)
            ),
        }

    def bind_arguments(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Validate *arguments* and return the handler's keyword arguments.

        Raises:
            ValidationError: If the arguments do not fit ``params_model``.
        """
        if self.params_model is None:
            return dict(arguments)
        return self.params_model.model_validate(arguments).model_dump()


class ToolRegistry:
    """Maps stable tool names to handlers for the language-model layer.

    Stateless handlers register with the ``tool()`` decorator; tools bound
    to an engine register an instance with ``register()``.  The calling
    layer only sees names, schemas and ToolResults, so the engine never
    learns how it is being called.

    Built by the composition root; there is no module-level instance.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDef] = {}

    # -- Registration ----------------------------------------------------------

    def tool(
        self,
        *,
        name: str,
        description: str,
        category: str,
        params_model: type[ToolParams] | None = None,
        requires_confirmation: bool = False,
    ) -> Callable[[Handler], Handler]:
        """Register the decorated coroutine function as tool *name*."""

        def decorator(fn: Handler) -> Handler:
            if not inspect.iscoroutinefunction(fn):
                msg = f"Tool handler '{name}' must be an async function"
                raise TypeError(msg)
            self._add(
                ToolDef(name, description, category, fn, params_model, requires_confirmation)
            )
            return fn

        return decorator

    def register(self, tool_instance: BaseTool) -> None:
        """Register a class-based tool; its ``execute`` becomes the handler."""
        if not tool_instance.name:
            msg = f"{type(tool_instance).__name__} has no tool name"
            raise ValueError(msg)
        self._add(
            ToolDef(
                name=tool_instance.name,
                description=tool_instance.description,
                category=tool_instance.category,
                handler=tool_instance.execute,
                params_model=tool_instance.params_model,
                requires_confirmation=tool_instance.requires_confirmation,
            )
        )

    def _add(self, tool_def: ToolDef) -> None:
        if tool_def.name in self._tools:
            logger.warning("Tool '%s' registered twice, replacing the first", tool_def.name)
        self._tools[tool_def.name] = tool_def

    # -- Lookup ----------------------------------------------------------------

    def get(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def requires_confirmation(self, name: str) -> bool:
        """Whether the calling layer should ask the user before running *name*."""
        tool_def = self._tools.get(name)
        return tool_def is not None and tool_def.requires_confirmation

    def get_schemas(self) -> list[dict[str, Any]]:
        return [tool_def.schema() for tool_def in self._tools.values()]

    # -- Execution -------------------------------------------------------------

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run tool *name*. Never raises: every problem becomes an error result."""
        tool_def = self._tools.get(name)
        if tool_def is None:
            return ToolResult(error=f"Unknown tool: {name}")

        try:
            kwargs = tool_def.bind_arguments(arguments)
        except ValidationError as exc:
            logger.warning("Tool '%s' rejected arguments: %s", name, exc)
            return ToolResult(error=_format_validation_error(exc))

        logger.info("Running tool '%s' with %s", name, kwargs)
        started = time.monotonic()
        try:
            result = await tool_def.handler(**kwargs)
        except Exception:
            logger.exception("Tool '%s' crashed after %.2fs", name, time.monotonic() - started)
            return ToolResult(error=f"Tool '{name}' failed. Check logs for details.")

        elapsed = time.monotonic() - started
        if result.success:
            logger.info("Tool '%s' finished in %.2fs", name, elapsed)
        else:
            logger.warning("Tool '%s' returned an error in %.2fs: %s", name, elapsed, result.error)
        return result


def _format_validation_error(exc: ValidationError) -> str:
    """Flatten a pydantic error into one ``field: message`` entry per problem."""
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"]) or "arguments"
        problems.append(f"{field}: {err['msg']}")
    return "Invalid arguments: " + "; ".join(problems)
