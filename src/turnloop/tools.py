"""
Tool registry for LLM function calling.

The registry is created once by the server lifespan and passed into every
session. Each tool has a name, a description, a JSON schema for its arguments
and an async (or plain) handler. An optional pydantic model validates the
arguments before the handler runs.

Any failure (unknown tool, bad arguments, handler exception, timeout) is raised
as ToolExecutionError; the turn controller turns it into an error result for
the LLM instead of failing the turn.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from pydantic import BaseModel, Field, ValidationError

from src.turnloop.errors import ToolExecutionError

logger = structlog.get_logger(__name__)

ToolHandler = Callable[..., Union[Any, Awaitable[Any]]]


@dataclass
class ToolContext:
    """Who is calling the tool."""
    session_id: str = ""
    turn_id: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Tool:
    """A callable tool offered to the LLM."""
    name: str
    description: str
    handler: ToolHandler
    parameters: Optional[Dict[str, Any]] = None
    args_model: Optional[Type[BaseModel]] = None

    def __post_init__(self) -> None:
        if self.parameters is None:
            if self.args_model is not None:
                self.parameters = self.args_model.model_json_schema()
            else:
                self.parameters = {"type": "object", "properties": {}}

    def definition(self) -> Dict[str, Any]:
        """Tool definition in OpenAI chat-completions format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Catalog of tools available to sessions."""

    def __init__(self, timeout_s: float = 10.0):
        self.timeout_s = timeout_s
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.info("Tool registered", name=tool.name)

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def definitions(self) -> List[Dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def execute(
        self,
        name: str,
        arguments: Union[str, Dict[str, Any], None],
        context: Optional[ToolContext] = None,
    ) -> Any:
        """
        Run a tool and return its result.

        Args:
            name: Tool name requested by the LLM
            arguments: Parsed arguments, or the raw JSON string from the LLM
            context: Calling session/turn

        Returns:
            Whatever the handler returned (must be JSON-serializable)

        Raises:
            ToolExecutionError: Unknown tool, invalid arguments, handler failure or timeout
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolExecutionError(f"Unknown tool '{name}'", tool=name)

        args = self._parse_arguments(name, arguments)
        call_args: Any = args
        if tool.args_model is not None:
            try:
                call_args = tool.args_model.model_validate(args)
            except ValidationError as e:
                raise ToolExecutionError(f"Invalid arguments: {e.errors()}", tool=name) from e

        context = context or ToolContext()
        started = time.time()
        try:
            result = await asyncio.wait_for(self._invoke(tool, call_args, context), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise ToolExecutionError(f"Tool timed out after {self.timeout_s}s", tool=name) from e
        except ToolExecutionError:
            raise
        except Exception as e:
            logger.warning("Tool handler failed", tool=name, error=str(e))
            raise ToolExecutionError(str(e) or type(e).__name__, tool=name) from e

        logger.info(
            "Tool executed",
            tool=name,
            session_id=context.session_id,
            turn_id=context.turn_id,
            ms=int((time.time() - started) * 1000),
        )
        return result

    @staticmethod
    def _parse_arguments(name: str, arguments: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
        if arguments is None or arguments == "":
            return {}
        if isinstance(arguments, dict):
            return arguments
        try:
            parsed = json.loads(arguments)
        except (TypeError, json.JSONDecodeError) as e:
            raise ToolExecutionError(f"Arguments are not valid JSON: {e}", tool=name) from e
        if not isinstance(parsed, dict):
            raise ToolExecutionError("Arguments must be a JSON object", tool=name)
        return parsed

    @staticmethod
    async def _invoke(tool: Tool, args: Any, context: ToolContext) -> Any:
        result = tool.handler(args, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def close(self) -> None:
        logger.info("Tool registry closed", tools=len(self._tools))
        self._tools.clear()


class CurrentTimeArgs(BaseModel):
    timezone: str = Field(default="UTC", description="IANA timezone name, e.g. 'Europe/Paris'.")


def get_current_time(args: CurrentTimeArgs, context: ToolContext) -> Dict[str, Any]:
    try:
        tz = ZoneInfo(args.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ToolExecutionError(f"Unknown timezone '{args.timezone}'", tool="get_current_time") from e

    now = datetime.now(tz)
    return {
        "timezone": args.timezone,
        "iso": now.isoformat(timespec="seconds"),
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M"),
        "weekday": now.strftime("%A"),
    }


def create_default_registry(timeout_s: float = 10.0) -> ToolRegistry:
    """Registry with the built-in tools."""
    registry = ToolRegistry(timeout_s=timeout_s)
    registry.register(
        Tool(
            name="get_current_time",
            description="Get the current date and time, optionally in a given timezone.",
            handler=get_current_time,
            args_model=CurrentTimeArgs,
        )
    )
    return registry
