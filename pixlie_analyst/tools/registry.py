"""
Tool registry and execution sandbox.

Tools are registered once at startup and the registry is then frozen.
Execution never raises: every outcome, including unknown tools, invalid
parameters, handler errors and timeouts, is returned as a ToolExecution.
"""

import asyncio
import inspect
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ValidationError
import structlog

from ..errors import AnalystError, InvalidState, ToolNotFound
from ..models.contracts import ToolDescriptor, ToolExecution

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[BaseModel], Union[Any, Awaitable[Any]]]


class RegisteredTool:
    __slots__ = ("descriptor", "handler", "input_model")

    def __init__(self, descriptor: ToolDescriptor, handler: ToolHandler, input_model: Type[BaseModel]):
        self.descriptor = descriptor
        self.handler = handler
        self.input_model = input_model


def function_payload(descriptor: ToolDescriptor) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": descriptor.name,
            "description": descriptor.description,
            "parameters": descriptor.input_schema,
        },
    }


def _format_validation_error(err: ValidationError) -> str:
    parts = []
    for item in err.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "params"
        parts.append(f"{loc}: {item.get('msg')}")
    return "; ".join(parts)


class ToolRegistry:
    """Name-keyed set of tools with a sandboxed execute()."""

    def __init__(
        self,
        default_timeout_seconds: float = 30.0,
        max_result_bytes: int = 256 * 1024,
    ):
        self.default_timeout_seconds = default_timeout_seconds
        self.max_result_bytes = max_result_bytes
        self._tools: Dict[str, RegisteredTool] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(
        self,
        descriptor: ToolDescriptor,
        handler: ToolHandler,
        input_model: Type[BaseModel],
    ) -> ToolDescriptor:
        """
        Register a tool.

        Args:
            descriptor: Static tool metadata; its input schema is derived from
                ``input_model`` when left empty
            handler: Sync or async callable receiving the validated model
            input_model: Pydantic model validating the raw parameters

        Returns:
            The stored descriptor

        Raises:
            InvalidState: If the registry is frozen
            ValueError: If the name is already taken
        """
        if self._frozen:
            raise InvalidState(f"Tool registry is frozen; cannot register {descriptor.name}")
        if descriptor.name in self._tools:
            raise ValueError(f"Tool already registered: {descriptor.name}")

        if not descriptor.input_schema:
            descriptor = descriptor.model_copy(update={"input_schema": input_model.model_json_schema()})

        self._tools[descriptor.name] = RegisteredTool(descriptor, handler, input_model)
        logger.debug("Registered tool", tool=descriptor.name, category=descriptor.category.value)
        return descriptor

    def freeze(self) -> None:
        self._frozen = True
        logger.info("Tool registry frozen", tools=sorted(self._tools))

    def lookup(self, name: str) -> ToolDescriptor:
        entry = self._tools.get(name)
        if entry is None:
            raise ToolNotFound(f"Unknown tool: {name}", tool=name)
        return entry.descriptor

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def descriptors(self) -> List[ToolDescriptor]:
        return [entry.descriptor for entry in self._tools.values()]

    def export_schemas(self) -> List[Dict[str, Any]]:
        """JSON-ready description of every tool, for the HTTP surface."""
        return [d.model_dump(mode="json") for d in self.descriptors()]

    def function_payloads(self) -> List[Dict[str, Any]]:
        """OpenAI style function definitions, accepted by ``bind_tools``."""
        return [function_payload(d) for d in self.descriptors()]

    async def execute(self, name: str, params: Optional[Dict[str, Any]]) -> ToolExecution:
        """
        Validate parameters and run a tool under its timeout.

        Cancellation of the calling task propagates; everything else is
        captured on the returned record.
        """
        started = time.perf_counter()
        raw_params = params if isinstance(params, dict) else {}

        def _record(result: Any = None, error: Optional[str] = None) -> ToolExecution:
            elapsed = round((time.perf_counter() - started) * 1000, 3)
            return ToolExecution(
                tool_name=name,
                parameters=_jsonable(raw_params),
                result=result,
                error=error,
                execution_time_ms=elapsed,
            )

        entry = self._tools.get(name)
        if entry is None:
            logger.warning("Unknown tool requested", tool=name)
            return _record(error=f"Unknown tool: {name}. Available tools: {sorted(self._tools)}")

        if not isinstance(params, dict) and params is not None:
            return _record(error=f"Invalid parameters for {name}: expected an object")

        try:
            parsed = entry.input_model.model_validate(raw_params)
        except ValidationError as e:
            logger.info("Tool parameter validation failed", tool=name, error=str(e))
            return _record(error=f"Invalid parameters for {name}: {_format_validation_error(e)}")

        timeout = entry.descriptor.constraints.timeout_seconds or self.default_timeout_seconds
        if inspect.iscoroutinefunction(entry.handler):
            call = entry.handler(parsed)
        else:
            call = asyncio.to_thread(entry.handler, parsed)

        try:
            result = await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool execution timed out", tool=name, timeout_seconds=timeout)
            return _record(error=f"Tool execution timeout after {timeout}s")
        except AnalystError as e:
            logger.info("Tool reported error", tool=name, reason=e.reason, error=e.message)
            return _record(error=e.message)
        except Exception as e:
            logger.warning("Tool handler raised", tool=name, error=str(e), error_type=type(e).__name__)
            return _record(error=f"{type(e).__name__}: {e}")

        max_bytes = entry.descriptor.constraints.max_result_bytes or self.max_result_bytes
        capped = cap_result({} if result is None else _jsonable(result), max_bytes)
        execution = _record(result=capped)
        logger.info(
            "Tool executed",
            tool=name,
            duration_ms=execution.execution_time_ms,
            truncated=isinstance(capped, dict) and bool(capped.get("truncated")),
        )
        return execution


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def _encoded_size(value: Any) -> int:
    return len(json.dumps(value).encode("utf-8"))


def cap_result(result: Any, max_bytes: int) -> Any:
    """
    Bound the serialized size of a tool result.

    Row-shaped results keep a prefix of their rows and are flagged
    ``truncated``; anything else is replaced by a text preview.
    """
    size = _encoded_size(result)
    if size <= max_bytes:
        return result

    if isinstance(result, dict) and isinstance(result.get("rows"), list):
        capped = dict(result)
        rows = list(result["rows"])
        capped["truncated"] = True
        capped["has_more"] = True
        while rows:
            keep = max(0, min(len(rows) - 1, int(len(rows) * max_bytes / size * 0.9)))
            rows = rows[:keep]
            capped["rows"] = rows
            capped["row_count"] = len(rows)
            size = _encoded_size(capped)
            if size <= max_bytes:
                return capped
        if _encoded_size(capped) <= max_bytes:
            return capped

    text = json.dumps(result)
    return {
        "truncated": True,
        "original_bytes": len(text.encode("utf-8")),
        "preview": text[: max(0, max_bytes // 2 - 64)],
    }
