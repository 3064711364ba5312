"""Tests for the tool registry and its execution sandbox."""

import asyncio
import json

import pytest
from pydantic import BaseModel

from pixlie_analyst.errors import InvalidState, ToolExecutionError, ToolNotFound
from pixlie_analyst.models.contracts import ToolConstraints, ToolDescriptor, ToolExecution
from pixlie_analyst.tools.registry import ToolRegistry, cap_result


class CountParams(BaseModel):
    n: int


def _descriptor(name: str, **constraints) -> ToolDescriptor:
    return ToolDescriptor(name=name, description=f"{name} tool", constraints=ToolConstraints(**constraints))


@pytest.fixture
def registry():
    return ToolRegistry(default_timeout_seconds=2, max_result_bytes=4096)


def test_register_derives_input_schema(registry):
    stored = registry.register(_descriptor("count"), lambda p: {"n": p.n}, CountParams)
    assert stored.input_schema["properties"]["n"]["type"] == "integer"
    assert registry.lookup("count").input_schema == stored.input_schema
    assert "count" in registry
    assert registry.export_schemas()[0]["name"] == "count"
    assert registry.function_payloads()[0]["function"]["parameters"] == stored.input_schema


def test_register_rejects_duplicates_and_frozen(registry):
    registry.register(_descriptor("count"), lambda p: None, CountParams)
    with pytest.raises(ValueError):
        registry.register(_descriptor("count"), lambda p: None, CountParams)

    registry.freeze()
    with pytest.raises(InvalidState):
        registry.register(_descriptor("other"), lambda p: None, CountParams)


def test_lookup_unknown_tool(registry):
    with pytest.raises(ToolNotFound):
        registry.lookup("missing")


@pytest.mark.asyncio
async def test_execute_success_sync_handler(registry):
    registry.register(_descriptor("count"), lambda p: {"doubled": p.n * 2}, CountParams)

    execution = await registry.execute("count", {"n": 21})

    assert execution.ok
    assert execution.result == {"doubled": 42}
    assert execution.error is None
    assert execution.parameters == {"n": 21}
    assert execution.execution_time_ms >= 0


@pytest.mark.asyncio
async def test_execute_async_handler_and_none_result(registry):
    async def handler(params):
        return None

    registry.register(_descriptor("noop"), handler, CountParams)
    execution = await registry.execute("noop", {"n": 1})
    assert execution.result == {}


@pytest.mark.asyncio
async def test_execute_unknown_tool_is_recorded(registry):
    execution = await registry.execute("missing", {})
    assert not execution.ok
    assert "Unknown tool: missing" in execution.error


@pytest.mark.asyncio
async def test_execute_invalid_parameters_never_call_handler(registry):
    called = []
    registry.register(_descriptor("count"), lambda p: called.append(p), CountParams)

    execution = await registry.execute("count", {"n": "not a number"})

    assert called == []
    assert execution.result is None
    assert execution.error.startswith("Invalid parameters for count: n:")


@pytest.mark.asyncio
async def test_execute_non_object_parameters(registry):
    registry.register(_descriptor("count"), lambda p: None, CountParams)
    execution = await registry.execute("count", ["n", 1])
    assert "expected an object" in execution.error


@pytest.mark.asyncio
async def test_execute_captures_handler_errors(registry):
    def boom(params):
        raise ValueError("boom")

    def domain_error(params):
        raise ToolExecutionError("table is missing")

    registry.register(_descriptor("boom"), boom, CountParams)
    registry.register(_descriptor("domain"), domain_error, CountParams)

    assert (await registry.execute("boom", {"n": 1})).error == "ValueError: boom"
    assert (await registry.execute("domain", {"n": 1})).error == "table is missing"


@pytest.mark.asyncio
async def test_execute_enforces_timeout(registry):
    async def slow(params):
        await asyncio.sleep(1)
        return {"late": True}

    registry.register(_descriptor("slow", timeout_seconds=0.05), slow, CountParams)

    execution = await registry.execute("slow", {"n": 1})

    assert execution.result is None
    assert "timeout" in execution.error


@pytest.mark.asyncio
async def test_execute_truncates_large_row_results(registry):
    def many_rows(params):
        return {"columns": ["id", "text"], "rows": [[i, "x" * 50] for i in range(params.n)], "row_count": params.n}

    registry.register(_descriptor("rows", max_result_bytes=2000), many_rows, CountParams)

    execution = await registry.execute("rows", {"n": 1000})

    assert execution.ok
    result = execution.result
    assert result["truncated"] is True
    assert result["has_more"] is True
    assert 0 < result["row_count"] < 1000
    assert len(result["rows"]) == result["row_count"]
    assert len(json.dumps(result).encode("utf-8")) <= 2000


def test_cap_result_previews_non_row_payloads():
    capped = cap_result({"blob": "y" * 5000}, 1000)
    assert capped["truncated"] is True
    assert capped["original_bytes"] > 1000
    assert len(json.dumps(capped)) <= 1000


def test_cap_result_keeps_small_payloads():
    payload = {"rows": [[1]], "row_count": 1}
    assert cap_result(payload, 1000) is payload


def test_tool_execution_requires_exactly_one_outcome():
    with pytest.raises(ValueError):
        ToolExecution(tool_name="x", result={"a": 1}, error="also failed")
    with pytest.raises(ValueError):
        ToolExecution(tool_name="x")
