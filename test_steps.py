"""
StepDriver tests: the generate / dispatch / feed-back loop.
"""

import asyncio

import pytest

from agent.events import AgentCancelled
from agent.steps import StepDriver
from conftest import ScriptedModel, text_reply, tool_reply
from llm.base import ModelError
from tools.registry import ToolDescriptor, ToolRegistry
from tools.review_ops import SUBMIT_REPORT

ECHO = ToolDescriptor(
    name="echo",
    description="Echo the text back",
    input_schema={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
    execute=lambda args, context: f"echo: {args['text']}",
)


def _driver(model, tool_context, *tools, **kw):
    kw.setdefault("max_steps", 5)
    return StepDriver(model, ToolRegistry(tools or (ECHO,)), tool_context, **kw)


def test_runs_until_model_stops_calling_tools(tool_context):
    model = ScriptedModel([tool_reply("echo", {"text": "hi"}), text_reply("all done")])
    result = asyncio.run(_driver(model, tool_context).run("go"))

    assert result.text == "all done"
    assert result.finish_reason == "stop"
    assert len(result.steps) == 2
    assert result.tool_results[0].result == "echo: hi"
    assert result.usage.input_tokens == 20
    # The second call sees the tool result fed back
    last = model.calls[1]["messages"][-1]
    assert last["role"] == "user"
    assert last["content"][0]["type"] == "tool_result"
    assert last["content"][0]["content"] == "echo: hi"


def test_step_budget_is_a_hard_cap(tool_context):
    model = ScriptedModel([tool_reply("echo", {"text": str(i)}) for i in range(10)])
    result = asyncio.run(_driver(model, tool_context, max_steps=3).run("go"))

    assert len(result.steps) == 3
    assert len(model.calls) == 3
    assert result.finish_reason == "tool_calls"


def test_tool_failures_become_error_results(tool_context):
    model = ScriptedModel([
        tool_reply("nope", {}),
        tool_reply("echo", {}),
        text_reply("ok"),
    ])
    result = asyncio.run(_driver(model, tool_context).run("go"))

    unknown, invalid = result.tool_results
    assert unknown.is_error and unknown.result == "Error: Unknown tool: nope"
    assert invalid.is_error and "missing required argument 'text'" in invalid.result
    assert model.calls[1]["messages"][-1]["content"][0]["is_error"] is True


def test_tool_names_are_normalized(tool_context):
    model = ScriptedModel([tool_reply("SubmitReport", {"report": "r"}), text_reply("")])
    fired = []
    driver = _driver(model, tool_context, SUBMIT_REPORT, artifact_tool="submit_report")
    result = asyncio.run(driver.run("go", on_artifact_submitted=lambda: fired.append(True)))

    assert result.tool_results[0].result == "Report submitted."
    assert fired == [True]


def test_artifact_callback_fires_once(tool_context):
    model = ScriptedModel([
        tool_reply("submit_report", {"report": "one"}),
        tool_reply("submit_report", {"report": "two"}),
        text_reply("bye"),
    ])
    fired = []
    driver = _driver(model, tool_context, SUBMIT_REPORT, artifact_tool="submit_report")
    asyncio.run(driver.run("go", on_artifact_submitted=lambda: fired.append(True)))
    assert fired == [True]


def test_on_step_sees_every_step_in_order(tool_context):
    model = ScriptedModel([tool_reply("echo", {"text": "a"}), tool_reply("echo", {"text": "b"}), text_reply("end")])
    seen = []

    async def on_step(step):
        seen.append(step.index)

    asyncio.run(_driver(model, tool_context).run("go", on_step=on_step))
    assert seen == [0, 1, 2]


def test_cancel_keeps_partial_steps(tool_context):
    model = ScriptedModel([tool_reply("echo", {"text": str(i)}) for i in range(10)])
    driver = _driver(model, tool_context, max_steps=10)

    async def run():
        cancel = asyncio.Event()

        async def on_step(step):
            if step.index == 1:
                cancel.set()

        return await driver.run("go", on_step=on_step, cancel_event=cancel)

    with pytest.raises(AgentCancelled) as info:
        asyncio.run(run())
    assert len(info.value.steps) == 2
    assert len(driver.steps) == 2
    assert len(model.calls) == 2


def test_transient_model_errors_are_retried(tool_context):
    model = ScriptedModel([ModelError("Too many requests", status_code=429), text_reply("recovered")])
    driver = _driver(model, tool_context, model_call_max_retries=2, retry_max_delay_ms=10)
    result = asyncio.run(driver.run("go"))

    assert result.text == "recovered"
    assert len(model.calls) == 2


def test_non_transient_model_errors_propagate(tool_context):
    model = ScriptedModel([ModelError("Validation failed: bad request", status_code=400)])
    driver = _driver(model, tool_context, model_call_max_retries=3, retry_max_delay_ms=10)
    with pytest.raises(ModelError):
        asyncio.run(driver.run("go"))
    assert len(model.calls) == 1
