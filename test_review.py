"""
Review orchestrator tests: submission, retries, loop recovery and aborts.
"""

import asyncio
import dataclasses

import pytest

from agent.events import StepEvent, ToolCall
from config import review_config
from conftest import ScriptedModel, text_reply, tool_reply
from llm.base import ModelError
from review.orchestrator import ReviewAborted, ReviewOrchestrator, ReviewRunState, ReviewState, track_sandbox_loop
from review.prompts import CONTINUE_INSTRUCTION
from tools.sandbox import approve_all

GOOD_REPORT = (
    "## Summary\nadd() changed.\n\n"
    "## Findings\n- add() returns a - b\n- No test covers add()\n- Callers expect a sum\n\n"
    "## Recommendations\n- Restore a + b\n\n"
    "## Conclusion\nBlocking."
)


def _config(**overrides):
    base = dict(
        max_steps=6,
        max_retries=3,
        model_call_max_retries=0,
        step_delay_ms=0,
        retry_max_delay_ms=10,
        preflight_enabled=False,
        bug_verify_enabled=True,
        sandbox_loop_threshold=3,
        sandbox_auto_approve=False,
        review_language="English",
    )
    base.update(overrides)
    return dataclasses.replace(review_config, **base)


def _review(model, provider, files, workspace, events=None, **overrides):
    async def emit(event):
        if events is not None:
            events.append(event)

    return ReviewOrchestrator(
        model, provider, files,
        working_directory=str(workspace),
        config=_config(**overrides),
        emit=emit,
        confirm=approve_all,
    )


def test_submitted_summary_is_the_result(workspace, provider, changed_files):
    model = ScriptedModel([tool_reply("submit_summary", {"report": "LGTM"}), text_reply("Summary submitted.")])
    events = []
    outcome = asyncio.run(_review(model, provider, changed_files, workspace, events).run())

    assert outcome.result == "LGTM"
    assert outcome.state == ReviewState.SUBMITTED
    assert outcome.attempts == 1
    assert outcome.bug_cards == []
    assert not outcome.recovered
    assert outcome.usage.input_tokens == 20
    # Bug pass skipped: no bug vocabulary
    assert len(model.calls) == 2
    assert len(provider.usage) == 1
    assert provider.usage[0]["tokens"]["totalTokens"] == 30
    assert [e.data["phase"] for e in events if e.type == "step"] == ["review", "review"]
    assert "submit_summary" in model.calls[0]["tools"]
    assert "app.py" in model.calls[0]["prompt"]


def test_retries_carry_attempt_context(workspace, provider, changed_files):
    model = ScriptedModel([
        tool_reply("read_file", {"path": "app.py"}),
        text_reply("I read the file."),
        tool_reply("submit_summary", {"report": "add() subtracts; please restore a + b."}),
        text_reply("done"),
    ])
    outcome = asyncio.run(_review(model, provider, changed_files, workspace, bug_verify_enabled=False).run())

    assert outcome.state == ReviewState.SUBMITTED
    assert outcome.attempts == 2
    retry_prompt = model.calls[2]["prompt"]
    assert "--- Attempt 1 Context ---" in retry_prompt
    assert "Tool Result (read_file)" in retry_prompt
    assert "Final Text: I read the file." in retry_prompt
    assert retry_prompt.endswith(CONTINUE_INSTRUCTION)


def test_exhausted_without_submission(workspace, provider, changed_files):
    model = ScriptedModel([text_reply("I looked around.")] * 3)
    outcome = asyncio.run(_review(model, provider, changed_files, workspace).run())

    assert outcome.state == ReviewState.EXHAUSTED
    assert outcome.attempts == 3
    assert outcome.result == "I looked around."
    assert len(model.calls) == 3
    assert provider.usage == []


def test_transient_failure_retries_the_attempt(workspace, provider, changed_files):
    model = ScriptedModel([
        ModelError("Model is overloaded", status_code=503),
        tool_reply("submit_summary", {"report": "LGTM"}),
        text_reply("ok"),
    ])
    outcome = asyncio.run(_review(model, provider, changed_files, workspace).run())

    assert outcome.state == ReviewState.SUBMITTED
    assert outcome.attempts == 2
    assert outcome.result == "LGTM"


def test_billing_failure_aborts(workspace, provider, changed_files):
    model = ScriptedModel([ModelError("Payment required: insufficient balance", status_code=402)])
    with pytest.raises(ReviewAborted):
        asyncio.run(_review(model, provider, changed_files, workspace).run())
    assert len(model.calls) == 1


def test_repeated_sandbox_command_triggers_recovery(workspace, provider, changed_files):
    def handler(messages, tools, config):
        if not tools:
            return text_reply("Recovered review: add() returns a - b.")
        return tool_reply("sandbox_exec", {"command": "echo checking; exit 1"})

    model = ScriptedModel(handler=handler)
    events = []
    review = _review(model, provider, changed_files, workspace, events, bug_verify_enabled=False)
    outcome = asyncio.run(review.run())

    assert outcome.recovered
    assert outcome.state == ReviewState.EXHAUSTED
    assert outcome.result == "Recovered review: add() returns a - b."
    assert len(review.sandbox.runs) == 3
    recovery_prompt = model.calls[-1]["prompt"]
    assert "Exit code: 1" in recovery_prompt
    assert provider.comments[-1]["body"] == outcome.result
    assert any(e.type == "status" and "Repeated sandbox command" in e.content for e in events)


def test_meta_summary_is_replaced(workspace, provider, changed_files):
    model = ScriptedModel([
        tool_reply("submit_summary", {"report": "Waiting for your approval to run the tests."}),
        text_reply("ok"),
        text_reply("Real review: nothing blocking."),
    ])
    outcome = asyncio.run(_review(model, provider, changed_files, workspace).run())

    assert outcome.recovered
    assert outcome.state == ReviewState.SUBMITTED
    assert outcome.result == "Real review: nothing blocking."
    assert model.calls[-1]["tools"] == []


def test_bug_cards_from_review_skip_verification(workspace, provider, changed_files):
    model = ScriptedModel([
        tool_reply("report_bug", {
            "title": "add subtracts", "description": "add() returns a - b", "status": "UNVERIFIED",
            "severity": "high", "filePath": "app.py", "startLine": 2,
        }),
        tool_reply("submit_summary", {"report": "Found a bug: add() returns the wrong result."}),
        text_reply("done"),
    ])
    outcome = asyncio.run(_review(model, provider, changed_files, workspace).run())

    assert len(outcome.bug_cards) == 1
    card = outcome.bug_cards[0]
    assert (card.title, card.severity, card.file_path, card.start_line) == ("add subtracts", "high", "app.py", 2)
    assert len(model.calls) == 3
    assert outcome.to_dict()["bugs"][0]["filePath"] == "app.py"


def test_bug_pass_runs_when_summary_mentions_bugs(workspace, provider, changed_files):
    model = ScriptedModel([
        tool_reply("submit_summary", {"report": "- add() returns a - b, which is wrong for every caller"}),
        text_reply("done"),
        tool_reply("report_bug", {"title": "add subtracts", "description": "a - b", "status": "UNVERIFIED"}),
        text_reply("recorded"),
    ])
    events = []
    outcome = asyncio.run(_review(model, provider, changed_files, workspace, events).run())

    assert [c.title for c in outcome.bug_cards] == ["add subtracts"]
    assert "bug_verification" in [e.data["phase"] for e in events if e.type == "step"]
    assert sorted(model.calls[2]["tools"]) == ["report_bug", "sandbox_exec"]


def test_preflight_reports_feed_the_review_prompt(workspace, provider, changed_files):
    def handler(messages, tools, config):
        prompt = messages[0]["content"]
        if prompt.startswith("You are an autonomous sub-agent"):
            if len(messages) == 1:
                return tool_reply("submit_report", {"report": GOOD_REPORT})
            return text_reply("")
        if len(messages) == 1:
            return tool_reply("submit_summary", {"report": "LGTM"})
        return text_reply("done")

    model = ScriptedModel(handler=handler)
    events = []
    outcome = asyncio.run(_review(model, provider, changed_files, workspace, events, preflight_enabled=True).run())

    assert outcome.result == "LGTM"
    review_prompts = [c["prompt"] for c in model.calls if not c["prompt"].startswith("You are an autonomous")]
    assert "<preflight_reports>" in review_prompts[0]
    assert "Key findings:" in review_prompts[0]
    preflight = [e.data for e in events if e.type == "subagent_preflight"]
    assert preflight == [{"state": "start", "total": 4}, {"state": "end", "total": 4}]
    subagent_tools = [c["tools"] for c in model.calls if c["prompt"].startswith("You are an autonomous")]
    assert all("sandbox_exec" not in tools for tools in subagent_tools)


def test_approving_summary_is_kept(workspace, provider, changed_files):
    model = ScriptedModel([tool_reply("submit_summary", {"report": "LGTM. Approved."}), text_reply("ok")])
    outcome = asyncio.run(_review(model, provider, changed_files, workspace).run())

    assert outcome.result == "LGTM. Approved."
    assert outcome.state == ReviewState.SUBMITTED
    assert not outcome.recovered
    assert len(model.calls) == 2
    assert provider.comments == []


def _sandbox_step(index, *commands, extra=()):
    calls = [ToolCall(id=f"{index}-{i}", name="sandbox_exec", args={"command": c}) for i, c in enumerate(commands)]
    return StepEvent(index=index, tool_calls=tuple(calls) + tuple(extra))


def test_loop_counter_resets_on_a_different_command():
    state = ReviewRunState(prompt="")
    runs = [
        track_sandbox_loop(state, _sandbox_step(i, command), 10000)
        for i, command in enumerate(["make a", "make a", "make b", "make a", "make a", "make a"])
    ]
    assert runs == [1, 2, 1, 1, 2, 3]

    read = ToolCall(id="r", name="read_file", args={"path": "app.py"})
    assert track_sandbox_loop(state, _sandbox_step(6, "make a", extra=(read,)), 10000) == 0
    assert track_sandbox_loop(state, _sandbox_step(7, "make a", "make b"), 10000) == 0
    # Same command, different timeout is a different signature
    assert track_sandbox_loop(state, _sandbox_step(8, "make a"), 10000) == 1
    timed = StepEvent(index=9, tool_calls=(ToolCall(id="t", name="sandbox_exec",
                                                    args={"command": "make a", "timeout": 500}),))
    assert track_sandbox_loop(state, timed, 10000) == 1


def test_interleaved_commands_do_not_trigger_recovery(workspace, provider, changed_files):
    def sandbox(command):
        return tool_reply("sandbox_exec", {"command": command})

    model = ScriptedModel([
        sandbox("echo a"), sandbox("echo a"), sandbox("echo b"), sandbox("echo a"), sandbox("echo a"),
        tool_reply("submit_summary", {"report": "LGTM"}),
        text_reply("done"),
    ])
    review = _review(model, provider, changed_files, workspace, max_steps=10, bug_verify_enabled=False)
    outcome = asyncio.run(review.run())

    assert not outcome.recovered
    assert outcome.state == ReviewState.SUBMITTED
    assert outcome.result == "LGTM"
    assert len(review.sandbox.runs) == 5
