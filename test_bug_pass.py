"""
Bug-verification pass tests.
"""

import asyncio

from conftest import ScriptedModel, text_reply, tool_reply
from review.bug_pass import BugCard, BugVerifier
from tools.sandbox import DUPLICATE_SANDBOX_MESSAGE, SandboxExecutor, approve_all

REVIEW_WITH_BUGS = (
    "## Findings\n"
    "- add() returns a - b, which is wrong for every caller\n"
    "- parse() raises TypeError on empty input\n"
)


def _verifier(model, tool_context, tmp_path, cards, steps=None):
    executor = SandboxExecutor(tool_context.working_directory, confirm=approve_all, temp_root=str(tmp_path))

    async def record_step(step):
        if steps is not None:
            steps.append(step)
        for call in step.tool_calls:
            if call.name == "report_bug":
                cards.append(BugCard.from_args(call.args, call.id))

    return BugVerifier(model, tool_context, executor, record_step, lambda: len(cards))


def test_skipped_without_bug_vocabulary(tool_context, tmp_path):
    model = ScriptedModel()
    cards = []
    assert asyncio.run(_verifier(model, tool_context, tmp_path, cards).run("LGTM")) == []
    assert asyncio.run(_verifier(model, tool_context, tmp_path, cards).run("No bugs found.")) == []
    assert model.calls == []


def test_skipped_when_cards_already_exist(tool_context, tmp_path):
    model = ScriptedModel()
    cards = [BugCard(title="existing", description="d")]
    assert asyncio.run(_verifier(model, tool_context, tmp_path, cards).run(REVIEW_WITH_BUGS)) == []
    assert model.calls == []


def test_one_session_per_candidate(tool_context, tmp_path):
    def handler(messages, tools, config):
        if len(messages) > 1:
            return text_reply("recorded")
        title = "add subtracts" if "add()" in messages[0]["content"] else "parse TypeError"
        return tool_reply("report_bug", {"title": title, "description": "see review", "status": "UNVERIFIED"})

    model = ScriptedModel(handler=handler)
    cards = []
    synthesized = asyncio.run(_verifier(model, tool_context, tmp_path, cards).run(REVIEW_WITH_BUGS))

    assert synthesized == []
    assert [c.title for c in cards] == ["add subtracts", "parse TypeError"]
    first_calls = [c for c in model.calls if len(c["messages"]) == 1]
    assert len(first_calls) == 2
    assert all(sorted(c["tools"]) == ["report_bug", "sandbox_exec"] for c in model.calls)


def test_sandbox_is_single_use_per_session(tool_context, tmp_path):
    model = ScriptedModel([
        tool_reply("sandbox_exec", {"command": "grep -n 'a - b' app.py"}),
        tool_reply("sandbox_exec", {"command": "cat app.py"}),
        tool_reply("report_bug", {
            "title": "add subtracts", "description": "returns a - b", "status": "VERIFIED",
            "evidence": "2:    return a - b",
        }),
        text_reply("done"),
    ])
    cards, steps = [], []
    text = "- add() returns a - b, which is wrong for every caller"
    asyncio.run(_verifier(model, tool_context, tmp_path, cards, steps).run(text))

    first, second = steps[0].tool_results[0], steps[1].tool_results[0]
    assert first.result.startswith("Sandbox root:")
    assert "return a - b" in first.result
    assert second.result == DUPLICATE_SANDBOX_MESSAGE
    assert cards[0].status == "VERIFIED"


def test_unrecorded_candidates_become_synthesized_cards(tool_context, tmp_path):
    model = ScriptedModel()  # every session just says "done"
    cards = []
    synthesized = asyncio.run(_verifier(model, tool_context, tmp_path, cards).run(REVIEW_WITH_BUGS))

    assert [c.status for c in synthesized] == ["UNVERIFIED", "UNVERIFIED"]
    assert all(c.synthesized for c in synthesized)
    assert synthesized[0].description == "add() returns a - b, which is wrong for every caller"


def test_narrative_without_candidates_runs_one_broad_session(tool_context, tmp_path):
    model = ScriptedModel([
        tool_reply("report_bug", {"title": "t", "description": "d", "status": "UNVERIFIED"}),
        text_reply("ok"),
    ])
    cards = []
    # Every clause is too short to be a candidate on its own
    text = "Bugs: crash, leak, wrong, error."
    synthesized = asyncio.run(_verifier(model, tool_context, tmp_path, cards).run(text))

    assert synthesized == []
    assert len(cards) == 1
    assert "Extract every distinct bug" in model.calls[0]["prompt"]
