"""
Shared fixtures: a scripted ModelService and a throwaway workspace.
"""

import itertools
import threading

import pytest

from backend import LocalBackend
from changes import ChangedFile
from llm.base import GenerationResult, ModelService, ToolUseBlock
from providers import LocalProvider
from tools._common import ToolContext

_call_ids = itertools.count(1)


def text_reply(content, input_tokens=10, output_tokens=5):
    return GenerationResult(
        content=content,
        content_blocks=[{"type": "text", "text": content}] if content else [],
        stop_reason="end_turn",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


def tool_reply(name, args=None, call_id=None, content=""):
    """One assistant turn calling a single tool."""
    args = dict(args or {})
    call_id = call_id or f"toolu_{next(_call_ids)}"
    blocks = [{"type": "text", "text": content}] if content else []
    blocks.append({"type": "tool_use", "id": call_id, "name": name, "input": args})
    return GenerationResult(
        content=content,
        tool_uses=[ToolUseBlock(id=call_id, name=name, input=args)],
        content_blocks=blocks,
        stop_reason="tool_use",
        input_tokens=10,
        output_tokens=5,
    )


class ScriptedModel(ModelService):
    """Replays queued replies in order, or asks ``handler`` for each one.

    A queued Exception is raised instead of returned. Once the queue is
    empty every call gets a plain "done" text reply, which ends a session.
    """

    model_id = "scripted"

    def __init__(self, replies=None, handler=None):
        self.replies = list(replies or [])
        self.handler = handler
        self.calls = []
        self._lock = threading.Lock()

    def generate_response(self, messages, system_prompt=None, model_id=None, config=None, tools=None):
        with self._lock:
            tool_names = [t["name"] for t in tools or []]
            self.calls.append({
                "prompt": messages[0]["content"] if messages else "",
                "messages": list(messages),
                "tools": tool_names,
                "config": config,
            })
            if self.handler is None:
                reply = self.replies.pop(0) if self.replies else text_reply("done")
        if self.handler is not None:
            # Handlers run unlocked so concurrent sessions really overlap
            reply = self.handler(messages, tool_names, config)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    (root / "app.py").write_text("def add(a, b):\n    return a - b\n")
    (root / "pkg").mkdir()
    (root / "pkg" / "util.py").write_text("VALUE = 1\n")
    (root / ".gitignore").write_text("build/\n")
    (root / "build").mkdir()
    (root / "build" / "artifact.bin").write_text("ignored")
    return root


@pytest.fixture
def changed_files():
    return [ChangedFile(file_name="app.py", file_content="def add(a, b):\n    return a - b\n",
                        changed_ranges=[(2, 2)])]


@pytest.fixture
def provider():
    return LocalProvider()


@pytest.fixture
def tool_context(workspace, provider):
    return ToolContext(
        working_directory=str(workspace),
        backend=LocalBackend(str(workspace)),
        provider=provider,
    )
