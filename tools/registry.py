"""Tool descriptors, the per-run registry snapshot and tool-name normalization."""

import inspect
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]+")
_REPEATED_UNDERSCORE = re.compile(r"_+")


def normalize_tool_name(name: str) -> str:
    """Canonical snake_case key: ``SubmitReport``, ``submit-report`` and ``SUBMIT_REPORT`` all map to ``submit_report``."""
    value = _CAMEL_BOUNDARY.sub(r"\1_\2", str(name or ""))
    value = _NON_ALNUM.sub("_", value)
    value = _REPEATED_UNDERSCORE.sub("_", value).strip("_")
    return value.lower()


def is_tool_named(name: str, canonical: str) -> bool:
    """Separator-insensitive comparison against a canonical tool name."""
    normalized = normalize_tool_name(name)
    target = normalize_tool_name(canonical)
    return normalized == target or normalized.replace("_", "") == target.replace("_", "")


@dataclass(frozen=True)
class ToolDescriptor:
    """A named capability: JSON schema plus ``execute(args, context)``.

    ``execute`` may be a plain function (run in a worker thread) or a
    coroutine function (awaited on the event loop). It returns a string,
    a ToolResult, or any JSON-serializable value.
    """
    name: str
    description: str
    input_schema: Dict[str, Any]
    execute: Callable[..., Any] = field(compare=False)

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.execute)

    def definition(self) -> Dict[str, Any]:
        """Anthropic-format tool definition sent to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Immutable name -> descriptor mapping held by one run."""

    def __init__(self, descriptors: Iterable[ToolDescriptor] = ()):
        tools: Dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            key = normalize_tool_name(descriptor.name)
            if key in tools:
                raise ValueError(f"Duplicate tool name: {descriptor.name}")
            tools[key] = descriptor
        self._tools: Mapping[str, ToolDescriptor] = MappingProxyType(tools)

    def get(self, name: str) -> Optional[ToolDescriptor]:
        descriptor = self._tools.get(normalize_tool_name(name))
        if descriptor is not None:
            return descriptor
        # Providers sometimes drop separators entirely ("submitreport").
        squashed = normalize_tool_name(name).replace("_", "")
        for key, candidate in self._tools.items():
            if key.replace("_", "") == squashed:
                return candidate
        return None

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __iter__(self):
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return [d.name for d in self._tools.values()]

    def definitions(self) -> List[Dict[str, Any]]:
        return [d.definition() for d in self._tools.values()]

    def subset(self, names: Iterable[str]) -> "ToolRegistry":
        """New registry with only the named tools that exist here."""
        picked = []
        for name in names:
            descriptor = self.get(name)
            if descriptor is not None and descriptor not in picked:
                picked.append(descriptor)
        return ToolRegistry(picked)

    def without(self, names: Iterable[str]) -> "ToolRegistry":
        excluded = {normalize_tool_name(n) for n in names}
        return ToolRegistry(d for k, d in self._tools.items() if k not in excluded)

    def with_tools(self, *descriptors: ToolDescriptor) -> "ToolRegistry":
        """New registry with descriptors added, replacing same-named ones."""
        replaced = {normalize_tool_name(d.name) for d in descriptors}
        kept = [d for k, d in self._tools.items() if k not in replaced]
        return ToolRegistry([*kept, *descriptors])
