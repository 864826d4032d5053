"""
tools/registry.py — Tool Registry

Maps tool names to their ToolDefinition. Populated at startup by
kernel.bootstrap; read-only afterwards. Re-registering a name replaces the
previous definition.

The registry is also the parameter boundary: parse_params() turns a raw
dict into the tool's own ToolParams model, so tools only ever see typed,
schema-checked parameters.

Usage:
    registry = ToolRegistry()
    registry.register_tool(find_exercise_tool(matcher))

    tool = registry.get("find_exercise")
    params = registry.parse_params("find_exercise", {"name": "dumbell row"})
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from fitcoach.exceptions import ToolNotFoundError, ValidationError
from fitcoach.observability.logger import get_logger
from fitcoach.tools.types import ToolDefinition, ToolParams

log = get_logger(__name__)


class ToolRegistry:
    """Name → ToolDefinition store."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    # ── Write (startup only) ──────────────────────────────────────────────────

    def register_tool(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            log.info("registry.tool_replaced", tool=tool.name)
        self._tools[tool.name] = tool
        log.debug("registry.tool_registered", tool=tool.name)

    def unregister_tool(self, name: str) -> None:
        self._tools.pop(name, None)

    # ── Read (runtime) ────────────────────────────────────────────────────────

    def get(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def get_or_none(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def is_registered(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[str]:
        return sorted(self._tools)

    def describe_tools(self) -> list[dict[str, Any]]:
        """Name, description and JSON schema of every tool, for planning prompts."""
        return [self._tools[name].describe() for name in self.list_tools()]

    def parse_params(self, name: str, raw: dict[str, Any] | ToolParams | None) -> ToolParams:
        """Validate raw parameters into the tool's model. Raises ValidationError."""
        tool = self.get(name)
        if isinstance(raw, tool.params_model):
            return raw
        try:
            return tool.params_model.model_validate(raw or {})
        except PydanticValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            loc = ".".join(str(p) for p in first.get("loc", ()))
            raise ValidationError(
                f"Invalid parameters for '{name}': {first.get('msg', str(e))}"
                + (f" (field: {loc})" if loc else ""),
                field=loc or None,
            ) from e

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
