# registry.py
# Tool registry: one addressable set built from a static catalog plus
# dynamically discovered plugins.
#
# Rules:
#   - built-in tools are registered first and win every name collision
#   - dynamic tools are published under the snake-case form of their name
#   - every dynamic tool also answers to its literal, lowercase, snake-case
#     and punctuation-stripped names
#   - one broken plugin never aborts discovery of the others

import re
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import Any, Iterable

from tool_runtime.logging import get_logger
from tool_runtime.models import ToolDescriptor, error_result
from tool_runtime.tools import Tool

logger = get_logger(name=__name__)

ENTRY_POINT_GROUP = "tool_runtime.tools"

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_WORD = re.compile(r"[^0-9a-zA-Z]+")


# ---------------------------------------------------------------------------
# Name forms
# ---------------------------------------------------------------------------


def snake_case(name: str) -> str:
    """'Find Orders', 'FindOrders' and 'find-orders' all become 'find_orders'."""
    spaced = _CAMEL_BOUNDARY.sub("_", name.strip())
    return _NON_WORD.sub("_", spaced).strip("_").lower()


def stripped(name: str) -> str:
    """Lowercase with every non-alphanumeric character removed."""
    return _NON_WORD.sub("", name).lower()


def name_forms(name: str) -> list[str]:
    """Lookup forms in resolution order, de-duplicated, empties dropped."""
    forms: list[str] = []
    for form in (name, name.strip().lower(), snake_case(name), stripped(name)):
        if form and form not in forms:
            forms.append(form)
    return forms


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolHandle:
    descriptor: ToolDescriptor
    tool: Tool
    source: str

    @property
    def name(self) -> str:
        return self.descriptor.name


class ToolRegistry:
    """
    Merged tool catalog with alias resolution.

    Example:
        registry = ToolRegistry(builtins=order_tools(records), plugins=[MyTool()])
        handle = registry.resolve("Find Orders")
        result = registry.invoke("find_orders", {"merchant": "acme"})
    """

    def __init__(
        self,
        builtins: Iterable[Tool] = (),
        plugins: Iterable[Tool] = (),
        *,
        discover_entry_points: bool = False,
    ) -> None:
        self._builtins = list(builtins)
        self._plugins = list(plugins)
        self._discover_entry_points = discover_entry_points
        self._handles: dict[str, ToolHandle] = {}
        self._aliases: dict[str, str] = {}
        self.refresh()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def refresh(self) -> None:
        """Rebuild the catalog from the built-ins and a fresh discovery pass."""
        self._handles = {}
        self._aliases = {}

        for tool in self._builtins:
            descriptor = tool.describe()
            if descriptor.name in self._handles:
                raise ValueError(f"Duplicate built-in tool name: {descriptor.name!r}")
            self._handles[descriptor.name] = ToolHandle(descriptor, tool, "builtin")

        # Built-in aliases go in first so they keep priority over dynamic ones.
        for name in list(self._handles):
            for alias in name_forms(name):
                self._aliases.setdefault(alias, name)

        plugins = list(self._plugins)
        if self._discover_entry_points:
            plugins.extend(load_entry_point_plugins())

        registered = 0
        for plugin in plugins:
            if self._register_dynamic(plugin):
                registered += 1

        logger.debug(
            "tool_registry_built",
            builtin=len(self._builtins),
            dynamic=registered,
            aliases=len(self._aliases),
        )

    def _register_dynamic(self, plugin: Any) -> bool:
        try:
            descriptor = plugin.describe()
            if not isinstance(descriptor, ToolDescriptor):
                descriptor = ToolDescriptor.model_validate(descriptor)
        except Exception as exc:
            logger.warning(
                "dynamic_tool_skipped",
                plugin=type(plugin).__name__,
                error=str(exc),
            )
            return False

        public_name = snake_case(descriptor.name)
        if not public_name:
            logger.warning("dynamic_tool_skipped", plugin=type(plugin).__name__, error="empty name")
            return False

        forms = name_forms(descriptor.name) + name_forms(public_name)
        winner = self._handles.get(public_name)
        if winner is None:
            winner = next(
                (
                    self._handles[self._aliases[form]]
                    for form in forms
                    if form in self._aliases and self._handles[self._aliases[form]].source == "builtin"
                ),
                None,
            )
        if winner is not None:
            logger.debug(
                "dynamic_tool_shadowed",
                name=descriptor.name,
                public_name=public_name,
                winner=winner.name,
                winner_source=winner.source,
            )
            return False

        handle = ToolHandle(
            descriptor.model_copy(update={"name": public_name}),
            plugin,
            "dynamic",
        )
        self._handles[public_name] = handle
        for alias in forms:
            self._aliases.setdefault(alias, public_name)
        return True

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def resolve(self, name: str) -> ToolHandle | None:
        if not isinstance(name, str) or not name.strip():
            return None
        if name in self._handles:
            return self._handles[name]
        for form in name_forms(name):
            target = self._aliases.get(form)
            if target is not None:
                return self._handles[target]
        return None

    def catalog(self) -> list[ToolDescriptor]:
        return [handle.descriptor for handle in self._handles.values()]

    def wire_catalog(self) -> list[dict]:
        return [descriptor.to_wire() for descriptor in self.catalog()]

    def names(self) -> list[str]:
        return list(self._handles)

    def aliases(self) -> dict[str, str]:
        return dict(sorted(self._aliases.items()))

    # ------------------------------------------------------------------
    # Invocation contract
    # ------------------------------------------------------------------

    def invoke(self, name: str, arguments: dict) -> dict:
        """
        invoke(name, arguments) -> result map.

        This is the single seam through which tool side effects happen.
        A tool body that raises is reported as an error result.
        """
        handle = self.resolve(name)
        if handle is None:
            return error_result(f"Unknown tool: {name}")

        try:
            raw = handle.tool.invoke(dict(arguments))
        except Exception as exc:
            logger.warning("tool_invocation_failed", tool=handle.name, error=str(exc))
            return error_result(f"Tool invocation failed: {exc}", tool=handle.name)

        return _normalize_result(raw)


def _normalize_result(raw: Any) -> dict:
    if isinstance(raw, dict):
        result = dict(raw)
        result["type"] = str(result.get("type") or "tool_result")
        return result
    return {"type": "tool_result", "content": raw if isinstance(raw, str) else repr(raw)}


def load_entry_point_plugins(group: str = ENTRY_POINT_GROUP) -> list[Any]:
    """Instantiate plugins published under an entry-point group, skipping broken ones."""
    plugins: list[Any] = []
    for entry_point in entry_points(group=group):
        try:
            loaded = entry_point.load()
            plugins.append(loaded() if isinstance(loaded, type) else loaded)
        except Exception as exc:
            logger.warning("dynamic_tool_load_failed", entry_point=entry_point.name, error=str(exc))
    return plugins
