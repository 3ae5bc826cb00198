from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Mapping

from .errors import PluginError
from .interfaces import Core

NewNodeFunc = Callable[[str, Mapping[str, str]], Core]


@dataclass(frozen=True)
class Plugin:
    name: str
    new_node: NewNodeFunc
    attr_list: tuple[str, ...] = ()
    attr_desc: Mapping[str, str] = field(default_factory=dict)

    def describe(self, attr: str) -> str:
        try:
            return self.attr_desc[attr]
        except KeyError:
            raise PluginError(f"{self.name}: unknown attribute {attr!r}") from None


class PluginRegistry:
    """Node constructors keyed by backend name."""

    def __init__(self, plugins: list[Plugin] | None = None) -> None:
        self._plugins: dict[str, Plugin] = {}
        for plugin in plugins or []:
            self.register(plugin)

    def register(self, plugin: Plugin, *, replace: bool = False) -> None:
        if plugin.name in self._plugins and not replace:
            raise PluginError(f"plugin {plugin.name!r} is already registered")
        self._plugins[plugin.name] = plugin

    def get(self, name: str) -> Plugin:
        plugin = self._plugins.get(name)
        if plugin is None:
            known = ", ".join(sorted(self._plugins)) or "none"
            raise PluginError(f"unknown node type {name!r} (known: {known})")
        return plugin

    def names(self) -> list[str]:
        return sorted(self._plugins)

    def __contains__(self, name: object) -> bool:
        return name in self._plugins

    def new_node(self, name: str, directory: str, attrs: Mapping[str, str]) -> Core:
        return self.get(name).new_node(directory, dict(attrs))


def default_registry() -> PluginRegistry:
    from .plugins import browseripfs, localipfs

    return PluginRegistry([localipfs.PLUGIN, browseripfs.PLUGIN])
