from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .errors import TestbedError, TestbedNotFoundError
from .interfaces import Core
from .registry import PluginRegistry, default_registry

SPEC_FILE = "nodespec.json"


@dataclass
class NodeSpec:
    type: str
    dir: str
    attrs: dict[str, str] = field(default_factory=dict)

    def load(self, registry: PluginRegistry) -> Core:
        return registry.new_node(self.type, self.dir, self.attrs)

    @classmethod
    def from_dict(cls, raw: Any) -> "NodeSpec":
        if not isinstance(raw, dict):
            raise TestbedError("node spec entry must be an object")
        node_type = raw.get("type")
        node_dir = raw.get("dir")
        attrs = raw.get("attrs") or {}
        if not isinstance(node_type, str) or not isinstance(node_dir, str):
            raise TestbedError("node spec entry needs string 'type' and 'dir'")
        if not isinstance(attrs, dict):
            raise TestbedError("node spec 'attrs' must be an object")
        return cls(type=node_type, dir=node_dir, attrs={str(k): str(v) for k, v in attrs.items()})


class Testbed:
    """A directory of node specs; the nodes it loads keep their positions."""

    def __init__(self, directory: str | Path, registry: PluginRegistry | None = None) -> None:
        self.dir = Path(directory)
        self.registry = registry if registry is not None else default_registry()
        self._nodes: list[Core] | None = None

    @property
    def spec_path(self) -> Path:
        return self.dir / SPEC_FILE

    def build_specs(self, node_type: str, count: int, attrs: dict[str, str] | None = None) -> list[NodeSpec]:
        self.registry.get(node_type)
        return [
            NodeSpec(type=node_type, dir=str(self.dir / str(i)), attrs=dict(attrs or {}))
            for i in range(count)
        ]

    def write_specs(self, specs: list[NodeSpec], force: bool = False) -> None:
        if self.spec_path.exists() and not force:
            raise TestbedError(f"testbed already exists at {self.dir}, use force to overwrite")
        self.dir.mkdir(parents=True, exist_ok=True)
        for spec in specs:
            Path(spec.dir).mkdir(parents=True, exist_ok=True)
        with self.spec_path.open("w", encoding="utf-8") as f:
            json.dump([asdict(spec) for spec in specs], f, indent=2)
            f.write("\n")
        self._nodes = None

    def specs(self) -> list[NodeSpec]:
        if not self.spec_path.exists():
            raise TestbedNotFoundError(f"no testbed found at {self.dir}")
        with self.spec_path.open("r", encoding="utf-8") as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as exc:
                raise TestbedError(f"{self.spec_path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, list):
            raise TestbedError(f"{self.spec_path} must hold a list of node specs")
        return [NodeSpec.from_dict(item) for item in raw]

    def nodes(self) -> list[Core]:
        if self._nodes is None:
            self._nodes = [spec.load(self.registry) for spec in self.specs()]
        return list(self._nodes)

    def node(self, index: int) -> Core:
        nodes = self.nodes()
        if index < 0 or index >= len(nodes):
            raise TestbedError(f"node {index} outside of valid range [0-{len(nodes) - 1}]")
        return nodes[index]

    def __len__(self) -> int:
        return len(self.nodes())
