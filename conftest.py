import sys
import time
from pathlib import Path
from typing import Callable, Dict, List, Sequence

import pytest

from testbed.errors import ReadinessError
from testbed.process import ProcessNode
from testbed.registry import Plugin, PluginRegistry

POLITE_DAEMON = """
import os, sys, time
from pathlib import Path

here = Path(os.environ["REPO_PATH"])
print("daemon up", " ".join(sys.argv[1:]), flush=True)
print("daemon stderr", file=sys.stderr, flush=True)
(here / "ready").write_text("1")
while True:
    time.sleep(0.05)
"""

# Ignores SIGINT and SIGTERM, leaves a marker and exits on SIGQUIT.
STUBBORN_DAEMON = """
import os, signal, sys, time
from pathlib import Path

here = Path(os.environ["REPO_PATH"])

def _quit(signum, frame):
    (here / "quit").write_text(str(signum))
    sys.exit(0)

signal.signal(signal.SIGINT, signal.SIG_IGN)
signal.signal(signal.SIGTERM, signal.SIG_IGN)
signal.signal(signal.SIGQUIT, _quit)
(here / "ready").write_text("1")
while True:
    time.sleep(0.05)
"""

INIT_SCRIPT = """
import json, os, sys
repo = os.environ["REPO_PATH"]
with open(os.path.join(repo, "config"), "w") as f:
    json.dump({"Identity": {"PeerID": "QmScript"}, "args": sys.argv[1:]}, f)
print("initialized", repo)
"""


class ScriptNode(ProcessNode):
    """Node whose daemon and helper commands are small python scripts."""

    def type(self) -> str:
        return "script"

    def init_command(self, args: Sequence[str]) -> List[str]:
        return [sys.executable, "-c", INIT_SCRIPT, *args]

    def daemon_command(self, args: Sequence[str]) -> List[str]:
        return [sys.executable, self._attrs["daemon"], *args]

    def connect_command(self, addr: str) -> List[str]:
        accept = self._attrs.get("accept", "")
        return [sys.executable, "-c", f"import sys; sys.exit(0 if {addr!r} == {accept!r} else 3)"]

    def isolate_config(self, cfg):
        cfg["isolated"] = True
        return cfg

    def wait_ready(self) -> None:
        ready = Path(self.dir) / "ready"
        deadline = time.monotonic() + 10.0
        while time.monotonic() < deadline:
            if ready.exists():
                return
            time.sleep(0.02)
        raise ReadinessError(f"{self.dir} never became ready")

    def api_addr(self) -> str:
        return self._attrs.get("apiaddr", "/ip4/127.0.0.1/tcp/5001")

    def swarm_addrs(self) -> List[str]:
        raw = self._attrs.get("addrs", "")
        return [a for a in raw.split(",") if a]

    def peer_id(self) -> str:
        return self._attrs.get("peer_id", "QmScriptNodeIdentity")


@pytest.fixture
def daemon_scripts(tmp_path: Path) -> Dict[str, str]:
    scripts = {}
    for name, body in (("polite", POLITE_DAEMON), ("stubborn", STUBBORN_DAEMON)):
        path = tmp_path / f"{name}_daemon.py"
        path.write_text(body, encoding="utf-8")
        scripts[name] = str(path)
    return scripts


@pytest.fixture
def make_node(tmp_path: Path, daemon_scripts: Dict[str, str]) -> Callable[..., ScriptNode]:
    created: List[ScriptNode] = []

    def _make(name: str = "node0", daemon: str = "polite", **attrs: str) -> ScriptNode:
        directory = tmp_path / name
        directory.mkdir(parents=True, exist_ok=True)
        node = ScriptNode(str(directory), {"daemon": daemon_scripts[daemon], **attrs})
        created.append(node)
        return node

    yield _make

    for node in created:
        if node.pid_path.exists():
            node.stop()


@pytest.fixture
def script_registry(daemon_scripts: Dict[str, str]) -> PluginRegistry:
    def _new_node(directory, attrs):
        attrs = dict(attrs)
        attrs.setdefault("daemon", daemon_scripts["polite"])
        return ScriptNode(directory, attrs)

    return PluginRegistry([Plugin(name="script", new_node=_new_node, attr_list=("daemon",), attr_desc={"daemon": "daemon script"})])
