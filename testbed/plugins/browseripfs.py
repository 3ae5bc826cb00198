from __future__ import annotations

import shutil
from typing import Mapping, Sequence

from ..errors import PluginError
from ..registry import Plugin
from .ipfs import ATTR_DESC, IpfsNode, require_binary

PLUGIN_NAME = "browseripfs"


class BrowserIpfs(IpfsNode):
    """js-ipfs running behind a node.js server bundle.

    The repo is created by ``repobuilder`` (jsipfs by default) and the daemon
    is ``node <source>`` started inside the repo directory.
    """

    def __init__(self, directory: str, attrs: Mapping[str, str] | None = None) -> None:
        super().__init__(directory, attrs)
        self.node_bin = require_binary("node")

        repobuilder = self._attrs.get("repobuilder")
        if not repobuilder:
            repobuilder = shutil.which("jsipfs")
            if repobuilder is None:
                raise PluginError("no `repobuilder` provided, could not find jsipfs in PATH")
        self.repobuilder = repobuilder

        source = self._attrs.get("source")
        if not source:
            raise PluginError("no `source` provided")
        self.source = source

    def type(self) -> str:
        return PLUGIN_NAME

    def init_command(self, args: Sequence[str]) -> list[str]:
        return [self.repobuilder, "init", *args]

    def daemon_command(self, args: Sequence[str]) -> list[str]:
        # the bundle takes no daemon flags
        return [self.node_bin, self.source]

    def get_attr(self, name: str) -> str:
        if name == "repobuilder":
            return self.repobuilder
        if name == "source":
            return self.source
        return super().get_attr(name)


def new_node(directory: str, attrs: Mapping[str, str]) -> BrowserIpfs:
    return BrowserIpfs(directory, attrs)


_ATTR_DESC = {
    **ATTR_DESC,
    "repobuilder": "binary used to create the repo (default: jsipfs from PATH)",
    "source": "server bundle passed to node (required)",
}

PLUGIN = Plugin(
    name=PLUGIN_NAME,
    new_node=new_node,
    attr_list=tuple(_ATTR_DESC),
    attr_desc=_ATTR_DESC,
)
