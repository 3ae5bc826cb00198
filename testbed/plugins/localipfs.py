from __future__ import annotations

from typing import Mapping, Sequence

from ..registry import Plugin
from .ipfs import ATTR_DESC, IpfsNode

PLUGIN_NAME = "localipfs"


class LocalIpfs(IpfsNode):
    """go-ipfs daemon from PATH."""

    def type(self) -> str:
        return PLUGIN_NAME

    def init_command(self, args: Sequence[str]) -> list[str]:
        return [self.ipfs, "init", *args]

    def daemon_command(self, args: Sequence[str]) -> list[str]:
        return [self.ipfs, "daemon", *args]


def new_node(directory: str, attrs: Mapping[str, str]) -> LocalIpfs:
    return LocalIpfs(directory, attrs)


PLUGIN = Plugin(
    name=PLUGIN_NAME,
    new_node=new_node,
    attr_list=tuple(ATTR_DESC),
    attr_desc=ATTR_DESC,
)
