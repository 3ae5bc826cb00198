from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Any, Mapping

import httpx
from multiaddr import Multiaddr
from multiaddr import exceptions as ma_exceptions

from ..errors import InitError, PluginError, ReadinessError, TestbedError
from ..process import ProcessNode

logger = logging.getLogger("testbed.plugins.ipfs")

DEFAULT_ADDR = "/ip4/127.0.0.1/tcp/0"
API_FILE = "api"
READY_TRIES = 50
READY_INTERVAL = 0.4

ATTR_DESC: dict[str, str] = {
    "apiaddr": "multiaddr the HTTP API binds to (default /ip4/127.0.0.1/tcp/0)",
    "swarmaddr": "multiaddr the swarm listens on (default /ip4/127.0.0.1/tcp/0)",
}


def parse_multiaddr(raw: str, field_name: str) -> str:
    try:
        return str(Multiaddr(raw.strip()))
    except (ValueError, TypeError, ma_exceptions.Error) as exc:
        raise PluginError(f"invalid {field_name} {raw!r}: {exc}") from exc


def require_binary(name: str) -> str:
    path = shutil.which(name)
    if path is None:
        raise PluginError(f"{name} not found in PATH")
    return path


def host_port(addr: str) -> tuple[str, int]:
    ma = Multiaddr(addr)
    names = [proto.name for proto in ma.protocols()]
    for name in ("ip4", "ip6", "dns4", "dns6", "dns"):
        if name in names:
            host = ma.value_for_protocol(name)
            break
    else:
        raise TestbedError(f"address {addr} has no host part")
    if "tcp" not in names:
        raise TestbedError(f"address {addr} has no tcp port")
    return host, int(ma.value_for_protocol("tcp"))


class IpfsNode(ProcessNode):
    """Shared pieces of every IPFS-flavoured node: repo config, addresses, identity."""

    repo_env_var = "IPFS_PATH"

    def __init__(self, directory: str, attrs: Mapping[str, str] | None = None) -> None:
        super().__init__(directory, attrs)
        self.ipfs = require_binary("ipfs")
        self.apiaddr = parse_multiaddr(self._attrs.get("apiaddr", DEFAULT_ADDR), "apiaddr")
        self.swarmaddr = parse_multiaddr(self._attrs.get("swarmaddr", DEFAULT_ADDR), "swarmaddr")
        self._peer_id: str | None = None

    def connect_command(self, addr: str) -> list[str]:
        return [self.ipfs, "swarm", "connect", addr]

    def isolate_config(self, cfg: Any) -> Any:
        if not isinstance(cfg, dict):
            raise InitError(f"config in {self.dir} is not an ipfs config")
        cfg["Bootstrap"] = []
        addresses = cfg.setdefault("Addresses", {})
        addresses["Swarm"] = [self.swarmaddr]
        addresses["API"] = self.apiaddr
        addresses["Gateway"] = ""
        cfg.setdefault("Discovery", {}).setdefault("MDNS", {})["Enabled"] = False
        return cfg

    def get_attr(self, name: str) -> str:
        if name == "apiaddr":
            return self.apiaddr
        if name == "swarmaddr":
            return self.swarmaddr
        return super().get_attr(name)

    def api_addr(self) -> str:
        path = Path(self.dir) / API_FILE
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise TestbedError(f"no api file in {self.dir}, is the daemon running?") from None
        return parse_multiaddr(raw, "api address")

    def peer_id(self) -> str:
        if self._peer_id is None:
            cfg = self.config()
            try:
                self._peer_id = str(cfg["Identity"]["PeerID"])
            except (KeyError, TypeError) as exc:
                raise TestbedError(f"config in {self.dir} has no Identity.PeerID") from exc
        return self._peer_id

    def swarm_addrs(self) -> list[str]:
        pid = self.peer_id()
        output = self.run_cmd([self.ipfs, "swarm", "addrs", "local"])
        if output.exit_code != 0:
            detail = output.stderr.decode("utf-8", errors="replace").strip()
            raise TestbedError(f"listing swarm addresses of {self.dir} failed: {detail}")

        addrs: list[str] = []
        for line in output.stdout.decode("utf-8", errors="replace").splitlines():
            line = line.strip()
            if line:
                addrs.append(f"{line}/ipfs/{pid}")
        return addrs

    def wait_ready(self, tries: int = READY_TRIES, interval: float = READY_INTERVAL) -> None:
        expected = self.peer_id()
        last_error = "never reachable"
        with httpx.Client(timeout=2.0, trust_env=False) as client:
            for _ in range(tries):
                try:
                    host, port = host_port(self.api_addr())
                    if ":" in host:
                        host = f"[{host}]"
                    resp = client.post(f"http://{host}:{port}/api/v0/id")
                    resp.raise_for_status()
                    got = resp.json().get("ID")
                    if got == expected:
                        logger.debug("%s is online at %s:%d", self, host, port)
                        return
                    last_error = f"api reports peer id {got!r}"
                except (TestbedError, httpx.HTTPError, ValueError) as exc:
                    last_error = str(exc)
                time.sleep(interval)
        raise ReadinessError(f"node {self} failed to come online in given time period: {last_error}")
