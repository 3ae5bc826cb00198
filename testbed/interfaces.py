from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence

from .errors import TestbedError


@dataclass(frozen=True)
class Output:
    args: tuple[str, ...]
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""
    error: Exception | None = field(default=None, compare=False)


class Core(ABC):
    """Operations every node backend provides.

    Calls on different nodes may run concurrently; calls on the same node
    must be serialised by the caller.
    """

    @property
    @abstractmethod
    def dir(self) -> str: ...

    @property
    @abstractmethod
    def attrs(self) -> dict[str, str]: ...

    @abstractmethod
    def type(self) -> str: ...

    @abstractmethod
    def init(self, *args: str, timeout: float | None = None) -> Output: ...

    @abstractmethod
    def start(self, *args: str, wait: bool = False) -> Output | None: ...

    @abstractmethod
    def stop(self) -> None: ...

    @abstractmethod
    def run_cmd(
        self,
        args: Sequence[str],
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> Output: ...

    @abstractmethod
    def connect(self, other: "Core", timeout: float | None = None) -> None: ...

    @abstractmethod
    def shell(self, peers: Sequence["Core"]) -> None: ...

    @abstractmethod
    def config(self) -> Any: ...

    @abstractmethod
    def write_config(self, cfg: Any) -> None: ...

    @abstractmethod
    def api_addr(self) -> str: ...

    @abstractmethod
    def swarm_addrs(self) -> list[str]: ...

    @abstractmethod
    def peer_id(self) -> str: ...

    def get_attr(self, name: str) -> str:
        try:
            return self.attrs[name]
        except KeyError:
            raise TestbedError(f"attribute {name!r} is not set on {self}") from None
