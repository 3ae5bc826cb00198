from __future__ import annotations


class TestbedError(Exception):
    """Base class for every error raised by the testbed."""


class ParseError(TestbedError, ValueError):
    pass


class ValidationError(TestbedError):
    pass


class PluginError(TestbedError):
    pass


class TestbedNotFoundError(TestbedError):
    pass


class NodeError(TestbedError):
    """A failure inside one node's operation, tagged with its index."""

    def __init__(self, node: int, cause: BaseException) -> None:
        super().__init__(f"node[{node}]: {cause}")
        self.node = node
        self.__cause__ = cause


class MultiError(TestbedError):
    def __init__(self, errors: list[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__("\n".join(str(err) for err in self.errors))


class InitError(TestbedError):
    pass


class StopError(TestbedError):
    pass


class ShutdownExhaustedError(StopError):
    def __init__(self, pid: int) -> None:
        super().__init__(f"could not stop node with pid {pid}")
        self.pid = pid


class ConnectExhaustedError(TestbedError):
    pass


class CommandError(TestbedError):
    pass


class CommandTimeoutError(CommandError):
    pass


class ReadinessError(TestbedError):
    pass
