from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

DEFAULT_TESTBED = "default"
ROOT_ENV = "TESTBED_ROOT"
LOG_LEVEL_ENV = "TESTBED_LOG_LEVEL"
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"


def positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid integer value: {raw}") from exc
    if value <= 0:
        raise argparse.ArgumentTypeError(f"value must be > 0, got {value}")
    return value


def non_negative_float(raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid number: {raw}") from exc
    if value < 0:
        raise argparse.ArgumentTypeError(f"value must be >= 0, got {value}")
    return value


def parse_attr_slice(raw: list[str]) -> dict[str, str]:
    """Turn ``key,value`` flags into a dict; a bare ``key`` means ``"true"``."""
    attrs: dict[str, str] = {}
    for attr in raw:
        parts = attr.split(",")
        if len(parts) == 1:
            attrs[parts[0]] = "true"
        else:
            attrs[parts[0]] = ",".join(parts[1:])
    return attrs


def split_terminator(argv: list[str]) -> tuple[list[str], list[str] | None]:
    if "--" not in argv:
        return argv, None
    idx = argv.index("--")
    return argv[:idx], argv[idx + 1:]


def parse_command(args: list[str], terminator: bool) -> tuple[str, list[str]]:
    """Split ``[range, cmd...]`` into the range expression and the command.

    With a terminator the whole list is the command and the range is empty.
    """
    if terminator:
        return "", list(args)
    if not args:
        return "", []
    if len(args) == 1:
        return args[0], []

    arguments = args[1:]
    if arguments[0] == "--":
        arguments = arguments[1:]
    return args[0], arguments


@dataclass(frozen=True)
class Settings:
    root: Path
    testbed: str = DEFAULT_TESTBED
    log_level: str = "WARNING"

    @property
    def testbed_dir(self) -> Path:
        return self.root / "testbeds" / self.testbed

    @property
    def log_dir(self) -> Path:
        return self.testbed_dir / "logs"

    @classmethod
    def from_env(
        cls,
        root: str | None = None,
        testbed: str | None = None,
        log_level: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "Settings":
        env = os.environ if environ is None else environ
        if root is None:
            root = env.get(ROOT_ENV) or str(Path.home() / "testbed")
        if log_level is None:
            log_level = env.get(LOG_LEVEL_ENV, "WARNING")
        if not testbed:
            testbed = DEFAULT_TESTBED
        if "/" in testbed or testbed in (".", ".."):
            raise ValueError(f"invalid testbed name: {testbed!r}")
        return cls(root=Path(root).expanduser(), testbed=testbed, log_level=log_level.upper())
