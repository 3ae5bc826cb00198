from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .config import (
    LOG_FORMAT,
    ROOT_ENV,
    Settings,
    non_negative_float,
    parse_attr_slice,
    parse_command,
    positive_int,
    split_terminator,
)
from .dispatcher import OutputFunc, build_report, map_with_output, valid_range
from .errors import TestbedError
from .interfaces import Core, Output
from .events import EventLog
from .process import STDERR_FILE, STDOUT_FILE
from .ranges import all_nodes, parse_range
from .registry import PluginRegistry
from .testbed import Testbed

logger = logging.getLogger("testbed.cli")

PASSTHROUGH_COMMANDS = ("init", "start", "restart", "run")


@dataclass
class CommandContext:
    settings: Settings
    testbed: Testbed
    tail: list[str] | None


def _selection(expr: str | None, total: int) -> list[int]:
    if not expr:
        return all_nodes(total)
    return parse_range(expr)


def _dispatch(ctx: CommandContext, expr: str | None, fn: OutputFunc, label: str) -> int:
    nodes = ctx.testbed.nodes()
    selection = _selection(expr, len(nodes))
    with EventLog(ctx.settings.log_dir) as event_log:
        results = map_with_output(selection, nodes, fn, event_log=event_log, label=label)

    err = build_report(results)
    if err is not None:
        print(err, file=sys.stderr)
        return 1
    return 0


def cmd_auto(ctx: CommandContext, args: argparse.Namespace) -> int:
    attrs = parse_attr_slice(args.attr)
    specs = ctx.testbed.build_specs(args.type, args.count, attrs)
    ctx.testbed.write_specs(specs, force=args.force)
    print(f"created testbed {ctx.settings.testbed!r} with {args.count} {args.type} node(s) at {ctx.testbed.dir}")
    return 0


def cmd_init(ctx: CommandContext, args: argparse.Namespace) -> int:
    extra = ctx.tail or []
    return _dispatch(ctx, args.range, lambda node: node.init(*extra), "init")


def cmd_start(ctx: CommandContext, args: argparse.Namespace) -> int:
    extra = ctx.tail or []
    return _dispatch(ctx, args.range, lambda node: node.start(*extra, wait=args.wait), "start")


def _stop(node: Core) -> None:
    node.stop()


def cmd_stop(ctx: CommandContext, args: argparse.Namespace) -> int:
    return _dispatch(ctx, args.range, _stop, "stop")


def cmd_restart(ctx: CommandContext, args: argparse.Namespace) -> int:
    extra = ctx.tail or []

    def _restart(node: Core) -> Output | None:
        node.stop()
        return node.start(*extra, wait=args.wait)

    return _dispatch(ctx, args.range, _restart, "restart")


def cmd_run(ctx: CommandContext, args: argparse.Namespace) -> int:
    if ctx.tail is not None:
        if len(args.args) > 1:
            raise TestbedError("only a node range may come before '--'")
        expr, command = parse_command(ctx.tail, terminator=True)
        if args.args:
            expr = args.args[0]
    else:
        expr, command = parse_command(args.args, terminator=False)
    if not command:
        raise TestbedError("no command given to run")

    return _dispatch(ctx, expr, lambda node: node.run_cmd(command, timeout=args.timeout), "run")


def cmd_connect(ctx: CommandContext, args: argparse.Namespace) -> int:
    nodes = ctx.testbed.nodes()
    if not args.nodes:
        from_expr = to_expr = None
    elif len(args.nodes) == 2:
        from_expr, to_expr = args.nodes
    else:
        raise TestbedError("connect takes either no arguments or FROM and TO")

    targets = _selection(to_expr, len(nodes))
    valid_range(targets, len(nodes))

    def _connect(node: Core) -> None:
        for j in targets:
            if nodes[j] is node:
                continue
            node.connect(nodes[j], timeout=args.timeout)

    return _dispatch(ctx, from_expr, _connect, "connect")


def cmd_logs(ctx: CommandContext, args: argparse.Namespace) -> int:
    filename = STDOUT_FILE if args.stream == "stdout" else STDERR_FILE

    def _logs(node: Core) -> Output:
        path = Path(node.dir) / filename
        return Output(args=("logs", str(path)), exit_code=0, stdout=path.read_bytes())

    return _dispatch(ctx, args.range, _logs, "logs")


def cmd_attr(ctx: CommandContext, args: argparse.Namespace) -> int:
    spec = ctx.testbed.specs()
    if args.node < 0 or args.node >= len(spec):
        raise TestbedError(f"node {args.node} outside of valid range [0-{len(spec) - 1}]")
    plugin = ctx.testbed.registry.get(spec[args.node].type)

    if args.attr_command == "list":
        for name in plugin.attr_list:
            print(f"{name}\t{plugin.describe(name)}")
        return 0

    print(ctx.testbed.node(args.node).get_attr(args.attr))
    return 0


def cmd_shell(ctx: CommandContext, args: argparse.Namespace) -> int:
    node = ctx.testbed.node(args.node)
    node.shell(ctx.testbed.nodes())
    return 0


COMMANDS: dict[str, Callable[[CommandContext, argparse.Namespace], int]] = {
    "auto": cmd_auto,
    "init": cmd_init,
    "start": cmd_start,
    "stop": cmd_stop,
    "restart": cmd_restart,
    "run": cmd_run,
    "connect": cmd_connect,
    "logs": cmd_logs,
    "attr": cmd_attr,
    "shell": cmd_shell,
}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="testbed",
        description="Create and drive a local cluster of p2p daemons",
    )
    parser.add_argument("--root", default=None, help=f"testbed root (default: ${ROOT_ENV} or ~/testbed)")
    parser.add_argument("--testbed", default=None, help="testbed name (default: default)")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    sub = parser.add_subparsers(dest="command", required=True)

    auto = sub.add_parser("auto", help="create a testbed of identical nodes")
    auto.add_argument("--type", required=True, help="node type, e.g. localipfs")
    auto.add_argument("--count", type=positive_int, required=True)
    auto.add_argument("--attr", action="append", default=[], help="node attribute as key,value")
    auto.add_argument("--force", action="store_true", help="overwrite an existing testbed")

    init = sub.add_parser("init", help="initialise node repos; arguments after -- go to init")
    init.add_argument("range", nargs="?")

    start = sub.add_parser("start", help="start daemons; arguments after -- go to the daemon")
    start.add_argument("range", nargs="?")
    start.add_argument("--wait", action="store_true", help="block until each daemon is reachable")

    stop = sub.add_parser("stop", help="stop daemons")
    stop.add_argument("range", nargs="?")

    restart = sub.add_parser("restart", help="stop then start daemons")
    restart.add_argument("range", nargs="?")
    restart.add_argument("--wait", action="store_true")

    run = sub.add_parser("run", help="run a command against each node: run [RANGE] -- CMD...")
    run.add_argument("args", nargs="*")
    run.add_argument("--timeout", type=non_negative_float, default=None, help="seconds before the command is killed")

    connect = sub.add_parser("connect", help="connect nodes: connect [FROM TO]")
    connect.add_argument("nodes", nargs="*")
    connect.add_argument("--timeout", type=non_negative_float, default=None)

    logs = sub.add_parser("logs", help="print captured daemon output")
    logs.add_argument("range", nargs="?")
    logs.add_argument("--stream", choices=("stdout", "stderr"), default="stdout")

    attr = sub.add_parser("attr", help="inspect node attributes")
    attr_sub = attr.add_subparsers(dest="attr_command", required=True)
    attr_list = attr_sub.add_parser("list", help="list attributes a node type understands")
    attr_list.add_argument("node", type=int)
    attr_get = attr_sub.add_parser("get", help="print one attribute of a node")
    attr_get.add_argument("attr")
    attr_get.add_argument("node", type=int)

    shell = sub.add_parser("shell", help="open $SHELL with the node's environment")
    shell.add_argument("node", type=int)
    return parser


def main(argv: list[str] | None = None, registry: PluginRegistry | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    head, tail = split_terminator(argv)

    parser = build_arg_parser()
    args = parser.parse_args(head)
    if tail is not None and args.command not in PASSTHROUGH_COMMANDS:
        parser.error(f"'--' is not accepted by {args.command}")

    try:
        settings = Settings.from_env(root=args.root, testbed=args.testbed, log_level=args.log_level)
    except ValueError as exc:
        parser.error(str(exc))

    logging.basicConfig(level=getattr(logging, settings.log_level, logging.WARNING), format=LOG_FORMAT)

    ctx = CommandContext(
        settings=settings,
        testbed=Testbed(settings.testbed_dir, registry=registry),
        tail=tail,
    )
    try:
        return COMMANDS[args.command](ctx, args)
    except (TestbedError, OSError) as exc:
        logger.debug("%s failed", args.command, exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
