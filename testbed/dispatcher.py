from __future__ import annotations

import logging
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TextIO

from .errors import MultiError, NodeError, ValidationError
from .events import EventLog
from .interfaces import Core, Output

logger = logging.getLogger("testbed.dispatcher")

OutputFunc = Callable[[Core], Optional[Output]]


@dataclass
class Result:
    node: int
    output: Output | None = None
    error: Exception | None = None


def valid_range(selection: Sequence[int], total: int) -> None:
    for n in selection:
        if n < 0 or n >= total:
            raise ValidationError(
                f"node range contains value ({n}) outside of valid range [0-{total - 1}]"
            )


def map_with_output(
    selection: Sequence[int],
    nodes: Sequence[Core],
    fn: OutputFunc,
    *,
    event_log: EventLog | None = None,
    label: str = "",
) -> list[Result]:
    """Run ``fn`` against every selected node at once and wait for all of them.

    ``results[i]`` always belongs to ``selection[i]``. A node whose call raises
    gets a :class:`NodeError` in its slot; siblings are unaffected. An index
    outside ``nodes`` raises :class:`ValidationError` before anything runs.
    A ``KeyboardInterrupt`` raised by ``fn`` is recorded in its slot and
    raised again here once every node has finished.
    """
    valid_range(selection, len(nodes))

    lock = threading.Lock()
    results: list[Result] = [Result(node=n) for n in selection]
    interrupts: list[KeyboardInterrupt] = []
    scope = event_log.dispatch(label, selection, len(nodes)) if event_log is not None else None

    def _worker(i: int, n: int, node: Core) -> None:
        started = time.monotonic()
        out: Output | None = None
        err: NodeError | None = None
        try:
            out = fn(node)
        except BaseException as exc:
            logger.debug("node[%d] %s failed: %r", n, label or "operation", exc)
            err = NodeError(n, exc)
            if isinstance(exc, KeyboardInterrupt):
                with lock:
                    interrupts.append(exc)

        with lock:
            results[i] = Result(node=n, output=out, error=err)

        if scope is not None:
            scope.node_done(i, time.monotonic() - started, out, err)

    threads = [
        threading.Thread(target=_worker, args=(i, n, nodes[n]), name=f"node-{n}", daemon=True)
        for i, n in enumerate(selection)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    if scope is not None:
        scope.finish(sum(1 for r in results if r.error is not None))
    if interrupts:
        raise interrupts[0]
    return results


def _write_bytes(out: TextIO, data: bytes) -> None:
    if not data:
        return
    buffer = getattr(out, "buffer", None)
    if buffer is not None:
        out.flush()
        buffer.write(data)
        buffer.flush()
    else:
        out.write(data.decode("utf-8", errors="replace"))


def build_report(results: Sequence[Result], out: TextIO | None = None) -> MultiError | None:
    out = sys.stdout if out is None else out
    errs: list[Exception] = []

    for rs in results:
        if rs.error is not None:
            errs.append(rs.error)

        if rs.output is not None:
            out.write(f"node[{rs.node}] exit {rs.output.exit_code}\n")
            if rs.output.error is not None:
                out.write(f"{rs.output.error}")
            out.write("\n")

            _write_bytes(out, rs.output.stdout)
            _write_bytes(out, rs.output.stderr)

            out.write("\n")

    if errs:
        return MultiError(errs)
    return None
