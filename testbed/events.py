from __future__ import annotations

import json
import threading
import time
import uuid
from pathlib import Path
from typing import IO, Any, Iterator, Sequence

from .interfaces import Output

LOG_PREFIX = "testbed-"


class EventLog:
    """Dispatch events of one CLI invocation, one JSON object per line.

    Every record carries ``ts_ms``, ``event`` and ``run_id``. The dispatcher
    opens a :class:`DispatchScope` per ``map_with_output`` call and its worker
    threads report through it concurrently.
    """

    def __init__(self, log_dir: str | Path, run_id: str | None = None) -> None:
        self.run_id = run_id or uuid.uuid4().hex
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        self.path = directory / f"{LOG_PREFIX}{time.time_ns() // 1_000_000}-{self.run_id[:8]}.jsonl"
        self._lock = threading.Lock()
        self._fp: IO[str] | None = self.path.open("a", encoding="utf-8")

    def emit(self, event: str, fields: dict[str, Any]) -> None:
        record: dict[str, Any] = {
            "ts_ms": time.time_ns() // 1_000_000,
            "event": event,
            "run_id": self.run_id,
        }
        record.update((k, v) for k, v in fields.items() if v is not None)
        line = json.dumps(record, separators=(",", ":"))
        with self._lock:
            if self._fp is None:
                raise ValueError(f"event log {self.path} is closed")
            self._fp.write(line + "\n")
            self._fp.flush()

    def dispatch(self, label: str, selection: Sequence[int], total: int) -> "DispatchScope":
        return DispatchScope(self, label, selection, total)

    def close(self) -> None:
        with self._lock:
            if self._fp is not None:
                self._fp.close()
                self._fp = None

    def __enter__(self) -> "EventLog":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class DispatchScope:
    """Events of one dispatch, all tagged with its label; slots index the selection."""

    def __init__(self, log: EventLog, label: str, selection: Sequence[int], total: int) -> None:
        self.log = log
        self.label = label or "op"
        self.selection = list(selection)
        self.log.emit("dispatch_start", {"label": self.label, "selection": self.selection, "total": total})

    def node_done(self, slot: int, seconds: float, output: Output | None, error: BaseException | None) -> None:
        self.log.emit(
            "node_op",
            {
                "label": self.label,
                "node": self.selection[slot],
                "slot": slot,
                "duration_ms": int(seconds * 1000),
                "exit_code": output.exit_code if output is not None else None,
                "ok": error is None,
                "error": str(error) if error is not None else None,
            },
        )

    def finish(self, failures: int) -> None:
        self.log.emit("dispatch_done", {"label": self.label, "count": len(self.selection), "failures": failures})


def log_files(log_dir: Path) -> list[Path]:
    return sorted(log_dir.glob(f"{LOG_PREFIX}*.jsonl"))


def iter_events(path: Path, event: str | None = None) -> Iterator[dict[str, Any]]:
    """Yield the records of one log file; torn or non-object lines are skipped."""
    with path.open("r", encoding="utf-8", errors="ignore") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict) and (event is None or record.get("event") == event):
                yield record
