import io
import threading
import time

import pytest

from testbed.dispatcher import Result, build_report, map_with_output, valid_range
from testbed.errors import MultiError, NodeError, ValidationError
from testbed.events import EventLog, iter_events, log_files
from testbed.interfaces import Core, Output


class FakeNode(Core):
    def __init__(self, index: int) -> None:
        self.index = index
        self.calls = 0

    @property
    def dir(self):
        return f"/nodes/{self.index}"

    @property
    def attrs(self):
        return {}

    def type(self):
        return "fake"

    def init(self, *args, timeout=None):
        raise NotImplementedError

    def start(self, *args, wait=False):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError

    def run_cmd(self, args, stdin=None, timeout=None):
        self.calls += 1
        return Output(args=tuple(args), exit_code=0, stdout=f"out{self.index}\n".encode(), stderr=b"")

    def connect(self, other, timeout=None):
        raise NotImplementedError

    def shell(self, peers):
        raise NotImplementedError

    def config(self):
        return {}

    def write_config(self, cfg):
        pass

    def api_addr(self):
        return "/ip4/127.0.0.1/tcp/0"

    def swarm_addrs(self):
        return []

    def peer_id(self):
        return f"peer{self.index}"


@pytest.fixture
def nodes():
    return [FakeNode(i) for i in range(5)]


def test_results_follow_selection_order(nodes):
    selection = [3, 0, 3, 1]
    results = map_with_output(selection, nodes, lambda n: n.run_cmd(["echo", str(n.index)]))

    assert len(results) == len(selection)
    assert [r.node for r in results] == selection
    assert [r.output.stdout for r in results] == [b"out3\n", b"out0\n", b"out3\n", b"out1\n"]
    assert all(r.error is None for r in results)
    assert nodes[3].calls == 2


def test_slow_first_node_keeps_its_slot(nodes):
    def _op(node):
        if node.index == 0:
            time.sleep(0.2)
        return node.run_cmd(["x"])

    results = map_with_output([0, 1, 2], nodes, _op)
    assert [r.node for r in results] == [0, 1, 2]
    assert results[0].output.stdout == b"out0\n"


def test_out_of_range_selection_invokes_nothing(nodes):
    invoked = []

    with pytest.raises(ValidationError, match=r"\(5\)"):
        map_with_output([0, 1, 5], nodes, lambda n: invoked.append(n))

    assert invoked == []


def test_valid_range_rejects_negative():
    with pytest.raises(ValidationError):
        valid_range([-1], 3)
    valid_range([0, 2], 3)


def test_failures_are_isolated_and_wrapped(nodes):
    def _op(node):
        if node.index == 2:
            raise RuntimeError("boom")
        return node.run_cmd(["ok"])

    results = map_with_output([1, 2, 3], nodes, _op)

    assert results[0].error is None and results[2].error is None
    err = results[1].error
    assert isinstance(err, NodeError)
    assert err.node == 2
    assert str(err) == "node[2]: boom"
    assert isinstance(err.__cause__, RuntimeError)
    assert results[1].output is None


def test_operations_run_concurrently(nodes):
    barrier = threading.Barrier(len(nodes), timeout=5)

    def _op(node):
        barrier.wait()
        return node.run_cmd(["x"])

    results = map_with_output(list(range(len(nodes))), nodes, _op)
    assert all(r.error is None for r in results)


def test_empty_selection(nodes):
    assert map_with_output([], nodes, lambda n: None) == []


def test_event_log_records_each_node(tmp_path, nodes):
    with EventLog(tmp_path, run_id="run-1") as log:
        map_with_output([4, 2], nodes, lambda n: n.run_cmd(["x"]), event_log=log, label="run")

    records = list(iter_events(log.path))
    events = [r["event"] for r in records]
    assert events[0] == "dispatch_start"
    assert records[0]["selection"] == [4, 2]
    assert events[-1] == "dispatch_done"
    ops = sorted(iter_events(log.path, "node_op"), key=lambda r: r["slot"])
    assert [r["node"] for r in ops] == [4, 2]
    assert all(r["label"] == "run" and r["ok"] and r["exit_code"] == 0 for r in ops)
    assert all(r["run_id"] == "run-1" for r in records)
    assert records[-1]["failures"] == 0
    assert log_files(tmp_path) == [log.path]


def test_event_log_records_failures(tmp_path, nodes):
    def _op(node):
        raise RuntimeError("down")

    with EventLog(tmp_path) as log:
        map_with_output([1], nodes, _op, event_log=log)

    (op,) = iter_events(log.path, "node_op")
    assert op["ok"] is False
    assert op["error"] == "node[1]: down"
    assert "exit_code" not in op
    assert op["label"] == "op"


def test_closed_event_log_refuses_writes(tmp_path):
    log = EventLog(tmp_path)
    log.close()
    with pytest.raises(ValueError, match="closed"):
        log.dispatch("run", [0], 1)


def test_system_exit_is_recorded_as_failure(nodes):
    def _op(node):
        if node.index == 1:
            raise SystemExit(3)
        return node.run_cmd(["ok"])

    results = map_with_output([0, 1], nodes, _op)

    assert results[0].error is None
    err = results[1].error
    assert isinstance(err, NodeError)
    assert isinstance(err.__cause__, SystemExit)


def test_keyboard_interrupt_waits_for_siblings_then_propagates(nodes):
    finished = []

    def _op(node):
        if node.index == 0:
            raise KeyboardInterrupt
        time.sleep(0.1)
        finished.append(node.index)
        return node.run_cmd(["ok"])

    with pytest.raises(KeyboardInterrupt):
        map_with_output([0, 1, 2], nodes, _op)
    assert sorted(finished) == [1, 2]


def test_report_prints_outputs_and_returns_none_without_errors():
    results = [
        Result(node=0, output=Output(args=("x",), exit_code=0, stdout=b"hello\n", stderr=b"warn\n")),
        Result(node=1),
    ]
    out = io.StringIO()

    assert build_report(results, out=out) is None
    assert out.getvalue() == "node[0] exit 0\n\nhello\nwarn\n\n"


def test_report_includes_output_error_and_combines_node_errors():
    timeout = RuntimeError("context deadline exceeded")
    results = [
        Result(node=0, output=Output(args=("x",), exit_code=1, error=timeout)),
        Result(node=1, error=NodeError(1, ValueError("first"))),
        Result(node=2, error=NodeError(2, ValueError("second"))),
    ]
    out = io.StringIO()

    err = build_report(results, out=out)

    assert isinstance(err, MultiError)
    assert len(err.errors) == 2
    assert "node[1]: first" in str(err)
    assert "node[2]: second" in str(err)
    assert out.getvalue().startswith("node[0] exit 1\ncontext deadline exceeded\n")
    assert results[1].error.node == 1
