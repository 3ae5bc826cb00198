from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import threading
from abc import abstractmethod
from pathlib import Path
from typing import Any, Mapping, Sequence

import psutil

from .errors import (
    CommandError,
    CommandTimeoutError,
    ConnectExhaustedError,
    InitError,
    ShutdownExhaustedError,
    StopError,
    TestbedError,
)
from .interfaces import Core, Output

logger = logging.getLogger("testbed.process")

PID_FILE = "daemon.pid"
STDOUT_FILE = "daemon.stdout"
STDERR_FILE = "daemon.stderr"
CONFIG_FILE = "config"

# Each rung: signal to send, seconds to wait for the process to exit.
SHUTDOWN_LADDER: tuple[tuple[signal.Signals, float], ...] = (
    (signal.SIGINT, 1.0),
    (signal.SIGTERM, 2.0),
    (signal.SIGQUIT, 5.0),
    (signal.SIGKILL, 5.0),
)
# How often the exit waiter rechecks whether stop gave up on the process.
WAIT_POLL = 0.1


class ProcessNode(Core):
    """A node backed by one daemon process living in its own directory.

    Subclasses supply the init, daemon and connect command lines, the
    identity accessors and, optionally, config isolation and a readiness
    check. Everything about spawning, stopping and running commands lives
    here.
    """

    repo_env_var = "REPO_PATH"
    shutdown_ladder = SHUTDOWN_LADDER

    def __init__(self, directory: str, attrs: Mapping[str, str] | None = None) -> None:
        self._dir = str(directory)
        self._attrs = dict(attrs or {})
        self._child: subprocess.Popen[bytes] | None = None

    @property
    def dir(self) -> str:
        return self._dir

    @property
    def attrs(self) -> dict[str, str]:
        return dict(self._attrs)

    @property
    def pid_path(self) -> Path:
        return Path(self._dir) / PID_FILE

    @abstractmethod
    def init_command(self, args: Sequence[str]) -> list[str]: ...

    @abstractmethod
    def daemon_command(self, args: Sequence[str]) -> list[str]: ...

    @abstractmethod
    def connect_command(self, addr: str) -> list[str]: ...

    def isolate_config(self, cfg: Any) -> Any:
        return cfg

    def wait_ready(self) -> None:
        return None

    def env(self) -> dict[str, str]:
        env = dict(os.environ)
        env[self.repo_env_var] = self._dir
        return env

    # lifecycle

    def init(self, *args: str, timeout: float | None = None) -> Output:
        Path(self._dir).mkdir(parents=True, exist_ok=True)
        output = self.run_cmd(self.init_command(args), timeout=timeout)
        if output.exit_code != 0:
            detail = output.stderr.decode("utf-8", errors="replace").strip() or output.error
            raise InitError(f"init of {self._dir} failed: {detail}")

        cfg = self.config()
        self.write_config(self.isolate_config(cfg))
        return output

    def start(self, *args: str, wait: bool = False) -> Output | None:
        directory = Path(self._dir)
        cmd = self.daemon_command(args)
        with (directory / STDOUT_FILE).open("wb") as stdout, (directory / STDERR_FILE).open("wb") as stderr:
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=str(directory),
                    env=self.env(),
                    stdin=subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=stderr,
                )
            except OSError as exc:
                raise CommandError(f"error starting daemon {cmd[0]}: {exc}") from exc

        self._child = proc
        self.pid_path.write_text(str(proc.pid), encoding="utf-8")
        logger.info("started %s pid=%d dir=%s", self.type(), proc.pid, self._dir)

        if wait:
            self.wait_ready()
        return None

    def stop(self) -> None:
        pid = self._read_pid()
        try:
            proc = self._find_process(pid)
        except psutil.NoSuchProcess:
            self._remove_pid_file()
            raise StopError(f"error killing daemon {self._dir}: no process with pid {pid}") from None

        try:
            sig = self._shutdown(proc)
        finally:
            self._remove_pid_file()
            self._release_child()
        logger.info("stopped pid=%d with %s dir=%s", pid, sig.name, self._dir)

    def _shutdown(self, proc: psutil.Process) -> signal.Signals:
        exited = threading.Event()
        abandoned = threading.Event()

        def _wait() -> None:
            while not abandoned.is_set():
                try:
                    proc.wait(timeout=WAIT_POLL)
                except psutil.TimeoutExpired:
                    continue
                exited.set()
                return

        threading.Thread(target=_wait, name=f"wait-{proc.pid}", daemon=True).start()

        try:
            for sig, timeout in self.shutdown_ladder:
                try:
                    proc.send_signal(sig)
                except psutil.NoSuchProcess:
                    return sig
                except psutil.AccessDenied as exc:
                    raise StopError(f"error killing daemon {self._dir}: {exc}") from exc
                logger.debug("sent %s to pid=%d, waiting %.1fs", sig.name, proc.pid, timeout)
                if exited.wait(timeout):
                    return sig
        finally:
            abandoned.set()

        logger.warning("pid=%d survived %s; its pid file is removed anyway", proc.pid, sig.name)
        raise ShutdownExhaustedError(proc.pid)

    def _find_process(self, pid: int) -> psutil.Process:
        return psutil.Process(pid)

    def _read_pid(self) -> int:
        try:
            raw = self.pid_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            raise StopError(f"error killing daemon {self._dir}: no pid file, is it running?") from None
        except OSError as exc:
            raise StopError(f"error killing daemon {self._dir}: {exc}") from exc
        try:
            pid = int(raw)
        except ValueError:
            pid = 0
        if pid <= 0:
            self._remove_pid_file()
            raise StopError(f"error killing daemon {self._dir}: invalid pid {raw!r}")
        return pid

    def _remove_pid_file(self) -> None:
        try:
            self.pid_path.unlink()
        except FileNotFoundError:
            pass

    def _release_child(self) -> None:
        # psutil may already have reaped it; poll() then reports 0.
        if self._child is not None:
            self._child.poll()
            self._child = None

    # commands

    def run_cmd(
        self,
        args: Sequence[str],
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> Output:
        args = list(args)
        if not args:
            raise CommandError("no command given")

        try:
            proc = subprocess.Popen(
                args,
                env=self.env(),
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise CommandError(f"error running {args[0]}: {exc}") from exc

        timed_out = False
        try:
            stdout, stderr = proc.communicate(input=stdin, timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            proc.kill()
            stdout, stderr = proc.communicate()

        err: Exception | None = None
        exit_code = 0
        if timed_out or proc.returncode != 0:
            # the real exit status is not kept
            exit_code = 1
            if timed_out:
                err = CommandTimeoutError(f'context deadline exceeded for command: "{" ".join(args)}"')

        return Output(args=tuple(args), exit_code=exit_code, stdout=stdout, stderr=stderr, error=err)

    def connect(self, other: Core, timeout: float | None = None) -> None:
        for addr in other.swarm_addrs():
            output = self.run_cmd(self.connect_command(addr), timeout=timeout)
            if output.exit_code == 0:
                logger.debug("%s connected to %s via %s", self, other, addr)
                return
        raise ConnectExhaustedError(f"could not connect {self} to {other} using any address")

    def shell(self, peers: Sequence[Core]) -> None:
        shell = os.environ.get("SHELL")
        if not shell:
            raise CommandError("no shell found")
        if os.environ.get(self.repo_env_var):
            # the user's shell would override it again
            raise CommandError(
                f"shell has {self.repo_env_var} set, please unset before trying to use the testbed shell"
            )

        env = self.env()
        for i, peer in enumerate(peers):
            env[f"NODE{i}"] = peer.peer_id()
        os.execve(shell, [shell], env)

    # config

    @property
    def config_path(self) -> Path:
        return Path(self._dir) / CONFIG_FILE

    def config(self) -> Any:
        with self.config_path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def write_config(self, cfg: Any) -> None:
        tmp = self.config_path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(cfg, f, indent=2)
            f.write("\n")
        os.replace(tmp, self.config_path)

    def __str__(self) -> str:
        try:
            return self.peer_id()[:12]
        except (TestbedError, OSError, ValueError, KeyError):
            return self.type()
