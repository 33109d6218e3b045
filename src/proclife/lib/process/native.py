"""Native process references and the OS status queries behind them."""

from __future__ import annotations

import errno
import os
from abc import ABC, abstractmethod
import select
import signal
import subprocess
import threading
import time
from typing import IO

import structlog

from proclife.lib.process.exit_codes import native_from_wait_status
from proclife.lib.process.signals import deliver_signal, probe_pid
from proclife.lib.types import Pid

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.05


def open_pidfd(pid: int) -> int | None:
    """Open a pidfd for *pid*, or return None where the platform lacks them.

    ProcessLookupError propagates: the process is already gone.
    """

    pidfd_open = getattr(os, "pidfd_open", None)
    if pidfd_open is None:
        return None
    try:
        return pidfd_open(pid)
    except ProcessLookupError:
        raise
    except OSError:
        # Seccomp sandboxes and old kernels reject the syscall outright.
        logger.debug("pidfd_open unavailable, using watcher threads.", pid=pid, exc_info=True)
        return None


def _reaped_error() -> ProcessLookupError:
    return ProcessLookupError(errno.ESRCH, "process has already exited")


class NativeProcessRef(ABC):
    """Non-owning reference to one OS process.

    `poll` and `wait` are the only calls that ask the OS for exit status;
    process handles route every such query through them.
    """

    def __init__(self, pid: Pid, *, pidfd: int | None = None) -> None:
        self._pid = pid
        self._pidfd = pidfd
        self._returncode: int | None = None

    @property
    def pid(self) -> Pid:
        return self._pid

    @property
    def pidfd(self) -> int | None:
        """The native handle: an open pidfd, or None when signals are all we have."""

        return self._pidfd

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def send_signal(self, signum: signal.Signals, *, process_group: bool = False) -> None:
        if self.returncode is not None:
            raise _reaped_error()
        deliver_signal(self._pid, signum, process_group=process_group)

    @abstractmethod
    def poll(self) -> int | None:
        """Return the native exit code if the process has exited, without blocking."""

    @abstractmethod
    def wait(self, timeout: float | None = None) -> int:
        """Block until the process exits and return its native exit code."""

    def close(self) -> None:
        """Release the pidfd. The process itself is left alone."""

        pidfd, self._pidfd = self._pidfd, None
        if pidfd is not None:
            os.close(pidfd)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(pid={self._pid}, pidfd={self._pidfd}, "
            f"returncode={self.returncode})"
        )


class ChildProcessRef(NativeProcessRef):
    """Reference to a child we spawned; exit status comes from `subprocess.Popen`."""

    def __init__(self, popen: subprocess.Popen[bytes], *, pidfd: int | None = None) -> None:
        super().__init__(Pid(popen.pid), pidfd=pidfd)
        self._popen = popen

    @property
    def popen(self) -> subprocess.Popen[bytes]:
        return self._popen

    @property
    def stdin(self) -> IO[bytes] | None:
        return self._popen.stdin

    @property
    def stdout(self) -> IO[bytes] | None:
        return self._popen.stdout

    @property
    def stderr(self) -> IO[bytes] | None:
        return self._popen.stderr

    @property
    def returncode(self) -> int | None:
        return self._popen.returncode

    def send_signal(self, signum: signal.Signals, *, process_group: bool = False) -> None:
        # Reap first so a recycled pid is never signalled.
        if self._popen.poll() is not None:
            raise _reaped_error()
        deliver_signal(self._pid, signum, process_group=process_group)

    def poll(self) -> int | None:
        return self._popen.poll()

    def wait(self, timeout: float | None = None) -> int:
        try:
            return self._popen.wait(timeout)
        except subprocess.TimeoutExpired as exc:
            raise TimeoutError(f"Process {self._pid} still running after {timeout}s") from exc


class AttachedProcessRef(NativeProcessRef):
    """Reference to a process identified only by pid (and optionally a pidfd).

    Exit status is only observable for our own children. For anything else
    the exit itself is detected, but reported as ECHILD.
    """

    def __init__(
        self,
        pid: Pid,
        *,
        pidfd: int | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        super().__init__(pid, pidfd=pidfd)
        self._poll_interval_seconds = poll_interval_seconds
        self._lock = threading.Lock()

    def poll(self) -> int | None:
        with self._lock:
            if self._returncode is not None:
                return self._returncode
            try:
                waited_pid, status = os.waitpid(self._pid, os.WNOHANG)
            except ChildProcessError:
                if self._alive():
                    return None
                raise self._unavailable_error() from None
            if waited_pid == 0:
                return None
            self._returncode = native_from_wait_status(status)
            return self._returncode

    def wait(self, timeout: float | None = None) -> int:
        if self._returncode is not None:
            return self._returncode
        if timeout is not None:
            return self._wait_polling(timeout)

        try:
            _, status = os.waitpid(self._pid, 0)
        except ChildProcessError:
            if self._returncode is not None:
                # Reaped by a concurrent poll().
                return self._returncode
            self._wait_gone(None)
            raise self._unavailable_error() from None
        with self._lock:
            if self._returncode is None:
                self._returncode = native_from_wait_status(status)
            return self._returncode

    def _wait_polling(self, timeout: float) -> int:
        deadline = time.monotonic() + timeout
        while True:
            native_exit_code = self.poll()
            if native_exit_code is not None:
                return native_exit_code
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"Process {self._pid} still running after {timeout}s")
            time.sleep(min(self._poll_interval_seconds, remaining))

    def _alive(self) -> bool:
        if self._pidfd is not None:
            readable, _, _ = select.select([self._pidfd], [], [], 0)
            return not readable
        return probe_pid(self._pid)

    def _wait_gone(self, timeout: float | None) -> bool:
        if self._pidfd is not None:
            readable, _, _ = select.select([self._pidfd], [], [], timeout)
            return bool(readable)
        deadline = None if timeout is None else time.monotonic() + timeout
        while probe_pid(self._pid):
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(self._poll_interval_seconds)
        return True

    def _unavailable_error(self) -> ChildProcessError:
        return ChildProcessError(
            errno.ECHILD,
            f"exit status of process {self._pid} is unavailable (not a child)",
        )
