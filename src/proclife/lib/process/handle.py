"""Process handles: ownership, exit-status caching and termination policy."""

from __future__ import annotations

import asyncio
import errno
import functools
import os
import signal
import sys
from collections.abc import Sequence
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from proclife.lib.config.settings import ProcLifeConfig
from proclife.lib.process.bridge import ExitWaitBridge, ExitWaitBridgeEc
from proclife.lib.process.errors import (
    ErrorSlot,
    InvalidPidError,
    MisuseError,
    Outcome,
    ProcessError,
    SignalDeliveryError,
    SpawnError,
    WaitError,
)
from proclife.lib.process.exit_codes import describe_exit, portable_exit_code
from proclife.lib.process.launch import ProcessArgs, spawn_native
from proclife.lib.process.native import (
    AttachedProcessRef,
    ChildProcessRef,
    NativeProcessRef,
    open_pidfd,
)
from proclife.lib.process.notify import ExitCallback, ExitWatch
from proclife.lib.process.signals import probe_pid
from proclife.lib.types import NativeExitCode, Pid, PortableExitCode

if TYPE_CHECKING:
    from types import TracebackType

logger = structlog.get_logger(__name__)


class Ownership(StrEnum):
    OWNED = "owned"
    DETACHED = "detached"
    ATTACHED = "attached"


class ProcessState(StrEnum):
    INVALID = "invalid"
    OPEN = "open"
    EXITED = "exited"
    DETACHED = "detached"


def _spawn_outcome(
    exe: str | os.PathLike[str],
    args: Sequence[str],
    process_args: ProcessArgs | None,
    config: ProcLifeConfig,
) -> Outcome[ChildProcessRef]:
    try:
        return Outcome(spawn_native(exe, args, process_args, use_pidfd=config.use_pidfd))
    except SpawnError as exc:
        return Outcome(error=exc)


def _attach_outcome(
    pid: int,
    pidfd: int | None,
    config: ProcLifeConfig,
) -> Outcome[AttachedProcessRef]:
    if pid <= 0:
        return Outcome(error=InvalidPidError(errno.ESRCH, f"invalid pid {pid}", pid=pid))
    if pidfd is None:
        try:
            pidfd = open_pidfd(pid) if config.use_pidfd else None
        except ProcessLookupError as exc:
            return Outcome(
                error=InvalidPidError.from_os_error(exc, action=f"attach to pid {pid}", pid=pid)
            )
        if pidfd is None and not probe_pid(pid):
            return Outcome(
                error=InvalidPidError(errno.ESRCH, f"no process with pid {pid}", pid=pid)
            )
    return Outcome(
        AttachedProcessRef(
            Pid(pid),
            pidfd=pidfd,
            poll_interval_seconds=config.poll_interval_seconds,
        )
    )


class ProcessHandle:
    """Handle for one OS process, spawned here or attached by pid.

    The handle caches the exit code the first time exit is observed and
    answers later queries from the cache. Unless detached, closing the
    handle (explicitly, via ``with`` or on garbage collection) kills a
    process that is still running, without waiting for it.

    Every signal and wait operation accepts an optional `ErrorSlot`. Without
    one, failures raise; with one, they are written into the slot and a
    neutral value is returned. `MisuseError` is always raised.

    A handle is not safe for concurrent mutation from several threads or
    tasks; at most one asynchronous wait may be outstanding.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        native: NativeProcessRef | None = None,
        *,
        ownership: Ownership = Ownership.OWNED,
        config: ProcLifeConfig | None = None,
    ) -> None:
        self._loop = loop
        self._native = native
        self._ownership = ownership
        self._config = config or ProcLifeConfig()
        self._pid: Pid | None = native.pid if native is not None else None
        self._native_exit_code: NativeExitCode | None = None
        self._watch: ExitWatch | None = None

    @classmethod
    def spawn(
        cls,
        exe: str | os.PathLike[str],
        args: Sequence[str] = (),
        process_args: ProcessArgs | None = None,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        config: ProcLifeConfig | None = None,
        err: ErrorSlot | None = None,
    ) -> ProcessHandle:
        """Launch a process and return an owning handle (invalid on reported failure)."""

        resolved = config or ProcLifeConfig()
        native = _spawn_outcome(exe, args, process_args, resolved).report(err)
        if native is None:
            return cls(loop, config=resolved)
        return cls(loop, native, ownership=Ownership.OWNED, config=resolved)

    @classmethod
    def attach(
        cls,
        pid: int,
        native_handle: int | None = None,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        config: ProcLifeConfig | None = None,
        err: ErrorSlot | None = None,
    ) -> ProcessHandle:
        """Attach to a running process; *native_handle* is an open pidfd to adopt."""

        resolved = config or ProcLifeConfig()
        native = _attach_outcome(pid, native_handle, resolved).report(err)
        if native is None:
            return cls(loop, config=resolved)
        logger.debug("Attached to process.", pid=pid, pidfd=native.pidfd)
        return cls(loop, native, ownership=Ownership.ATTACHED, config=resolved)

    @classmethod
    def invalid(cls, loop: asyncio.AbstractEventLoop | None = None) -> ProcessHandle:
        return cls(loop)

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """The executor that delivers completions; bound to the running loop on first use."""

        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def config(self) -> ProcLifeConfig:
        return self._config

    @property
    def native(self) -> NativeProcessRef | None:
        return self._native

    @property
    def pid(self) -> Pid | None:
        return self._pid

    @property
    def is_open(self) -> bool:
        return self._native is not None

    @property
    def ownership(self) -> Ownership:
        return self._ownership

    @property
    def state(self) -> ProcessState:
        if self._ownership is Ownership.DETACHED:
            return ProcessState.DETACHED
        if self._native is None:
            return ProcessState.INVALID
        if self._native_exit_code is not None:
            return ProcessState.EXITED
        return ProcessState.OPEN

    @property
    def exit_code(self) -> PortableExitCode | None:
        """Portable exit code, or None until exit has been observed."""

        if self._native_exit_code is None:
            return None
        return portable_exit_code(self._native_exit_code)

    @property
    def native_exit_code(self) -> NativeExitCode | None:
        return self._native_exit_code

    def interrupt(self, err: ErrorSlot | None = None) -> None:
        """Ask the process to interrupt itself. It may ignore the request."""

        self._signal(self._config.interrupt_signum, "interrupt").report(err)

    def request_exit(self, err: ErrorSlot | None = None) -> None:
        """Ask the process to shut down gracefully. It may ignore the request."""

        self._signal(self._config.request_exit_signum, "request exit").report(err)

    def terminate(self, err: ErrorSlot | None = None) -> int | None:
        """Kill the process, wait for it and return the portable exit code."""

        native = self._require_open("terminate")
        self._check_blocking_allowed("terminate")
        return self._terminate(native).report(err)

    def wait(self, err: ErrorSlot | None = None) -> int | None:
        """Block until the process exits and return the portable exit code."""

        native = self._require_open("wait")
        self._check_blocking_allowed("wait")
        return self._wait(native).report(err)

    def running(self, err: ErrorSlot | None = None) -> bool:
        native = self._require_open("check running")
        return bool(self._running(native).report(err))

    def async_wait(self, callback: ExitCallback) -> ExitWatch:
        """Register *callback* for ``(error, native_exit_code)`` once the process exits.

        The callback runs on the handle's loop after this call returns, even
        when the exit is already cached.
        """

        native = self._require_open("wait asynchronously")
        if self._watch is not None and self._watch.active:
            raise MisuseError("an asynchronous wait is already outstanding", pid=self._pid)
        watch = ExitWatch(
            self.loop,
            native,
            functools.partial(self._on_exit, callback),
            use_pidfd=self._config.use_pidfd,
        )
        if self._native_exit_code is not None:
            watch.start_completed(self._native_exit_code)
        else:
            watch.start()
        self._watch = watch
        return watch

    def wait_async(self, err: ErrorSlot | None = None) -> ExitWaitBridge:
        """Return an awaitable for the portable exit code.

        Use `asyncio.ensure_future` rather than `create_task` to run it as a task.
        """

        if err is None:
            return ExitWaitBridge(self)
        return ExitWaitBridgeEc(self, err)

    def detach(self) -> NativeProcessRef:
        """Give up ownership; the returned reference is the caller's to close."""

        native = self._require_open("detach")
        self._require_no_watch("detach")
        self._native = None
        self._ownership = Ownership.DETACHED
        logger.debug("Detached process.", pid=self._pid)
        return native

    def move(self) -> ProcessHandle:
        """Transfer this handle's process to a new handle, leaving this one invalid."""

        moved = ProcessHandle(self._loop, config=self._config)
        moved.assign(self)
        return moved

    def assign(self, other: ProcessHandle) -> None:
        """Close this handle, then take over *other*'s process."""

        if other is self:
            return
        other._require_no_watch("move")
        self.close()
        self._native = other._native
        self._ownership = other._ownership
        self._config = other._config
        self._pid = other._pid
        self._native_exit_code = other._native_exit_code
        self._watch = None
        if other._loop is not None:
            self._loop = other._loop
        other._reset()

    def close(self) -> None:
        """Apply the destruction policy and release the native reference."""

        native = self._native
        if native is None:
            return
        self._native = None
        watch, self._watch = self._watch, None
        if watch is not None:
            watch.abort(
                WaitError(errno.ECANCELED, "wait for exit: handle was closed", pid=self._pid)
            )
        try:
            if self._ownership is not Ownership.DETACHED and self._native_exit_code is None:
                self._kill_if_running(native)
        finally:
            try:
                native.close()
            except OSError:
                logger.debug("Failed to release native handle.", pid=self._pid, exc_info=True)

    def __enter__(self) -> ProcessHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        _ = (exc_type, exc, tb)
        self.close()

    def __del__(self) -> None:
        if getattr(self, "_native", None) is None:
            return
        try:
            self.close()
        except Exception:
            if sys.meta_path is None:
                # Interpreter shutdown: logging can no longer import anything.
                return
            logger.debug("Process handle finalizer failed.", pid=self._pid, exc_info=True)

    def __repr__(self) -> str:
        return (
            f"ProcessHandle(pid={self._pid}, state={self.state.value}, "
            f"ownership={self._ownership.value}, "
            f"exit={describe_exit(self._native_exit_code)!r})"
        )

    def _signal(self, signum: signal.Signals, action: str) -> Outcome[None]:
        native = self._require_open(action)
        if self._native_exit_code is not None:
            return Outcome(
                error=SignalDeliveryError(
                    errno.ESRCH,
                    f"{action}: process has already exited",
                    pid=self._pid,
                )
            )
        try:
            native.send_signal(signum, process_group=self._config.signal_process_group)
        except OSError as exc:
            self._store_from(native)
            return Outcome(
                error=SignalDeliveryError.from_os_error(exc, action=action, pid=self._pid)
            )
        logger.debug("Delivered signal.", pid=self._pid, signal=signum.name)
        return Outcome()

    def _terminate(self, native: NativeProcessRef) -> Outcome[int]:
        if self._native_exit_code is None:
            try:
                native.send_signal(
                    signal.SIGKILL,
                    process_group=self._config.signal_process_group,
                )
            except ProcessLookupError:
                # Exited on its own in the meantime; the wait below collects it.
                pass
            except OSError as exc:
                return Outcome(
                    error=SignalDeliveryError.from_os_error(exc, action="terminate", pid=self._pid)
                )
        return self._wait(native)

    def _wait(self, native: NativeProcessRef) -> Outcome[int]:
        if self._native_exit_code is not None:
            return Outcome(portable_exit_code(self._native_exit_code))
        try:
            native_exit_code = native.wait()
        except OSError as exc:
            return Outcome(error=WaitError.from_os_error(exc, action="wait", pid=self._pid))
        self._store_exit(native_exit_code)
        return Outcome(portable_exit_code(native_exit_code))

    def _running(self, native: NativeProcessRef) -> Outcome[bool]:
        if self._native_exit_code is not None:
            return Outcome(False)
        try:
            native_exit_code = native.poll()
        except OSError as exc:
            return Outcome(error=WaitError.from_os_error(exc, action="poll", pid=self._pid))
        if native_exit_code is None:
            return Outcome(True)
        self._store_exit(native_exit_code)
        return Outcome(False)

    def _on_exit(
        self,
        callback: ExitCallback,
        error: ProcessError | None,
        native_exit_code: int | None,
    ) -> None:
        # A watch aborted by close() may deliver after a newer one was started.
        if self._watch is not None and not self._watch.active:
            self._watch = None
        if error is None and native_exit_code is not None:
            self._store_exit(native_exit_code)
        callback(error, native_exit_code)

    def _kill_if_running(self, native: NativeProcessRef) -> None:
        try:
            if native.poll() is not None:
                return
            native.send_signal(signal.SIGKILL, process_group=self._config.signal_process_group)
        except OSError:
            logger.debug("Kill on close failed.", pid=self._pid, exc_info=True)
            return
        logger.info("Killed process on handle close.", pid=self._pid)

    def _store_exit(self, native_exit_code: int) -> None:
        if self._native_exit_code is not None:
            return
        self._native_exit_code = NativeExitCode(native_exit_code)
        logger.debug("Observed process exit.", pid=self._pid, exit=describe_exit(native_exit_code))

    def _store_from(self, native: NativeProcessRef) -> None:
        if native.returncode is not None:
            self._store_exit(native.returncode)

    def _require_open(self, action: str) -> NativeProcessRef:
        if self._native is None:
            raise MisuseError(f"cannot {action}: handle is {self.state.value}", pid=self._pid)
        return self._native

    def _require_no_watch(self, action: str) -> None:
        if self._watch is not None and self._watch.active:
            raise MisuseError(
                f"cannot {action}: an asynchronous wait is outstanding",
                pid=self._pid,
            )

    def _check_blocking_allowed(self, action: str) -> None:
        if self._watch is None or not self._watch.active:
            return
        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if running_loop is self._loop:
            raise MisuseError(
                f"cannot {action} on the event loop thread while an asynchronous wait "
                "is outstanding",
                pid=self._pid,
            )

    def _reset(self) -> None:
        self._native = None
        self._ownership = Ownership.OWNED
        self._pid = None
        self._native_exit_code = None
        self._watch = None
