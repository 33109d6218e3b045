"""One-shot exit notifications delivered on an asyncio event loop."""

from __future__ import annotations

import asyncio
import os
import threading
from collections.abc import Callable

import structlog

from proclife.lib.process.errors import MisuseError, ProcessError, WaitError
from proclife.lib.process.native import NativeProcessRef

logger = structlog.get_logger(__name__)

ExitCallback = Callable[[ProcessError | None, int | None], None]


class ExitWatch:
    """Completion registration for one process exit.

    The callback receives ``(error, native_exit_code)`` on the loop, at most
    once, and never before `start()` has returned. Where the reference holds
    a pidfd a duplicate of it is registered with the loop's selector;
    otherwise a daemon thread blocks in `NativeProcessRef.wait` and hands the
    result back with `call_soon_threadsafe`.

    `start()` and `cancel()` must be called on the loop's thread. A watch
    still running when its handle is closed is completed through `abort()`.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        native: NativeProcessRef,
        callback: ExitCallback,
        *,
        use_pidfd: bool = True,
    ) -> None:
        self._loop = loop
        self._native = native
        self._callback = callback
        self._use_pidfd = use_pidfd
        self._fd: int | None = None
        self._scheduled: asyncio.Handle | None = None
        self._started = False
        self._active = False

    @property
    def active(self) -> bool:
        """True between `start()` and delivery or cancellation."""

        return self._active

    def start(self) -> None:
        self._begin()
        fd = self._dup_pidfd() if self._use_pidfd else None
        if fd is not None:
            try:
                self._loop.add_reader(fd, self._on_pidfd_ready)
            except NotImplementedError:
                os.close(fd)
            except BaseException:
                os.close(fd)
                self._active = False
                raise
            else:
                self._fd = fd
                return

        thread = threading.Thread(
            target=self._wait_in_thread,
            name=f"proclife-wait-{self._native.pid}",
            daemon=True,
        )
        try:
            thread.start()
        except BaseException:
            self._active = False
            raise

    def start_completed(self, native_exit_code: int) -> None:
        """Deliver an exit that is already known, still through the loop."""

        self._begin()
        self._scheduled = self._loop.call_soon(self._deliver, None, native_exit_code)

    def cancel(self) -> bool:
        """Drop the registration; the callback will not run. False if already done."""

        if not self._active:
            return False
        self._active = False
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None
        self._remove_reader()
        logger.debug("Cancelled exit watch.", pid=self._native.pid)
        return True

    def abort(self, error: ProcessError) -> bool:
        """Complete the registration with *error* instead of the exit status.

        Unlike `cancel()`, the callback still runs (on the loop, never inline),
        so whoever awaits the exit is resumed. False if already done.
        """

        if not self._active:
            return False
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None
        self._remove_reader()
        if self._loop.is_closed():
            self._active = False
            return True
        # Callable from a finalizer on any thread.
        self._scheduled = self._loop.call_soon_threadsafe(self._deliver, error, None)
        logger.debug("Aborted exit watch.", pid=self._native.pid, error=str(error))
        return True

    def _begin(self) -> None:
        if self._started:
            raise MisuseError("exit watch already started", pid=self._native.pid)
        if self._loop.is_closed():
            raise MisuseError("event loop is closed", pid=self._native.pid)
        self._started = True
        self._active = True

    def _dup_pidfd(self) -> int | None:
        pidfd = self._native.pidfd
        if pidfd is None:
            return None
        return os.dup(pidfd)

    def _remove_reader(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            if not self._loop.is_closed():
                self._loop.remove_reader(fd)
        finally:
            os.close(fd)

    def _on_pidfd_ready(self) -> None:
        try:
            native_exit_code = self._native.poll()
        except OSError as exc:
            self._remove_reader()
            self._deliver(
                WaitError.from_os_error(exc, action="wait for exit", pid=self._native.pid),
                None,
            )
            return
        if native_exit_code is None:
            # Another thread holds the reap; the reader is level-triggered.
            return
        self._remove_reader()
        self._deliver(None, native_exit_code)

    def _wait_in_thread(self) -> None:
        error: ProcessError | None = None
        native_exit_code: int | None = None
        try:
            native_exit_code = self._native.wait()
        except OSError as exc:
            error = WaitError.from_os_error(exc, action="wait for exit", pid=self._native.pid)
        try:
            self._loop.call_soon_threadsafe(self._deliver, error, native_exit_code)
        except RuntimeError:
            logger.debug("Event loop closed before exit delivery.", pid=self._native.pid)

    def _deliver(self, error: ProcessError | None, native_exit_code: int | None) -> None:
        if not self._active:
            return
        self._active = False
        self._scheduled = None
        self._callback(error, native_exit_code)
