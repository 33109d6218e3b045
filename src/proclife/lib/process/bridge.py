"""Awaitables that turn one exit-callback registration into a suspension point."""

from __future__ import annotations

import asyncio
from collections.abc import Generator
from typing import TYPE_CHECKING, Any

from proclife.lib.process.errors import ErrorSlot, MisuseError, ProcessError
from proclife.lib.process.exit_codes import portable_exit_code

if TYPE_CHECKING:
    from proclife.lib.process.handle import ProcessHandle
    from proclife.lib.process.notify import ExitWatch


class ExitWaitBridge:
    """Await a process exit and return its portable exit code.

    The bridge is an explicit state object: a captured registration failure
    and a result slot filled by the completion callback. Awaiting it runs
    three phases:

    1. `ready()` always says no, so every wait goes through the loop even
       when the process is already gone.
    2. `suspend()` registers with `ProcessHandle.async_wait`. A failure to
       register is captured and the caller resumes inline.
    3. `resume()` turns the captured state into a return value or an
       exception.

    The completion callback keeps the bridge alive, so the slot outlives a
    caller that stops awaiting. Cancelling the awaiting task cancels the
    registration. Closing the handle completes the wait with a `WaitError`
    (ECANCELED). A bridge can be awaited once.

    The bridge is an awaitable, not a coroutine: schedule it as a task with
    `asyncio.ensure_future(handle.wait_async())` (or await it inside a
    coroutine passed to `asyncio.create_task`).
    """

    def __init__(self, handle: ProcessHandle) -> None:
        self._handle = handle
        self._result: tuple[ProcessError | None, int | None] | None = None
        self._error: BaseException | None = None
        self._future: asyncio.Future[None] | None = None
        self._watch: ExitWatch | None = None
        self._awaited = False

    def ready(self) -> bool:
        return False

    def suspend(self) -> bool:
        """Register for the exit; return False to resume without suspending."""

        try:
            self._future = self._handle.loop.create_future()
            self._watch = self._handle.async_wait(self._complete)
        except Exception as exc:
            self._error = exc
            return False
        return True

    def resume(self) -> int | None:
        if self._error is not None:
            error, self._error = self._error, None
            raise error
        if self._result is None:
            raise MisuseError("exit wait resumed before completion", pid=self._handle.pid)
        error, native_exit_code = self._result
        if error is not None:
            return self._on_error(error)
        if native_exit_code is None:
            raise MisuseError("exit wait completed without an exit code", pid=self._handle.pid)
        return portable_exit_code(native_exit_code)

    def _on_error(self, error: ProcessError) -> int | None:
        raise error

    def _complete(self, error: ProcessError | None, native_exit_code: int | None) -> None:
        self._result = (error, native_exit_code)
        if self._future is not None and not self._future.done():
            self._future.set_result(None)

    async def _wait(self) -> int | None:
        if self._awaited:
            raise MisuseError("exit wait already awaited", pid=self._handle.pid)
        self._awaited = True
        if not self.ready() and self.suspend():
            future = self._future
            if future is None:
                raise MisuseError("exit wait suspended without a future", pid=self._handle.pid)
            try:
                await future
            except asyncio.CancelledError:
                if self._watch is not None:
                    self._watch.cancel()
                raise
        return self.resume()

    def __await__(self) -> Generator[Any, None, int | None]:
        return self._wait().__await__()


class ExitWaitBridgeEc(ExitWaitBridge):
    """`ExitWaitBridge` that reports wait failures through an `ErrorSlot`.

    Registration failures are still raised; the slot only carries errors
    observed while waiting.
    """

    def __init__(self, handle: ProcessHandle, err: ErrorSlot) -> None:
        super().__init__(handle)
        self._err = err

    def resume(self) -> int | None:
        self._err.clear()
        return super().resume()

    def _on_error(self, error: ProcessError) -> int | None:
        self._err.error = error
        return None
