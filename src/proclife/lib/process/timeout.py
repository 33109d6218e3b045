"""Deadline helpers built on process handles."""

from __future__ import annotations

import asyncio

import structlog

from proclife.lib.config.settings import ProcLifeConfig
from proclife.lib.process.errors import ErrorSlot
from proclife.lib.process.handle import ProcessHandle

DEFAULT_KILL_GRACE_SECONDS = ProcLifeConfig().kill_grace_seconds
logger = structlog.get_logger(__name__)


class ExitTimeoutError(TimeoutError):
    """Raised when a process outlives the deadline given to `wait_for_exit`."""

    def __init__(self, timeout_seconds: float, *, exit_code: int | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self.exit_code = exit_code
        super().__init__(f"Process exceeded timeout after {timeout_seconds:.3f}s")


async def shutdown_process(
    handle: ProcessHandle,
    *,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> int | None:
    """Request a graceful exit and kill the process if it does not exit in time."""

    if handle.exit_code is not None:
        return handle.exit_code

    err = ErrorSlot()
    handle.request_exit(err)
    if err:
        # Already gone; the wait below collects the status.
        logger.debug("Exit request not delivered.", pid=handle.pid, error=str(err.error))
    try:
        return await asyncio.wait_for(handle.wait_async(), timeout=grace_seconds)
    except TimeoutError:
        logger.warning(
            "Process ignored exit request, killing.",
            pid=handle.pid,
            grace_seconds=grace_seconds,
        )
        return handle.terminate()


async def wait_for_exit(
    handle: ProcessHandle,
    *,
    timeout_seconds: float | None,
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> int | None:
    """Await process exit, shutting the process down when the deadline passes."""

    if timeout_seconds is None:
        return await handle.wait_async()

    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be > 0 when provided.")

    try:
        return await asyncio.wait_for(handle.wait_async(), timeout=timeout_seconds)
    except TimeoutError as exc:
        exit_code = await shutdown_process(handle, grace_seconds=kill_grace_seconds)
        raise ExitTimeoutError(timeout_seconds, exit_code=exit_code) from exc
