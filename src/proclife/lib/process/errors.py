"""Process error kinds and the raise-or-report result plumbing."""

from __future__ import annotations

import errno as errno_codes
import os
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class ProcessError(OSError):
    """Base class for failures observed while managing a process."""

    def __init__(self, code: int, message: str, *, pid: int | None = None) -> None:
        super().__init__(code, message)
        self.pid = pid

    @classmethod
    def from_os_error(
        cls,
        error: OSError,
        *,
        action: str,
        pid: int | None = None,
    ) -> ProcessError:
        code = error.errno if error.errno is not None else errno_codes.EIO
        detail = error.strerror or os.strerror(code)
        return cls(code, f"{action}: {detail}", pid=pid)


class SpawnError(ProcessError):
    """The OS could not create the process."""


class InvalidPidError(ProcessError):
    """An attach target does not resolve to an observable process."""


class SignalDeliveryError(ProcessError):
    """A signal could not be delivered to the process."""


class WaitError(ProcessError):
    """The exit status of the process could not be observed."""


class MisuseError(ProcessError, RuntimeError):
    """A handle was used in violation of its contract.

    This is a programming error: it is always raised, even by operations
    that were given an `ErrorSlot`.
    """

    def __init__(self, message: str, *, pid: int | None = None) -> None:
        super().__init__(errno_codes.EINVAL, message, pid=pid)


@dataclass(slots=True)
class ErrorSlot:
    """Caller-owned output slot for the error-reporting call convention."""

    error: ProcessError | None = None

    def __bool__(self) -> bool:
        return self.error is not None

    def clear(self) -> None:
        self.error = None


@dataclass(frozen=True, slots=True)
class Outcome(Generic[T]):
    """Result of one process operation: a value or a `ProcessError`."""

    value: T | None = None
    error: ProcessError | None = None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def report(self, err: ErrorSlot | None) -> T | None:
        """Raise on failure without *err*, otherwise record the error in it."""

        if err is None:
            return self.unwrap()
        err.error = self.error
        return self.value
