import errno

import pytest

from proclife.lib.process.errors import (
    ErrorSlot,
    MisuseError,
    Outcome,
    ProcessError,
    SignalDeliveryError,
    WaitError,
)


def test_outcome_raises_without_slot() -> None:
    failure = WaitError(errno.ECHILD, "gone", pid=12)

    with pytest.raises(WaitError) as exc_info:
        Outcome[int](error=failure).report(None)

    assert exc_info.value is failure
    assert Outcome(5).report(None) == 5


def test_outcome_writes_slot_and_returns_neutral_value() -> None:
    err = ErrorSlot()

    assert Outcome[int](error=WaitError(errno.EIO, "broken")).report(err) is None
    assert isinstance(err.error, WaitError)

    assert Outcome(3).report(err) == 3
    assert err.error is None
    assert not err


def test_from_os_error_keeps_errno_and_names_action() -> None:
    error = SignalDeliveryError.from_os_error(
        PermissionError(errno.EPERM, "Operation not permitted"),
        action="interrupt",
        pid=1,
    )

    assert isinstance(error, SignalDeliveryError)
    assert error.errno == errno.EPERM
    assert error.strerror == "interrupt: Operation not permitted"
    assert error.pid == 1


def test_misuse_is_a_runtime_and_process_error() -> None:
    error = MisuseError("cannot wait: handle is invalid")

    assert isinstance(error, ProcessError)
    assert isinstance(error, RuntimeError)
    assert error.errno == errno.EINVAL
