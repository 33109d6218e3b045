"""Process handle lifecycle, signalling and destruction policy tests."""

from __future__ import annotations

import errno
import gc
import os
import signal
import subprocess
import sys
import time
import typing
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from proclife.lib.config.settings import ProcLifeConfig
from proclife.lib.process.errors import (
    ErrorSlot,
    InvalidPidError,
    MisuseError,
    SignalDeliveryError,
    SpawnError,
    WaitError,
)
from proclife.lib.process.handle import Ownership, ProcessHandle, ProcessState
from proclife.lib.process.launch import ProcessArgs, ProcessStdio
from proclife.lib.process.native import NativeProcessRef
from proclife.lib.types import NativeExitCode, Pid, PortableExitCode

if TYPE_CHECKING:
    from collections.abc import Callable

    from conftest import FakeProcessRef


def _pid_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _count_waits(monkeypatch: pytest.MonkeyPatch, handle: ProcessHandle) -> list[float | None]:
    native = handle.native
    assert native is not None
    original_wait = native.wait
    calls: list[float | None] = []

    def _counting_wait(timeout: float | None = None) -> int:
        calls.append(timeout)
        return original_wait(timeout)

    monkeypatch.setattr(native, "wait", _counting_wait)
    return calls


def _wait_until_exited(handle: ProcessHandle, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while handle.running():
        assert time.monotonic() < deadline, "process did not exit in time"
        time.sleep(0.01)


def test_wait_returns_exit_code_and_caches_it(
    monkeypatch: pytest.MonkeyPatch,
    config: ProcLifeConfig,
    python_code: Callable[[str], list[str]],
) -> None:
    with ProcessHandle.spawn(
        sys.executable, python_code("raise SystemExit(7)"), config=config
    ) as handle:
        calls = _count_waits(monkeypatch, handle)

        assert handle.wait() == 7
        assert handle.wait() == 7
        assert calls == [None]
        assert handle.exit_code == 7
        assert handle.native_exit_code == 7
        assert handle.is_open is True
        assert handle.state is ProcessState.EXITED
        assert handle.running() is False


def test_second_wait_does_not_query_the_os(fake_ref: Callable[..., FakeProcessRef]) -> None:
    native = fake_ref(exit_code=7)
    handle = ProcessHandle(native=native)

    assert handle.wait() == 7
    assert handle.wait() == 7
    assert handle.running() is False
    assert native.wait_calls == 1
    assert native.poll_calls == 0


def test_running_caches_exit_once_observed(fake_ref: Callable[..., FakeProcessRef]) -> None:
    native = fake_ref(exit_code=3, running_polls=2)
    handle = ProcessHandle(native=native)

    assert handle.running() is True
    assert handle.running() is True
    assert handle.exit_code is None
    assert handle.running() is False
    assert handle.exit_code == 3
    assert handle.running() is False
    assert handle.wait() == 3
    assert native.poll_calls == 3
    assert native.wait_calls == 0


def test_terminate_kills_and_populates_cache(
    monkeypatch: pytest.MonkeyPatch,
    config: ProcLifeConfig,
    sleeper_args: list[str],
) -> None:
    with ProcessHandle.spawn(sys.executable, sleeper_args, config=config) as handle:
        assert handle.running() is True

        assert handle.terminate() == 128 + signal.SIGKILL
        assert handle.native_exit_code == -signal.SIGKILL

        calls = _count_waits(monkeypatch, handle)
        assert handle.wait() == 137
        assert handle.terminate() == 137
        assert calls == []


def test_interrupt_ignored_then_terminate(
    config: ProcLifeConfig,
    ignorer_args: list[str],
) -> None:
    launch = ProcessArgs(stdio=ProcessStdio(stdout=subprocess.PIPE))
    with ProcessHandle.spawn(sys.executable, ignorer_args, launch, config=config) as handle:
        native = handle.native
        assert native is not None
        stdout = getattr(native, "stdout")
        assert stdout.readline().strip() == b"ready"

        handle.interrupt()
        time.sleep(0.2)
        assert handle.running() is True

        handle.terminate()
        assert handle.running() is False
        assert handle.exit_code == 137
        stdout.close()


def test_request_exit_sends_sigterm(sleeper_args: list[str]) -> None:
    with ProcessHandle.spawn(sys.executable, sleeper_args) as handle:
        handle.request_exit()
        assert handle.wait() == 128 + signal.SIGTERM
        assert handle.native_exit_code == -signal.SIGTERM


def test_interrupt_signal_is_configurable(sleeper_args: list[str]) -> None:
    config = ProcLifeConfig(interrupt_signal="SIGUSR1")
    with ProcessHandle.spawn(sys.executable, sleeper_args, config=config) as handle:
        handle.interrupt()
        assert handle.wait() == 128 + signal.SIGUSR1


def test_signal_after_exit_reports_delivery_error(
    python_code: Callable[[str], list[str]],
) -> None:
    with ProcessHandle.spawn(sys.executable, python_code("pass")) as handle:
        assert handle.wait() == 0

        with pytest.raises(SignalDeliveryError) as exc_info:
            handle.interrupt()
        assert exc_info.value.errno == errno.ESRCH

        err = ErrorSlot()
        handle.request_exit(err)
        assert isinstance(err.error, SignalDeliveryError)


def test_signal_to_unreaped_exit_caches_exit_code(
    python_code: Callable[[str], list[str]],
) -> None:
    with ProcessHandle.spawn(sys.executable, python_code("raise SystemExit(4)")) as handle:
        native = handle.native
        assert native is not None
        native.wait()

        err = ErrorSlot()
        handle.interrupt(err)
        assert isinstance(err.error, SignalDeliveryError)
        assert handle.exit_code == 4


def test_close_kills_owned_running_process(
    config: ProcLifeConfig,
    sleeper_args: list[str],
) -> None:
    handle = ProcessHandle.spawn(sys.executable, sleeper_args, config=config)
    native = handle.native
    assert native is not None

    handle.close()

    assert handle.is_open is False
    assert native.wait(timeout=5) == -signal.SIGKILL


def test_garbage_collection_kills_owned_process(sleeper_args: list[str]) -> None:
    handle = ProcessHandle.spawn(sys.executable, sleeper_args)
    native = handle.native
    assert native is not None

    del handle
    gc.collect()

    assert native.wait(timeout=5) == -signal.SIGKILL


def test_detached_process_survives_close(
    config: ProcLifeConfig,
    sleeper_args: list[str],
) -> None:
    handle = ProcessHandle.spawn(sys.executable, sleeper_args, config=config)
    native = handle.detach()

    assert handle.is_open is False
    assert handle.ownership is Ownership.DETACHED
    assert handle.state is ProcessState.DETACHED

    handle.close()
    del handle
    gc.collect()
    time.sleep(0.2)

    try:
        assert native.poll() is None
        assert _pid_exists(native.pid)
    finally:
        native.send_signal(signal.SIGKILL)
        native.wait(timeout=5)
        native.close()


def test_close_policy_with_fake_reference(fake_ref: Callable[..., FakeProcessRef]) -> None:
    owned_native = fake_ref(running_polls=1)
    ProcessHandle(native=owned_native).close()
    assert owned_native.signals == [signal.SIGKILL]
    assert owned_native.closed is True

    attached_native = fake_ref(running_polls=1)
    ProcessHandle(native=attached_native, ownership=Ownership.ATTACHED).close()
    assert attached_native.signals == [signal.SIGKILL]

    exited_native = fake_ref()
    exited = ProcessHandle(native=exited_native)
    exited.wait()
    exited.close()
    assert exited_native.signals == []

    detached_native = fake_ref(running_polls=1)
    detached = ProcessHandle(native=detached_native)
    assert detached.detach() is detached_native
    detached.close()
    assert detached_native.signals == []
    assert detached_native.closed is False


def test_detach_twice_is_misuse(fake_ref: Callable[..., FakeProcessRef]) -> None:
    handle = ProcessHandle(native=fake_ref())
    handle.detach()

    with pytest.raises(MisuseError):
        handle.detach()
    with pytest.raises(MisuseError):
        handle.wait(ErrorSlot())


def test_invalid_handle_is_a_placeholder() -> None:
    handle = ProcessHandle.invalid()

    assert handle.is_open is False
    assert handle.pid is None
    assert handle.exit_code is None
    assert handle.native_exit_code is None
    assert handle.state is ProcessState.INVALID
    with pytest.raises(MisuseError):
        handle.wait()
    with pytest.raises(MisuseError):
        handle.interrupt(ErrorSlot())
    with pytest.raises(MisuseError):
        handle.running()
    handle.close()


def test_assign_fills_placeholder(python_code: Callable[[str], list[str]]) -> None:
    placeholder = ProcessHandle.invalid()
    spawned = ProcessHandle.spawn(sys.executable, python_code("raise SystemExit(5)"))
    pid = spawned.pid

    placeholder.assign(spawned)

    assert spawned.is_open is False
    assert spawned.state is ProcessState.INVALID
    assert placeholder.pid == pid
    assert placeholder.ownership is Ownership.OWNED
    assert placeholder.wait() == 5

    moved = placeholder.move()
    assert placeholder.is_open is False
    assert moved.exit_code == 5
    moved.close()


def test_assign_closes_previous_process(
    fake_ref: Callable[..., FakeProcessRef],
) -> None:
    previous = fake_ref(pid=1, running_polls=1)
    handle = ProcessHandle(native=previous)

    handle.assign(ProcessHandle(native=fake_ref(pid=2, exit_code=9)))

    assert previous.signals == [signal.SIGKILL]
    assert handle.pid == 2
    assert handle.wait() == 9


def test_spawn_missing_executable(tmp_path: Path) -> None:
    missing = tmp_path / "does-not-exist"

    with pytest.raises(SpawnError) as exc_info:
        ProcessHandle.spawn(missing)
    assert exc_info.value.errno == errno.ENOENT

    err = ErrorSlot()
    handle = ProcessHandle.spawn(missing, err=err)
    assert isinstance(err.error, SpawnError)
    assert handle.is_open is False


def test_spawn_applies_process_args(
    tmp_path: Path,
    python_code: Callable[[str], list[str]],
) -> None:
    launch = ProcessArgs(
        stdio=ProcessStdio(stdout=subprocess.PIPE),
        start_dir=tmp_path,
        env={**os.environ, "PROCLIFE_PROBE": "wired"},
    )
    code = "import os; print(os.getcwd()); print(os.environ['PROCLIFE_PROBE'])"
    with ProcessHandle.spawn(sys.executable, python_code(code), launch) as handle:
        native = handle.native
        assert native is not None
        stdout = getattr(native, "stdout")
        lines = stdout.read().decode().splitlines()
        stdout.close()
        assert handle.wait() == 0

    assert Path(lines[0]).resolve() == tmp_path.resolve()
    assert lines[1] == "wired"


def test_attach_to_missing_pid_raises_invalid_pid(
    config: ProcLifeConfig,
    python_code: Callable[[str], list[str]],
) -> None:
    with ProcessHandle.spawn(sys.executable, python_code("pass")) as finished:
        finished.wait()
        gone_pid = finished.pid
    assert gone_pid is not None

    with pytest.raises(InvalidPidError):
        ProcessHandle.attach(gone_pid, config=config)
    with pytest.raises(InvalidPidError):
        ProcessHandle.attach(0, config=config)

    err = ErrorSlot()
    handle = ProcessHandle.attach(-1, config=config, err=err)
    assert isinstance(err.error, InvalidPidError)
    assert handle.is_open is False


def test_attach_to_own_child_reports_exit_code(
    config: ProcLifeConfig,
    python_code: Callable[[str], list[str]],
) -> None:
    child = subprocess.Popen([sys.executable, *python_code("raise SystemExit(3)")])

    with ProcessHandle.attach(child.pid, config=config) as handle:
        assert handle.ownership is Ownership.ATTACHED
        assert handle.pid == child.pid
        assert handle.wait() == 3
        assert handle.running() is False
    # The handle reaped the child; keep Popen from reaping it again.
    child.returncode = 3


def test_attach_to_non_child_observes_liveness(
    config: ProcLifeConfig,
    python_code: Callable[[str], list[str]],
    sleeper_args: list[str],
) -> None:
    launcher = python_code(
        f"""
        import subprocess, sys
        child = subprocess.Popen(
            [sys.executable, *{sleeper_args!r}],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        print(child.pid, flush=True)
        """
    )
    output = subprocess.run(
        [sys.executable, *launcher],
        capture_output=True,
        text=True,
        check=True,
        timeout=15,
    )
    grandchild = int(output.stdout.strip())

    handle = ProcessHandle.attach(grandchild, config=config)
    try:
        assert handle.running() is True
        handle.interrupt()
    finally:
        handle.detach().close()
        try:
            os.kill(grandchild, signal.SIGKILL)
        except ProcessLookupError:
            pass


def test_wait_error_is_reported_through_slot(fake_ref: Callable[..., FakeProcessRef]) -> None:
    native = fake_ref(wait_error=ChildProcessError(errno.ECHILD, "No child processes"))
    handle = ProcessHandle(native=native)

    with pytest.raises(WaitError) as exc_info:
        handle.wait()
    assert exc_info.value.errno == errno.ECHILD

    err = ErrorSlot()
    assert handle.wait(err) is None
    assert isinstance(err.error, WaitError)
    assert handle.exit_code is None
    handle.detach()


def test_repr_names_state_and_exit(fake_ref: Callable[..., FakeProcessRef]) -> None:
    handle = ProcessHandle(native=fake_ref(pid=77, exit_code=-signal.SIGKILL))
    handle.wait()

    assert repr(handle) == (
        "ProcessHandle(pid=77, state=exited, ownership=owned, exit='killed by SIGKILL')"
    )


def test_native_reference_requires_status_queries() -> None:
    with pytest.raises(TypeError):
        NativeProcessRef(Pid(1))  # type: ignore[abstract]


def test_exit_code_properties_are_typed() -> None:
    exit_hints = typing.get_type_hints(ProcessHandle.exit_code.fget)
    native_hints = typing.get_type_hints(ProcessHandle.native_exit_code.fget)

    assert exit_hints["return"] == PortableExitCode | None
    assert native_hints["return"] == NativeExitCode | None


def test_unclosed_handle_at_interpreter_exit_is_quiet(
    cli_env: dict[str, str],
    sleeper_args: list[str],
    python_code: Callable[[str], list[str]],
) -> None:
    script = python_code(
        f"""
        import sys
        from proclife.lib.process.handle import ProcessHandle

        handle = ProcessHandle.spawn(sys.executable, {sleeper_args!r})
        print(handle.pid, flush=True)
        """
    )
    completed = subprocess.run(
        [sys.executable, *script],
        env=cli_env,
        capture_output=True,
        text=True,
        check=False,
        timeout=15,
    )
    pid = int(completed.stdout.split()[0])
    try:
        assert completed.returncode == 0, completed.stderr
        assert "Exception ignored" not in completed.stderr
    finally:
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
