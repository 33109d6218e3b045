"""Shared pytest fixtures for process handle checks."""

from __future__ import annotations

import errno
import os
import signal
import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from proclife.lib.config.settings import ProcLifeConfig
from proclife.lib.process.native import NativeProcessRef
from proclife.lib.types import Pid

if TYPE_CHECKING:
    from collections.abc import Callable

PACKAGE_ROOT = Path(__file__).resolve().parents[1]


def python_args(code: str) -> list[str]:
    """Arguments for running *code* under the current interpreter."""

    return ["-c", textwrap.dedent(code)]


SLEEPER = python_args("import time; time.sleep(30)")

SIGNAL_IGNORER = python_args(
    """
    import signal, sys, time
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("ready", flush=True)
    time.sleep(30)
    """
)


class FakeProcessRef(NativeProcessRef):
    """Native reference that counts OS queries instead of making them."""

    def __init__(
        self,
        pid: int = 4242,
        *,
        exit_code: int = 0,
        running_polls: int = 0,
        wait_error: OSError | None = None,
    ) -> None:
        super().__init__(Pid(pid))
        self.exit_code = exit_code
        self.running_polls = running_polls
        self.wait_error = wait_error
        self.poll_calls = 0
        self.wait_calls = 0
        self.signals: list[signal.Signals] = []
        self.closed = False

    def poll(self) -> int | None:
        self.poll_calls += 1
        if self.poll_calls <= self.running_polls:
            return None
        self._returncode = self.exit_code
        return self.exit_code

    def wait(self, timeout: float | None = None) -> int:
        _ = timeout
        self.wait_calls += 1
        if self.wait_error is not None:
            raise self.wait_error
        self._returncode = self.exit_code
        return self.exit_code

    def send_signal(self, signum: signal.Signals, *, process_group: bool = False) -> None:
        _ = process_group
        if self._returncode is not None:
            raise ProcessLookupError(errno.ESRCH, "No such process")
        self.signals.append(signum)
        if signum == signal.SIGKILL:
            self.exit_code = -signal.SIGKILL

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def package_root() -> Path:
    return PACKAGE_ROOT


@pytest.fixture(params=[True, False], ids=["pidfd", "thread"])
def config(request: pytest.FixtureRequest) -> ProcLifeConfig:
    """Configuration for both exit-notification strategies."""

    return ProcLifeConfig(use_pidfd=request.param)


@pytest.fixture
def python_code() -> Callable[[str], list[str]]:
    return python_args


@pytest.fixture
def sleeper_args() -> list[str]:
    return list(SLEEPER)


@pytest.fixture
def ignorer_args() -> list[str]:
    return list(SIGNAL_IGNORER)


@pytest.fixture
def fake_ref() -> Callable[..., FakeProcessRef]:
    return FakeProcessRef


@dataclass(frozen=True, slots=True)
class CliResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


@pytest.fixture
def cli_env(package_root: Path) -> dict[str, str]:
    env = os.environ.copy()
    existing = env.get("PYTHONPATH", "")
    root = str(package_root / "src")
    env["PYTHONPATH"] = root if not existing else f"{root}:{existing}"
    return env


@pytest.fixture
def run_proclife(
    package_root: Path,
    cli_env: dict[str, str],
    tmp_path: Path,
) -> Callable[..., CliResult]:
    def _run(args: list[str], timeout: float = 15.0) -> CliResult:
        completed = subprocess.run(
            [sys.executable, "-m", "proclife", *args],
            cwd=tmp_path,
            env=cli_env,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
        return CliResult(
            args=tuple(args),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

    return _run
