"""Launch arguments and process creation."""

from __future__ import annotations

import errno
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

import structlog

from proclife.lib.process.errors import SpawnError
from proclife.lib.process.native import ChildProcessRef, open_pidfd

logger = structlog.get_logger(__name__)

StdioTarget = int | IO[bytes] | IO[str] | None


@dataclass(frozen=True, slots=True)
class ProcessStdio:
    """Standard-stream wiring; None inherits the parent's stream."""

    stdin: StdioTarget = None
    stdout: StdioTarget = None
    stderr: StdioTarget = None


def _current_environment() -> dict[str, str]:
    return dict(os.environ)


@dataclass(frozen=True, slots=True)
class ProcessArgs:
    """Externally resolved launch configuration for one process."""

    stdio: ProcessStdio = field(default_factory=ProcessStdio)
    start_dir: Path = field(default_factory=Path.cwd)
    env: Mapping[str, str] = field(default_factory=_current_environment)
    start_new_session: bool = False


def spawn_native(
    exe: str | os.PathLike[str],
    args: Sequence[str] = (),
    process_args: ProcessArgs | None = None,
    *,
    use_pidfd: bool = True,
) -> ChildProcessRef:
    """Launch *exe* with *args* and return a reference to the new child."""

    launch = process_args or ProcessArgs()
    command = [os.fspath(exe), *args]
    if not command[0]:
        raise SpawnError(errno.ENOENT, "Cannot spawn process: executable is empty.")

    try:
        popen = subprocess.Popen(
            command,
            stdin=launch.stdio.stdin,
            stdout=launch.stdio.stdout,
            stderr=launch.stdio.stderr,
            cwd=launch.start_dir,
            env=dict(launch.env),
            start_new_session=launch.start_new_session,
        )
    except OSError as exc:
        raise SpawnError.from_os_error(exc, action=f"spawn {command[0]!r}") from exc

    # Popen has not reaped the child yet, so the pid cannot have been recycled.
    pidfd = open_pidfd(popen.pid) if use_pidfd else None

    logger.debug("Spawned process.", pid=popen.pid, exe=command[0], pidfd=pidfd)
    return ChildProcessRef(popen, pidfd=pidfd)
