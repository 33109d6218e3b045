"""Native and portable exit-code conversions."""

from __future__ import annotations

import os
import signal

from proclife.lib.types import NativeExitCode, PortableExitCode

SIGNAL_EXIT_BASE = 128


def native_from_wait_status(status: int) -> NativeExitCode:
    """Decode a raw `waitpid` status into a native (returncode-style) code."""

    return NativeExitCode(os.waitstatus_to_exitcode(status))


def portable_exit_code(native_exit_code: int) -> PortableExitCode:
    """Map a native exit code to the portable form.

    Signal deaths (negative native codes) become ``128 + signum``, matching
    what a POSIX shell reports; plain exit statuses are unchanged.
    """

    if native_exit_code < 0:
        return PortableExitCode(SIGNAL_EXIT_BASE - native_exit_code)
    return PortableExitCode(native_exit_code)


def exit_signal(native_exit_code: int) -> signal.Signals | None:
    """Return the signal that killed the process, if any."""

    if native_exit_code >= 0:
        return None
    try:
        return signal.Signals(-native_exit_code)
    except ValueError:
        return None


def describe_exit(native_exit_code: int | None) -> str:
    if native_exit_code is None:
        return "running"
    signum = exit_signal(native_exit_code)
    if signum is not None:
        return f"killed by {signum.name}"
    if native_exit_code < 0:
        return f"killed by signal {-native_exit_code}"
    return f"exited with status {native_exit_code}"
