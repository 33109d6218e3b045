"""Signal delivery helpers for process handles."""

from __future__ import annotations

import os
import signal


def deliver_signal(pid: int, signum: signal.Signals, *, process_group: bool = False) -> None:
    """Send one signal to *pid*, or to its process group when it leads one.

    Only group leaders are signalled as a group so that a child sharing our
    own process group never takes the parent down with it. ProcessLookupError
    and PermissionError propagate to the caller.
    """

    if process_group:
        pgid = os.getpgid(pid)
        if pgid == pid:
            os.killpg(pgid, signum)
            return
    os.kill(pid, signum)


def probe_pid(pid: int) -> bool:
    """Return whether *pid* names a process we can observe (signal 0)."""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
