"""Process handle primitives."""

from proclife.lib.process.bridge import ExitWaitBridge, ExitWaitBridgeEc
from proclife.lib.process.errors import (
    ErrorSlot,
    InvalidPidError,
    MisuseError,
    Outcome,
    ProcessError,
    SignalDeliveryError,
    SpawnError,
    WaitError,
)
from proclife.lib.process.exit_codes import describe_exit, portable_exit_code
from proclife.lib.process.handle import Ownership, ProcessHandle, ProcessState
from proclife.lib.process.launch import ProcessArgs, ProcessStdio
from proclife.lib.process.native import AttachedProcessRef, ChildProcessRef, NativeProcessRef
from proclife.lib.process.notify import ExitWatch
from proclife.lib.process.timeout import (
    DEFAULT_KILL_GRACE_SECONDS,
    ExitTimeoutError,
    shutdown_process,
    wait_for_exit,
)

__all__ = [
    "DEFAULT_KILL_GRACE_SECONDS",
    "AttachedProcessRef",
    "ChildProcessRef",
    "ErrorSlot",
    "ExitTimeoutError",
    "ExitWaitBridge",
    "ExitWaitBridgeEc",
    "ExitWatch",
    "InvalidPidError",
    "MisuseError",
    "NativeProcessRef",
    "Outcome",
    "Ownership",
    "ProcessArgs",
    "ProcessError",
    "ProcessHandle",
    "ProcessState",
    "ProcessStdio",
    "SignalDeliveryError",
    "SpawnError",
    "WaitError",
    "describe_exit",
    "portable_exit_code",
    "shutdown_process",
    "wait_for_exit",
]
