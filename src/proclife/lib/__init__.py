"""Core proclife library exports."""

from proclife.lib.process import ErrorSlot, Ownership, ProcessArgs, ProcessHandle, ProcessStdio
from proclife.lib.types import NativeExitCode, Pid, PortableExitCode

__all__ = [
    "ErrorSlot",
    "NativeExitCode",
    "Ownership",
    "Pid",
    "PortableExitCode",
    "ProcessArgs",
    "ProcessHandle",
    "ProcessStdio",
]
