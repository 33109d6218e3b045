"""Stable process identifier newtypes."""

from typing import NewType

Pid = NewType("Pid", int)
NativeExitCode = NewType("NativeExitCode", int)
PortableExitCode = NewType("PortableExitCode", int)
