"""Cyclopts CLI entry point for proclife."""

from __future__ import annotations

import asyncio
import errno
import logging
import sys
from contextvars import ContextVar
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

from cyclopts import App, Parameter

from proclife import __version__
from proclife.cli.output import OutputConfig, normalize_output_format
from proclife.cli.output import emit as emit_output
from proclife.lib.config.settings import ProcLifeConfig, load_config
from proclife.lib.process.errors import ErrorSlot, ProcessError
from proclife.lib.process.exit_codes import describe_exit
from proclife.lib.process.handle import ProcessHandle
from proclife.lib.process.launch import ProcessArgs
from proclife.lib.process.timeout import wait_for_exit

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True, slots=True)
class ExitReport:
    """Exit status of one process as printed by the CLI."""

    pid: int | None
    exit_code: int | None
    native_exit_code: int | None
    status: str
    timed_out: bool = False


@dataclass(frozen=True, slots=True)
class StatusReport:
    pid: int | None
    running: bool
    ownership: str


class SignalKind(StrEnum):
    INTERRUPT = "interrupt"
    REQUEST_EXIT = "request-exit"
    TERMINATE = "terminate"


_OUTPUT: ContextVar[OutputConfig | None] = ContextVar("_OUTPUT", default=None)
_CONFIG: ContextVar[ProcLifeConfig | None] = ContextVar("_CONFIG", default=None)


def emit(payload: object) -> None:
    emit_output(payload, _OUTPUT.get() or OutputConfig(format="text"))


def _config() -> ProcLifeConfig:
    return _CONFIG.get() or ProcLifeConfig()


def _exit_report(
    handle: ProcessHandle,
    *,
    timed_out: bool = False,
    status: str | None = None,
) -> ExitReport:
    if status is None:
        status = describe_exit(handle.native_exit_code)
    if handle.native_exit_code is None and not handle.is_open:
        status = "detached"
    return ExitReport(
        pid=handle.pid,
        exit_code=handle.exit_code,
        native_exit_code=handle.native_exit_code,
        status=status,
        timed_out=timed_out,
    )


def _raise_unless_status_unavailable(err: ErrorSlot) -> None:
    """Re-raise *err* unless it only says the exit status of a non-child is unknown."""

    if err.error is None or err.error.errno == errno.ECHILD:
        return
    raise err.error


app = App(
    name="proclife",
    help="Spawn, watch and signal processes",
    version=__version__,
    help_formatter="plain",
)


@app.command(name="run")
def run(
    exe: str,
    *args: str,
    timeout: Annotated[
        float | None,
        Parameter(name="--timeout", help="Seconds before the process is shut down."),
    ] = None,
    grace: Annotated[
        float | None,
        Parameter(name="--grace", help="Seconds between exit request and kill on timeout."),
    ] = None,
    detach: Annotated[
        bool,
        Parameter(name="--detach", help="Leave the process running and print its pid."),
    ] = False,
    cwd: Annotated[
        str | None,
        Parameter(name="--cwd", help="Working directory for the process."),
    ] = None,
) -> None:
    """Run EXE with ARGS and report how it exited."""

    config = _config()
    launch = ProcessArgs(start_dir=Path(cwd)) if cwd is not None else ProcessArgs()
    kill_grace = grace if grace is not None else config.kill_grace_seconds

    async def _run() -> ExitReport:
        with ProcessHandle.spawn(exe, args, launch, config=config) as handle:
            if detach:
                native = handle.detach()
                native.close()
                return _exit_report(handle)
            try:
                await wait_for_exit(
                    handle,
                    timeout_seconds=timeout,
                    kill_grace_seconds=kill_grace,
                )
            except TimeoutError:
                return _exit_report(handle, timed_out=True)
            return _exit_report(handle)

    report = asyncio.run(_run())
    emit(report)
    if report.timed_out:
        raise SystemExit(TIMEOUT_EXIT_CODE)
    if report.exit_code:
        raise SystemExit(report.exit_code)


@app.command(name="wait")
def wait(pid: int) -> None:
    """Block until process PID exits and report its status."""

    handle = ProcessHandle.attach(pid, config=_config())
    try:
        err = ErrorSlot()
        handle.wait(err)
        _raise_unless_status_unavailable(err)
        emit(_exit_report(handle, status="exited, status unavailable" if err else None))
    finally:
        # Waiting never implies ownership of someone else's process.
        handle.detach().close()


@app.command(name="status")
def status(pid: int) -> None:
    """Report whether process PID is running."""

    handle = ProcessHandle.attach(pid, config=_config())
    try:
        emit(StatusReport(pid=handle.pid, running=handle.running(), ownership=handle.ownership))
    finally:
        handle.detach().close()


@app.command(name="signal")
def send_signal(
    pid: int,
    *,
    kind: Annotated[
        SignalKind,
        Parameter(name="--kind", help="interrupt, request-exit or terminate."),
    ] = SignalKind.REQUEST_EXIT,
) -> None:
    """Send an interrupt, exit request or kill to process PID."""

    handle = ProcessHandle.attach(pid, config=_config())
    try:
        if kind is SignalKind.INTERRUPT:
            handle.interrupt()
        elif kind is SignalKind.REQUEST_EXIT:
            handle.request_exit()
        else:
            err = ErrorSlot()
            handle.terminate(err)
            _raise_unless_status_unavailable(err)
        emit({"pid": handle.pid, "signal": kind.value, "delivered": True})
    finally:
        handle.detach().close()


def _operation_error_message(exc: Exception) -> str:
    if isinstance(exc, OSError) and exc.strerror:
        return exc.strerror
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__


def _extract_global_options(argv: Sequence[str]) -> tuple[list[str], OutputConfig]:
    json_mode = False
    output_format: str | None = None
    cleaned: list[str] = []

    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg == "--":
            cleaned.extend(argv[i:])
            break
        if arg == "--json":
            json_mode = True
            i += 1
            continue
        if arg == "--format":
            if i + 1 >= len(argv):
                raise SystemExit("--format requires a value")
            output_format = argv[i + 1]
            i += 2
            continue
        if arg.startswith("--format="):
            output_format = arg.partition("=")[2]
            i += 1
            continue
        if arg in {"--verbose", "-v"}:
            i += 1
            continue
        cleaned.append(arg)
        i += 1

    resolved = normalize_output_format(requested=output_format, json_mode=json_mode)
    return cleaned, OutputConfig(format=resolved)


def _verbosity(argv: Sequence[str]) -> int:
    count = 0
    for arg in argv:
        if arg == "--":
            break
        if arg in {"--verbose", "-v"}:
            count += 1
    return count


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point used by `proclife` and `python -m proclife`."""

    from proclife.lib.logging import configure_logging

    args = list(sys.argv[1:] if argv is None else argv)
    cleaned_args, output = _extract_global_options(args)
    configure_logging(json_mode=output.format == "json", verbosity=_verbosity(args))

    output_token = _OUTPUT.set(output)
    config_token = _CONFIG.set(None)
    try:
        try:
            _CONFIG.set(load_config(Path.cwd()))
            app(cleaned_args)
        except ProcessError as exc:
            print(f"error: {_operation_error_message(exc)}", file=sys.stderr)
            raise SystemExit(1) from None
        except (ValueError, OSError) as exc:
            print(f"error: {_operation_error_message(exc)}", file=sys.stderr)
            raise SystemExit(1) from None
    finally:
        _CONFIG.reset(config_token)
        _OUTPUT.reset(output_token)
