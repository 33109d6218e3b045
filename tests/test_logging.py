import json
import logging
from collections.abc import Iterator

import pytest
import structlog

from proclife.lib.logging import configure_logging, level_for_verbosity


@pytest.fixture
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.parametrize(
    ("verbosity", "level"),
    [
        (-1, logging.WARNING),
        (0, logging.WARNING),
        (1, logging.INFO),
        (2, logging.DEBUG),
        (5, logging.DEBUG),
    ],
)
def test_level_for_verbosity(verbosity: int, level: int) -> None:
    assert level_for_verbosity(verbosity) == level


@pytest.mark.usefixtures("restore_logging")
def test_json_events_go_to_stderr_with_tracebacks(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(json_mode=True, verbosity=2)
    log = structlog.get_logger("proclife.tests")

    try:
        raise ProcessLookupError(3, "No such process")
    except ProcessLookupError:
        log.debug("Kill on close failed.", pid=42, exc_info=True)

    captured = capsys.readouterr()
    assert captured.out == ""
    event = json.loads(captured.err.strip().splitlines()[-1])
    assert event["event"] == "Kill on close failed."
    assert event["level"] == "debug"
    assert event["pid"] == 42
    assert event["exception"][0]["exc_type"] == "ProcessLookupError"


@pytest.mark.usefixtures("restore_logging")
def test_default_verbosity_keeps_only_warnings(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging()
    structlog.get_logger("proclife.tests").info("Killed process on handle close.", pid=7)
    logging.getLogger("proclife.lib.config.settings").warning("Ignoring unknown key.")

    captured = capsys.readouterr()
    assert "Killed process" not in captured.err
    assert "proclife: WARNING Ignoring unknown key." in captured.err
