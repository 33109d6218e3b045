"""Repository-level operational config loader."""

from __future__ import annotations

import logging
import os
import signal
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import cast

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".proclife"
CONFIG_FILENAME = "config.toml"


@dataclass(frozen=True, slots=True)
class ProcLifeConfig:
    """Resolved operational configuration for process handles."""

    interrupt_signal: str = "SIGINT"
    request_exit_signal: str = "SIGTERM"
    signal_process_group: bool = False
    kill_grace_seconds: float = 2.0
    poll_interval_seconds: float = 0.05
    use_pidfd: bool = True

    @property
    def interrupt_signum(self) -> signal.Signals:
        return signal.Signals[self.interrupt_signal]

    @property
    def request_exit_signum(self) -> signal.Signals:
        return signal.Signals[self.request_exit_signal]


_SECTION_KEY_MAP: dict[str, dict[str, str]] = {
    "signals": {
        "interrupt": "interrupt_signal",
        "interrupt_signal": "interrupt_signal",
        "request_exit": "request_exit_signal",
        "request_exit_signal": "request_exit_signal",
        "process_group": "signal_process_group",
        "signal_process_group": "signal_process_group",
    },
    "timeouts": {
        "kill_grace_seconds": "kill_grace_seconds",
        "grace_seconds": "kill_grace_seconds",
        "poll_interval_seconds": "poll_interval_seconds",
    },
    "notify": {
        "use_pidfd": "use_pidfd",
        "pidfd": "use_pidfd",
    },
}

_TOP_LEVEL_KEY_MAP: dict[str, str] = {field.name: field.name for field in fields(ProcLifeConfig)}

_ENV_OVERRIDE_MAP: dict[str, str] = {
    "PROCLIFE_INTERRUPT_SIGNAL": "interrupt_signal",
    "PROCLIFE_REQUEST_EXIT_SIGNAL": "request_exit_signal",
    "PROCLIFE_SIGNAL_PROCESS_GROUP": "signal_process_group",
    "PROCLIFE_KILL_GRACE_SECONDS": "kill_grace_seconds",
    "PROCLIFE_POLL_INTERVAL_SECONDS": "poll_interval_seconds",
    "PROCLIFE_USE_PIDFD": "use_pidfd",
}

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off"})


def _expected_type_name(field_name: str) -> str:
    if field_name in {"signal_process_group", "use_pidfd"}:
        return "bool"
    if field_name in {"kill_grace_seconds", "poll_interval_seconds"}:
        return "float"
    return "signal"


def _normalize_signal_name(raw_value: str, *, source: str) -> str:
    normalized = raw_value.strip().upper()
    if not normalized:
        raise ValueError(f"Invalid value for '{source}': expected non-empty signal name.")
    if not normalized.startswith("SIG"):
        normalized = f"SIG{normalized}"
    try:
        signal.Signals[normalized]
    except KeyError as error:
        raise ValueError(
            f"Invalid value for '{source}': unknown signal {raw_value!r}."
        ) from error
    return normalized


def _coerce_file_value(*, field_name: str, raw_value: object, source: str) -> object:
    expected = _expected_type_name(field_name)
    if expected == "bool":
        if not isinstance(raw_value, bool):
            raise ValueError(
                f"Invalid value for '{source}': expected bool, got "
                f"{type(raw_value).__name__} ({raw_value!r})."
            )
        return raw_value

    if expected == "float":
        if isinstance(raw_value, bool) or not isinstance(raw_value, int | float):
            raise ValueError(
                f"Invalid value for '{source}': expected float, got "
                f"{type(raw_value).__name__} ({raw_value!r})."
            )
        if raw_value <= 0:
            raise ValueError(f"Invalid value for '{source}': expected a positive number.")
        return float(raw_value)

    if not isinstance(raw_value, str):
        raise ValueError(
            f"Invalid value for '{source}': expected str, got "
            f"{type(raw_value).__name__} ({raw_value!r})."
        )
    return _normalize_signal_name(raw_value, source=source)


def _coerce_env_value(*, field_name: str, raw_value: str, env_name: str) -> object:
    expected = _expected_type_name(field_name)
    if expected == "bool":
        normalized = raw_value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
        raise ValueError(
            f"Invalid environment override '{env_name}': expected bool, got {raw_value!r}."
        )

    if expected == "float":
        try:
            value = float(raw_value.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid environment override '{env_name}': expected float, got {raw_value!r}."
            ) from error
        if value <= 0:
            raise ValueError(
                f"Invalid environment override '{env_name}': expected a positive number."
            )
        return value

    return _normalize_signal_name(raw_value, source=env_name)


def _default_values() -> dict[str, object]:
    defaults = ProcLifeConfig()
    return {field.name: getattr(defaults, field.name) for field in fields(ProcLifeConfig)}


def _apply_toml_payload(
    *,
    values: dict[str, object],
    payload: dict[str, object],
    path: Path,
) -> None:
    for key, raw_value in payload.items():
        section_map = _SECTION_KEY_MAP.get(key)
        if section_map is not None:
            if not isinstance(raw_value, dict):
                raise ValueError(f"Invalid value for '{key}' in '{path}': expected table.")
            for section_key, section_value in cast("dict[str, object]", raw_value).items():
                field_name = section_map.get(section_key)
                if field_name is None:
                    logger.warning(
                        "Ignoring unknown proclife config key '%s.%s'.",
                        key,
                        section_key,
                    )
                    continue
                values[field_name] = _coerce_file_value(
                    field_name=field_name,
                    raw_value=section_value,
                    source=f"{key}.{section_key}",
                )
            continue

        field_name = _TOP_LEVEL_KEY_MAP.get(key)
        if field_name is None:
            logger.warning("Ignoring unknown proclife config key '%s'.", key)
            continue
        values[field_name] = _coerce_file_value(
            field_name=field_name,
            raw_value=raw_value,
            source=key,
        )


def _apply_env_overrides(values: dict[str, object]) -> None:
    for env_name, field_name in _ENV_OVERRIDE_MAP.items():
        raw_value = os.getenv(env_name)
        if raw_value is None:
            continue
        values[field_name] = _coerce_env_value(
            field_name=field_name,
            raw_value=raw_value,
            env_name=env_name,
        )


def _build_config(values: dict[str, object]) -> ProcLifeConfig:
    return ProcLifeConfig(
        interrupt_signal=cast("str", values["interrupt_signal"]),
        request_exit_signal=cast("str", values["request_exit_signal"]),
        signal_process_group=cast("bool", values["signal_process_group"]),
        kill_grace_seconds=cast("float", values["kill_grace_seconds"]),
        poll_interval_seconds=cast("float", values["poll_interval_seconds"]),
        use_pidfd=cast("bool", values["use_pidfd"]),
    )


def config_path(root: Path) -> Path:
    return root / CONFIG_DIRNAME / CONFIG_FILENAME


def load_config(root: Path | None = None) -> ProcLifeConfig:
    """Load `.proclife/config.toml` under *root* and apply environment overrides."""

    values = _default_values()
    path = config_path(root or Path.cwd())
    if path.is_file():
        payload_obj = tomllib.loads(path.read_text(encoding="utf-8"))
        payload = cast("dict[str, object]", payload_obj)
        _apply_toml_payload(values=values, payload=payload, path=path)

    _apply_env_overrides(values)
    return _build_config(values)
