"""CLI output formatting utilities."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias, cast

from proclife.lib.serialization import to_jsonable

OutputFormat = Literal["text", "json"]
JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


@dataclass(frozen=True, slots=True)
class OutputConfig:
    format: OutputFormat


def _to_json_value(value: Any) -> JSONValue:
    return cast("JSONValue", to_jsonable(value))


def normalize_output_format(*, requested: str | None, json_mode: bool) -> OutputFormat:
    """Resolve final output format from flags."""

    if json_mode:
        return "json"
    if requested is None or requested == "":
        return "text"

    normalized = requested.strip().lower()
    if normalized in {"text", "json"}:
        return cast("OutputFormat", normalized)
    raise SystemExit("--format must be one of: text, json")


def _text_value(value: JSONValue) -> str:
    if value is None:
        return "-"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def emit(payload: Any, config: OutputConfig) -> None:
    """Write one command result to stdout."""

    value = _to_json_value(payload)
    if config.format == "json":
        print(json.dumps(value, sort_keys=True))
        return
    if isinstance(value, dict):
        mapping = cast("dict[str, JSONValue]", value)
        width = max((len(key) for key in mapping), default=0)
        for key in mapping:
            print(f"{key.ljust(width)}  {_text_value(mapping[key])}")
        return
    print(_text_value(value))
