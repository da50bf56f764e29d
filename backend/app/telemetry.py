from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol
from urllib.parse import urlsplit, urlunsplit

import structlog

TELEMETRY_LOGGER_NAME = "link_saver.telemetry"
REDACTED = "[redacted]"
MAX_ATTRIBUTE_LENGTH = 160

# Attribute keys containing any of these fragments never reach the sink.
_REDACTED_KEY_FRAGMENTS: tuple[str, ...] = (
    "api_key",
    "authorization",
    "body",
    "content",
    "insight",
    "markdown",
    "payload",
    "secret",
    "summary",
    "text",
    "token",
)

AttributeValue = bool | int | float | str | None


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class NullSink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        del event_name, attributes


class LogSink:
    """Writes each event as one structlog record on the telemetry logger."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger(TELEMETRY_LOGGER_NAME)

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NullSink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        self.sink.emit(event_name=event_name, attributes=scrub_attributes(attributes))

    def emit_error(self, event_name: str, exc: BaseException, **attributes: Any) -> None:
        """Emit a failure event tagged with the exception type.

        Typed client errors carry ``retryable`` and ``status_code``; both are
        forwarded when present so dashboards can split transient failures out.
        """
        attributes["error_type"] = type(exc).__name__
        for name in ("retryable", "status_code"):
            value = getattr(exc, name, None)
            if value is not None:
                attributes[name] = value
        self.emit(event_name, **attributes)


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    if sink == "log":
        return TelemetryClient(enabled=True, sink=LogSink())

    logging.getLogger(TELEMETRY_LOGGER_NAME).warning(
        "unknown telemetry sink %r; telemetry disabled",
        sink,
    )
    return TelemetryClient.disabled()


def scrub_attributes(attributes: Mapping[str, Any]) -> dict[str, AttributeValue]:
    scrubbed: dict[str, AttributeValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(fragment in key for fragment in _REDACTED_KEY_FRAGMENTS):
            scrubbed[key] = REDACTED
        elif key.endswith("url") and isinstance(raw_value, str):
            scrubbed[key] = _scalar(_strip_query(raw_value))
        else:
            scrubbed[key] = _scalar(raw_value)
    return scrubbed


def _strip_query(url: str) -> str:
    # Query strings and fragments routinely carry tracking ids or signed tokens.
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return url
    if not parts.query and not parts.fragment:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def _scalar(value: Any) -> AttributeValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        compact = " ".join(value.split())
        if len(compact) > MAX_ATTRIBUTE_LENGTH:
            return compact[:MAX_ATTRIBUTE_LENGTH] + "..."
        return compact
    if isinstance(value, list | tuple | set | frozenset | dict):
        return len(value)
    return type(value).__name__
