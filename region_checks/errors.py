from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from region_checks.definitions import ConnectionEntry, ErrorEntry, RequestEntry

# Attributes defined by the stdlib/driver exception types we meet in practice but not kept in __dict__.
_WELL_KNOWN_ATTRS = ("errno", "strerror", "filename", "code", "sqlstate", "reason")
_TRACE_KEYS = {"stack", "traceback", "__traceback__", "tb"}


class ProbeConfigError(RuntimeError):
    """Required configuration is missing; raised before any network activity."""


class PersistenceError(RuntimeError):
    """A telemetry write failed. `entry` holds the normalized driver error."""

    def __init__(self, entry: ErrorEntry) -> None:
        super().__init__(str(entry.get("message") or entry.get("name") or "persistence_error"))
        self.entry = entry


class H2ProbeError(Exception):
    def __init__(self, message: str, **fields: Any) -> None:
        super().__init__(message)
        for key, value in fields.items():
            setattr(self, key, value)


class AlpnMismatchError(H2ProbeError):
    pass


class ConnectionTerminatedError(H2ProbeError):
    pass


class StreamResetError(H2ProbeError):
    pass


class PendingStreamCancelledError(H2ProbeError):
    pass


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def _candidate_items(error: Any) -> list[tuple[str, Any]]:
    if error is None:
        return []
    if isinstance(error, str):
        return [("message", error)]
    if isinstance(error, Mapping):
        return [(str(k), v) for k, v in error.items()]
    if isinstance(error, BaseException):
        items: list[tuple[str, Any]] = [("name", type(error).__name__), ("message", str(error))]
        for attr in _WELL_KNOWN_ATTRS:
            try:
                items.append((attr, getattr(error, attr, None)))
            except Exception:
                continue
        items.extend((str(k), v) for k, v in vars(error).items())
        return items
    try:
        return [(str(k), v) for k, v in vars(error).items()]
    except TypeError:
        return [("message", str(error))]


def handle_error(error: Any, parent: ConnectionEntry | RequestEntry | None = None) -> ErrorEntry:
    """
    Flatten an arbitrary failure into a serializable record.

    Only scalar values survive; tracebacks and private attributes are dropped.
    When `parent` is given the record is appended to its error list.
    """
    entry: ErrorEntry = {}
    for key, value in _candidate_items(error):
        if key in _TRACE_KEYS or key.startswith("_"):
            continue
        if value is None or not _is_scalar(value):
            continue
        entry[key] = value

    if parent is not None:
        if isinstance(parent.errors, list):
            parent.errors.append(entry)
        else:
            parent.errors = [entry]

    return entry
