from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Union

# Flat projection of a failure: scalar values only, never a traceback.
ErrorEntry = dict[str, Union[str, int, float, bool]]

ResponseHeaders = dict[str, str]


def _drop_unset(obj: Any) -> dict[str, Any]:
    return {k: v for k, v in asdict(obj).items() if v is not None}


@dataclass
class ConnectionEntry:
    """Connection lifecycle offsets in milliseconds since the probe started."""

    dns_lookup_start: int | None = None
    dns_lookup_end: int | None = None
    tcp_done: int | None = None
    tls_done: int | None = None
    errors: list[ErrorEntry] | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_unset(self)


@dataclass
class RequestEntry:
    """One fetched resource, keyed by its configured label."""

    filename: str
    request_sent: int | None = None
    response_start: int | None = None
    response_end: int | None = None
    response_headers: ResponseHeaders | None = None
    errors: list[ErrorEntry] | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_unset(self)


@dataclass(frozen=True)
class ProbeResult:
    start_time: float
    connection: ConnectionEntry
    requests: list[RequestEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": self.start_time,
            "connection": self.connection.to_dict(),
            "requests": [r.to_dict() for r in self.requests],
        }
