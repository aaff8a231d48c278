"""Multi-region HTTP/2 latency and error probes with PostgreSQL telemetry."""

from .config import ProbeConfig, ResourceConfig, load_config
from .definitions import ConnectionEntry, ProbeResult, RequestEntry
from .errors import handle_error

__all__ = [
    "ConnectionEntry",
    "ProbeConfig",
    "ProbeResult",
    "RequestEntry",
    "ResourceConfig",
    "handle_error",
    "load_config",
]
