from __future__ import annotations

import asyncio
import socket
import ssl
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import urlsplit

import h2.config
import h2.connection
import h2.errors
import h2.events
import h2.settings
import structlog

from region_checks.clock import Clock
from region_checks.config import ProbeConfig, ResourceConfig
from region_checks.definitions import ConnectionEntry, ProbeResult, RequestEntry, ResponseHeaders
from region_checks.errors import (
    AlpnMismatchError,
    ConnectionTerminatedError,
    PendingStreamCancelledError,
    ProbeConfigError,
    StreamResetError,
    handle_error,
)


logger = structlog.get_logger(__name__)

DEFAULT_WINDOW_SIZE = 65535
# Parallel streams starve on the protocol default window; use 8x.
PROBE_WINDOW_SIZE = (1 << 16) * 8
READ_CHUNK_BYTES = 65536

Resolver = Callable[[str, int], Awaitable[list[tuple[Any, ...]]]]


@dataclass(frozen=True)
class Origin:
    scheme: str
    host: str
    port: int

    @property
    def authority(self) -> str:
        default_port = 443 if self.scheme == "https" else 80
        return self.host if self.port == default_port else f"{self.host}:{self.port}"


def parse_origin(hostname: str) -> Origin:
    s = str(hostname or "").strip()
    if "://" not in s:
        s = f"https://{s}"
    parts = urlsplit(s)
    scheme = (parts.scheme or "https").lower()
    if scheme not in ("http", "https"):
        raise ProbeConfigError(f"Unsupported origin scheme: {scheme!r}")
    host = (parts.hostname or "").strip()
    if not host:
        raise ProbeConfigError(f"Invalid origin hostname: {hostname!r}")
    port = int(parts.port or (443 if scheme == "https" else 80))
    return Origin(scheme=scheme, host=host, port=port)


async def system_resolver(host: str, port: int) -> list[tuple[Any, ...]]:
    loop = asyncio.get_running_loop()
    return await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)


def _headers_to_dict(headers: Iterable[tuple[Any, Any]]) -> ResponseHeaders:
    out: ResponseHeaders = {}
    for raw_name, raw_value in headers:
        name = raw_name.decode("utf-8", "replace") if isinstance(raw_name, bytes) else str(raw_name)
        value = raw_value.decode("utf-8", "replace") if isinstance(raw_value, bytes) else str(raw_value)
        name = name.lower()
        out[name] = f"{out[name]}, {value}" if name in out else value
    return out


class _ProbeConnection(h2.connection.H2Connection):
    """
    Client connection that keeps accepting frames after the peer's GOAWAY.

    h2 closes its state machine on GOAWAY and rejects any later frame, but the
    peer still owes responses for every stream up to ``last_stream_id``.
    """

    def _receive_goaway_frame(self, frame):
        state = self.state_machine.state
        frames, events = super()._receive_goaway_frame(frame)
        self.state_machine.state = state
        return frames, events


class _StreamObserver:
    def __init__(self, entry: RequestEntry) -> None:
        self.entry = entry
        self.done: asyncio.Future[RequestEntry] = asyncio.get_running_loop().create_future()

    def resolve(self) -> None:
        if not self.done.done():
            self.done.set_result(self.entry)


class H2Session:
    """
    One multiplexed HTTP/2 connection that stamps every lifecycle milestone.

    Connection milestones land on the ConnectionEntry, stream milestones on the
    RequestEntry of the stream. Failures become ErrorEntry records instead of
    exceptions, so sibling streams keep running.
    """

    def __init__(
        self,
        origin: Origin,
        connection: ConnectionEntry,
        clock: Clock,
        *,
        resolver: Resolver | None = None,
        ssl_context: ssl.SSLContext | None = None,
        window_size: int = PROBE_WINDOW_SIZE,
        extra_headers: list[tuple[str, str]] | None = None,
    ) -> None:
        self.origin = origin
        self.connection = connection
        self.clock = clock
        self._resolver = resolver or system_resolver
        self._ssl_context = ssl_context
        self._window_size = int(window_size)
        self._extra_headers = list(extra_headers or [])

        self._h2: h2.connection.H2Connection | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()
        self._streams: dict[int, _StreamObserver] = {}
        self._failure: BaseException | None = None
        self._goaway: ConnectionTerminatedError | None = None

    async def connect(self) -> None:
        host, port = self.origin.host, self.origin.port

        self.connection.dns_lookup_start = self.clock.elapsed()
        infos = await self._resolver(host, port)
        if not infos:
            raise socket.gaierror(socket.EAI_NONAME, f"no addresses for {host}")
        self.connection.dns_lookup_end = self.clock.elapsed()
        address = infos[0][4][0]

        self._reader, self._writer = await asyncio.open_connection(address, port)
        self.connection.tcp_done = self.clock.elapsed()

        if self.origin.scheme == "https":
            ctx = self._ssl_context or ssl.create_default_context()
            ctx.set_alpn_protocols(["h2"])
            await self._writer.start_tls(ctx, server_hostname=host)
            self.connection.tls_done = self.clock.elapsed()
            ssl_object = self._writer.get_extra_info("ssl_object")
            negotiated = ssl_object.selected_alpn_protocol() if ssl_object else None
            if negotiated != "h2":
                raise AlpnMismatchError(
                    "origin did not negotiate h2",
                    code="ERR_HTTP2_ERROR",
                    alpn=str(negotiated),
                )

        config = h2.config.H2Configuration(client_side=True, header_encoding="utf-8")
        self._h2 = _ProbeConnection(config=config)
        self._h2.local_settings = h2.settings.Settings(
            client=True,
            initial_values={
                h2.settings.SettingCodes.ENABLE_PUSH: 0,
                h2.settings.SettingCodes.INITIAL_WINDOW_SIZE: self._window_size,
            },
        )
        # Some servers reject the extended CONNECT setting outright.
        del self._h2.local_settings[h2.settings.SettingCodes.ENABLE_CONNECT_PROTOCOL]
        self._h2.initiate_connection()
        if self._window_size > DEFAULT_WINDOW_SIZE:
            self._h2.increment_flow_control_window(self._window_size - DEFAULT_WINDOW_SIZE)
        await self._flush()

        self._reader_task = asyncio.create_task(self._read_loop())

    async def request(self, resource: ResourceConfig, entry: RequestEntry) -> asyncio.Future[RequestEntry]:
        """Dispatch one GET stream; the returned future resolves on end or error."""
        observer = _StreamObserver(entry)

        # No new streams once the peer has sent GOAWAY or the connection is gone.
        cause = self._failure or self._goaway
        if cause is not None or self._h2 is None or self._writer is None:
            self._cancel(observer, cause)
            return observer.done

        try:
            stream_id = self._h2.get_next_available_stream_id()
            self._streams[stream_id] = observer
            headers = [
                (":method", "GET"),
                (":authority", self.origin.authority),
                (":scheme", self.origin.scheme),
                (":path", resource.path),
                ("accept-encoding", "gzip, deflate"),
                *self._extra_headers,
            ]
            async with self._write_lock:
                self._h2.send_headers(stream_id, headers, end_stream=True)
                self._writer.write(self._h2.data_to_send())
                # Stamped before yielding so a fast response can never precede it.
                entry.request_sent = self.clock.elapsed()
                await self._writer.drain()
        except Exception as exc:
            handle_error(exc, entry)
            observer.resolve()

        return observer.done

    async def _flush(self) -> None:
        if self._h2 is None or self._writer is None:
            return
        async with self._write_lock:
            data = self._h2.data_to_send()
            if data:
                self._writer.write(data)
                await self._writer.drain()

    async def _read_loop(self) -> None:
        assert self._reader is not None and self._h2 is not None
        try:
            while True:
                data = await self._reader.read(READ_CHUNK_BYTES)
                if not data:
                    if self._has_pending():
                        raise ConnectionTerminatedError("connection closed by peer", code="ECONNRESET")
                    # Clean close: nothing was left in flight.
                    self._failure = self._goaway or ConnectionTerminatedError(
                        "connection closed by peer", code="ECONNRESET"
                    )
                    return
                for event in self._h2.receive_data(data):
                    self._dispatch(event)
                await self._flush()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            handle_error(exc, self.connection)
            self._fail_pending(exc)

    def _dispatch(self, event: h2.events.Event) -> None:
        assert self._h2 is not None
        if isinstance(event, h2.events.ResponseReceived):
            observer = self._streams.get(event.stream_id)
            if observer is not None:
                observer.entry.response_start = self.clock.elapsed()
                observer.entry.response_headers = _headers_to_dict(event.headers)
        elif isinstance(event, h2.events.DataReceived):
            # Body bytes are drained, not kept; acknowledging reopens the window.
            self._h2.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
        elif isinstance(event, h2.events.StreamEnded):
            observer = self._streams.get(event.stream_id)
            if observer is not None:
                observer.entry.response_end = self.clock.elapsed()
                observer.resolve()
        elif isinstance(event, h2.events.StreamReset):
            observer = self._streams.get(event.stream_id)
            if observer is not None and not observer.done.done():
                error = StreamResetError(
                    "stream reset by peer",
                    code=int(event.error_code),
                    stream_id=int(event.stream_id),
                )
                handle_error(error, observer.entry)
                observer.resolve()
        elif isinstance(event, h2.events.ConnectionTerminated):
            last_stream_id = int(event.last_stream_id or 0)
            error = ConnectionTerminatedError(
                "connection terminated by peer",
                code=int(event.error_code),
                last_stream_id=last_stream_id,
            )
            self._goaway = error
            if event.error_code != h2.errors.ErrorCodes.NO_ERROR:
                handle_error(error, self.connection)
            # The peer never processed streams above last_stream_id; the rest still finish.
            for stream_id, observer in self._streams.items():
                if stream_id > last_stream_id and not observer.done.done():
                    self._cancel(observer, error)

    def _has_pending(self) -> bool:
        return any(not observer.done.done() for observer in self._streams.values())

    def _cancel(self, observer: _StreamObserver, cause: BaseException | None) -> None:
        message = "The pending stream has been canceled"
        if cause is not None:
            message = f"{message} (caused by: {cause})"
        handle_error(PendingStreamCancelledError(message, code="ERR_HTTP2_STREAM_CANCEL"), observer.entry)
        observer.resolve()

    def _fail_pending(self, cause: BaseException) -> None:
        self._failure = cause
        for observer in self._streams.values():
            if not observer.done.done():
                self._cancel(observer, cause)

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        if self._h2 is not None and self._failure is None:
            try:
                self._h2.close_connection()
                await self._flush()
            except Exception:
                pass
        if self._writer is not None:
            try:
                self._writer.close()
                await self._writer.wait_closed()
            except Exception:
                pass


async def run_probe(
    config: ProbeConfig,
    *,
    clock: Clock | None = None,
    resolver: Resolver | None = None,
    ssl_context: ssl.SSLContext | None = None,
) -> ProbeResult:
    """Fetch every configured resource over one HTTP/2 connection and collect timings."""
    if not config.hostname:
        raise ProbeConfigError("Missing configuration: hostname")
    origin = parse_origin(config.hostname)

    clock = clock or Clock()
    connection = ConnectionEntry()
    # Entries are pre-allocated by index so output order never depends on completion order.
    requests = [RequestEntry(filename=resource.label) for resource in config.resources]

    session = H2Session(
        origin,
        connection,
        clock,
        resolver=resolver,
        ssl_context=ssl_context,
        extra_headers=[(config.debug_header_name.lower(), config.debug_header_value)],
    )
    try:
        await session.connect()
        waiters = [await session.request(resource, entry) for resource, entry in zip(config.resources, requests)]
        await asyncio.gather(*waiters)
    except Exception as exc:
        handle_error(exc, connection)
        for entry in requests:
            if entry.response_end is None and not entry.errors:
                handle_error(
                    PendingStreamCancelledError(
                        f"The pending stream has been canceled (caused by: {exc})",
                        code="ERR_HTTP2_STREAM_CANCEL",
                    ),
                    entry,
                )
    finally:
        await session.close()

    logger.debug(
        "Probe finished",
        origin=origin.authority,
        resources=len(requests),
        connection_errors=len(connection.errors or []),
        request_errors=sum(len(r.errors or []) for r in requests),
    )
    return ProbeResult(start_time=clock.start_time, connection=connection, requests=requests)
