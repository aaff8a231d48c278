from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Literal

import asyncpg
import structlog

from region_checks.config import ProbeConfig
from region_checks.definitions import ConnectionEntry, RequestEntry
from region_checks.errors import PersistenceError, handle_error


logger = structlog.get_logger(__name__)

UNKNOWN_REGION = "UNKNOWN_REGION"
RETENTION_DAYS = 7
PURGE_OK = 200

SqlType = Literal["int", "text", "json", "json[]"]

SCHEMA_SQL = """
create table if not exists "Connections" (
  "id" bigint generated always as identity primary key,
  "region" text,
  "startTime" timestamptz not null,
  "dnsLookupStart" int,
  "dnsLookupEnd" int,
  "tcpDone" int,
  "tlsDone" int,
  "errors" json[]
);

create table if not exists "Requests" (
  "connectionId" bigint not null references "Connections" ("id") on delete cascade,
  "filename" text not null,
  "requestSent" int,
  "responseStart" int,
  "responseEnd" int,
  "responseHeaders" json,
  "errors" json[]
);

create index if not exists "Connections_startTime_idx" on "Connections" ("startTime");
create index if not exists "Requests_connectionId_idx" on "Requests" ("connectionId");
"""

_EMPTY_REQUESTS = "select null::text, null::int, null::int, null::int, null::text, null::text[] where false"


def _quote(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def _json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def prepare_value_for_sql(value: Any, sql_type: SqlType) -> str:
    """
    Render one value as a SQL literal.

    Missing values render as `null` in every mode, and so does an empty
    list in `json[]` mode.
    """
    if value is None:
        return "null"

    if sql_type == "int":
        if isinstance(value, bool):
            return "null"
        try:
            return str(int(value))
        except (TypeError, ValueError):
            return "null"

    if sql_type == "text":
        return _quote(str(value))

    if sql_type == "json":
        return _quote(_json_text(value))

    if sql_type == "json[]":
        if isinstance(value, (list, tuple)) and len(value) > 0:
            return "array[" + ",".join(_quote(_json_text(v)) for v in value) + "]"

    return "null"


def region_from_event_source(source: str | None) -> str:
    parts = str(source or "").split("/")
    if len(parts) > 3 and parts[3]:
        return parts[3]
    return UNKNOWN_REGION


def iso_timestamp(start_time: float) -> str:
    dt = datetime.fromtimestamp(float(start_time), tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def select_logged_requests(requests: list[RequestEntry], allowed: set[str] | None) -> list[RequestEntry]:
    if allowed is None:
        return list(requests)
    return [r for r in requests if r.filename in allowed]


def render_request_values(requests: list[RequestEntry]) -> list[str]:
    rows: list[str] = []
    for request in requests:
        fields = [
            prepare_value_for_sql(request.filename, "text"),
            prepare_value_for_sql(request.request_sent, "int"),
            prepare_value_for_sql(request.response_start, "int"),
            prepare_value_for_sql(request.response_end, "int"),
            prepare_value_for_sql(request.response_headers, "json"),
            prepare_value_for_sql(request.errors, "json[]"),
        ]
        rows.append(f"({','.join(fields)})")
    return rows


def build_insert_query(
    *,
    region: str,
    start_time: float,
    connection: ConnectionEntry,
    requests: list[RequestEntry],
) -> str:
    """One statement: the connection row plus its request rows, committed together."""
    connection_values = [
        prepare_value_for_sql(region, "text"),
        prepare_value_for_sql(iso_timestamp(start_time), "text"),
        prepare_value_for_sql(connection.dns_lookup_start, "int"),
        prepare_value_for_sql(connection.dns_lookup_end, "int"),
        prepare_value_for_sql(connection.tcp_done, "int"),
        prepare_value_for_sql(connection.tls_done, "int"),
        prepare_value_for_sql(connection.errors, "json[]"),
    ]
    request_rows = render_request_values(requests)
    request_source = f"values {','.join(request_rows)}" if request_rows else _EMPTY_REQUESTS

    return f"""
    with connection as (
      insert into "Connections" (
        "region",
        "startTime",
        "dnsLookupStart",
        "dnsLookupEnd",
        "tcpDone",
        "tlsDone",
        "errors"
      ) values ({",".join(connection_values)})
      returning "id"
    ),
    requests (
      "filename",
      "requestSent",
      "responseStart",
      "responseEnd",
      "responseHeaders",
      "errors"
    ) as ({request_source})

    insert into "Requests" (
      "connectionId",
      "filename",
      "requestSent",
      "responseStart",
      "responseEnd",
      "responseHeaders",
      "errors"
    ) select
      "connection"."id",
      "filename",
      "requestSent"::int,
      "responseStart"::int,
      "responseEnd"::int,
      "responseHeaders"::json,
      "errors"::json[]
    from connection cross join requests;
    """


PURGE_QUERY = f"""
    delete from "Connections"
    where "startTime" < current_timestamp - interval '{RETENTION_DAYS} days';
"""


class TelemetryStore:
    """Write side of the telemetry database. Disabled when no host is configured."""

    def __init__(self, config: ProbeConfig, pool: Any | None = None) -> None:
        self.config = config
        self._pool = pool

    @property
    def enabled(self) -> bool:
        return self._pool is not None or bool(self.config.postgres.host)

    async def connect(self) -> None:
        if self._pool is not None or not self.config.postgres.host:
            return
        pg = self.config.postgres
        self._pool = await asyncpg.create_pool(
            host=pg.host,
            port=pg.port,
            database=pg.database,
            user=pg.user,
            password=pg.password,
            min_size=1,
            max_size=self.config.pool_size(),
        )
        logger.info("Telemetry database pool ready", host=pg.host, database=pg.database, max_size=self.config.pool_size())

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _execute(self, query: str) -> str:
        await self.connect()
        assert self._pool is not None
        try:
            return await self._pool.execute(query)
        except Exception as exc:
            entry = handle_error(exc)
            raise PersistenceError(entry) from exc

    async def ensure_schema(self) -> None:
        if not self.enabled:
            return
        await self._execute(SCHEMA_SQL)

    async def log_to_database(
        self,
        start_time: float,
        connection: ConnectionEntry,
        requests: list[RequestEntry],
    ) -> None:
        if not self.enabled:
            return

        region = region_from_event_source(os.getenv(self.config.event_source_env))
        logged = select_logged_requests(requests, self.config.logged_labels())
        query = build_insert_query(region=region, start_time=start_time, connection=connection, requests=logged)
        await self._execute(query)

    async def purge_old_data(self) -> int:
        if not self.enabled:
            return PURGE_OK
        status = await self._execute(PURGE_QUERY)
        logger.debug("Purged old telemetry", status=status)
        return PURGE_OK
