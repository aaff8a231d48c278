from __future__ import annotations

import pytest

from region_checks.config import PostgresConfig, ProbeConfig, ResourceConfig
from region_checks.definitions import ConnectionEntry, RequestEntry
from region_checks.errors import PersistenceError
from region_checks.persistence import (
    PURGE_OK,
    PURGE_QUERY,
    UNKNOWN_REGION,
    TelemetryStore,
    build_insert_query,
    iso_timestamp,
    prepare_value_for_sql,
    region_from_event_source,
    select_logged_requests,
)


class _FakePool:
    def __init__(self, fail: Exception | None = None) -> None:
        self.queries: list[str] = []
        self.fail = fail
        self.closed = False

    async def execute(self, query: str) -> str:
        self.queries.append(query)
        if self.fail is not None:
            raise self.fail
        return "INSERT 0 1"

    async def close(self) -> None:
        self.closed = True


class _FakeDriverError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.sqlstate = "23503"
        self.detail = "Key is not present"


@pytest.mark.parametrize("n", [0, 7, 1234, -3])
def test_int_round_trip(n: int) -> None:
    assert int(prepare_value_for_sql(n, "int")) == n


@pytest.mark.parametrize("mode", ["int", "text", "json", "json[]"])
def test_missing_values_render_null(mode: str) -> None:
    assert prepare_value_for_sql(None, mode) == "null"


def test_text_and_json_escape_quotes() -> None:
    assert prepare_value_for_sql("o'clock", "text") == "'o''clock'"
    assert prepare_value_for_sql({"k": "it's"}, "json") == "'{\"k\":\"it''s\"}'"


def test_json_array_requires_non_empty_list() -> None:
    assert prepare_value_for_sql([], "json[]") == "null"
    rendered = prepare_value_for_sql([{"a": 1}, {"b": "x'y"}, {"c": True}], "json[]")
    assert rendered.startswith("array[") and rendered.endswith("]")
    assert rendered.count("','") + 1 == 3
    assert "x''y" in rendered


def test_region_from_event_source() -> None:
    assert region_from_event_source("//run.googleapis.com/asia-southeast1/services/check") == "asia-southeast1"
    assert region_from_event_source("a/b") == UNKNOWN_REGION
    assert region_from_event_source("") == UNKNOWN_REGION
    assert region_from_event_source(None) == UNKNOWN_REGION


def test_iso_timestamp_is_utc_with_millis() -> None:
    assert iso_timestamp(0) == "1970-01-01T00:00:00.000Z"
    assert iso_timestamp(1700000000.5) == "2023-11-14T22:13:20.500Z"


def test_insert_query_with_requests() -> None:
    conn = ConnectionEntry(dns_lookup_start=0, dns_lookup_end=3, tcp_done=10, tls_done=25)
    reqs = [
        RequestEntry(filename="index.html", request_sent=26, response_start=40, response_end=45,
                     response_headers={":status": "200"}),
        RequestEntry(filename="app.js", request_sent=26, errors=[{"name": "StreamResetError", "code": 8}]),
    ]
    query = build_insert_query(region="eu", start_time=0, connection=conn, requests=reqs)

    assert "values ('eu','1970-01-01T00:00:00.000Z',0,3,10,25,null)" in query
    assert "('index.html',26,40,45,'{\":status\":\"200\"}',null)" in query
    assert "('app.js',26,null,null,null,array['{\"name\":\"StreamResetError\",\"code\":8}'])" in query
    assert "from connection cross join requests" in query


def test_insert_query_without_requests_still_inserts_connection() -> None:
    conn = ConnectionEntry(errors=[{"message": "refused"}])
    query = build_insert_query(region="eu", start_time=0, connection=conn, requests=[])

    assert 'insert into "Connections"' in query
    assert "array['{\"message\":\"refused\"}']" in query
    assert "where false" in query
    assert "values ()" not in query


def test_select_logged_requests() -> None:
    reqs = [RequestEntry(filename="a"), RequestEntry(filename="b")]
    assert [r.filename for r in select_logged_requests(reqs, None)] == ["a", "b"]
    assert [r.filename for r in select_logged_requests(reqs, {"b"})] == ["b"]
    assert select_logged_requests(reqs, set()) == []


def _config(**kwargs) -> ProbeConfig:
    return ProbeConfig(
        hostname="https://example.com",
        resources=[
            ResourceConfig(path="/", label="index.html", log_to_database=True),
            ResourceConfig(path="/big.jpg", label="big.jpg", log_to_database=False),
        ],
        **kwargs,
    )


@pytest.mark.asyncio
async def test_log_to_database_is_noop_without_database() -> None:
    store = TelemetryStore(_config())
    assert store.enabled is False
    await store.log_to_database(0, ConnectionEntry(), [RequestEntry(filename="index.html")])
    assert await store.purge_old_data() == PURGE_OK


@pytest.mark.asyncio
async def test_log_to_database_filters_allow_list(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EVENTARC_CLOUD_EVENT_SOURCE", "//run.googleapis.com/us-central1/services/check")
    pool = _FakePool()
    store = TelemetryStore(_config(), pool=pool)

    await store.log_to_database(
        0,
        ConnectionEntry(tcp_done=1),
        [RequestEntry(filename="index.html", response_end=5), RequestEntry(filename="big.jpg", response_end=9)],
    )

    assert len(pool.queries) == 1
    query = pool.queries[0]
    assert "'us-central1'" in query
    assert "'index.html'" in query
    assert "big.jpg" not in query


@pytest.mark.asyncio
async def test_log_to_database_normalizes_and_raises_driver_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("EVENTARC_CLOUD_EVENT_SOURCE", raising=False)
    pool = _FakePool(fail=_FakeDriverError("insert violates foreign key"))
    store = TelemetryStore(_config(), pool=pool)

    with pytest.raises(PersistenceError) as info:
        await store.log_to_database(0, ConnectionEntry(), [])

    assert info.value.entry["sqlstate"] == "23503"
    assert info.value.entry["detail"] == "Key is not present"
    assert isinstance(info.value.__cause__, _FakeDriverError)
    assert f"'{UNKNOWN_REGION}'" in pool.queries[0]


@pytest.mark.asyncio
async def test_purge_old_data() -> None:
    pool = _FakePool()
    store = TelemetryStore(_config(), pool=pool)
    assert await store.purge_old_data() == PURGE_OK
    assert pool.queries == [PURGE_QUERY]
    assert "interval '7 days'" in PURGE_QUERY

    failing = TelemetryStore(_config(), pool=_FakePool(fail=_FakeDriverError("db down")))
    with pytest.raises(PersistenceError):
        await failing.purge_old_data()

    await store.close()
    assert pool.closed is True


def test_pool_size_tracks_region_count() -> None:
    assert _config().pool_size() == 10
    assert _config(regions=[f"r{i}" for i in range(12)]).pool_size() == 13
    assert _config(postgres=PostgresConfig(host="db", max_connections=4)).pool_size() == 4
