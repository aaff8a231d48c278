from __future__ import annotations

from fastapi.testclient import TestClient

from region_checks import app as app_module
from region_checks.app import create_app
from region_checks.config import ProbeConfig, ResourceConfig
from region_checks.definitions import ConnectionEntry, ProbeResult, RequestEntry
from region_checks.errors import PersistenceError


class _RecordingStore:
    def __init__(self, fail: bool = False) -> None:
        self.logged: list[tuple[float, ConnectionEntry, list[RequestEntry]]] = []
        self.fail = fail
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def log_to_database(self, start_time, connection, requests) -> None:
        if self.fail:
            raise PersistenceError({"message": "db down"})
        self.logged.append((start_time, connection, requests))


def _config(**kwargs) -> ProbeConfig:
    return ProbeConfig(
        hostname="https://example.com",
        resources=[ResourceConfig(path="/", label="index.html")],
        **kwargs,
    )


def _fake_probe(monkeypatch, result: ProbeResult) -> None:
    async def fake_run_probe(config):
        return result

    monkeypatch.setattr(app_module, "run_probe", fake_run_probe)


def test_check_persists_and_acknowledges(monkeypatch) -> None:
    # A probe full of failures is still a successful check.
    connection = ConnectionEntry(errors=[{"name": "ConnectionRefusedError"}])
    result = ProbeResult(start_time=1.0, connection=connection, requests=[RequestEntry(filename="index.html")])
    _fake_probe(monkeypatch, result)
    store = _RecordingStore()

    with TestClient(create_app(_config(), store=store)) as client:
        assert store.connected is True
        r = client.get("/check?ignored=1")

    assert r.status_code == 200
    assert r.headers["cache-control"] == "no-store"
    assert r.text.startswith("ok at ")
    assert int(r.text.split()[-1]) > 0
    assert store.logged == [(1.0, connection, result.requests)]


def test_persistence_failure_becomes_handler_error(monkeypatch) -> None:
    _fake_probe(monkeypatch, ProbeResult(start_time=1.0, connection=ConnectionEntry()))
    app = create_app(_config(), store=_RecordingStore(fail=True))

    with TestClient(app, raise_server_exceptions=False) as client:
        r = client.post("/check", content=b"anything")
    assert r.status_code == 500


def test_missing_hostname_is_a_handler_error() -> None:
    app = create_app(ProbeConfig(hostname=None), store=_RecordingStore())
    with TestClient(app, raise_server_exceptions=False) as client:
        r = client.get("/check")
    assert r.status_code == 500


def test_execution_timeout_returns_504(monkeypatch) -> None:
    import asyncio

    async def slow_probe(config):
        await asyncio.sleep(5)

    monkeypatch.setattr(app_module, "run_probe", slow_probe)
    app = create_app(_config(probe_timeout_seconds=0), store=_RecordingStore())
    with TestClient(app) as client:
        r = client.get("/check")
    assert r.status_code == 504


def test_check_accepts_any_method(monkeypatch) -> None:
    _fake_probe(monkeypatch, ProbeResult(start_time=1.0, connection=ConnectionEntry()))
    store = _RecordingStore()

    with TestClient(create_app(_config(), store=store)) as client:
        for method in ("PUT", "PATCH", "DELETE", "OPTIONS"):
            r = client.request(method, "/check", content=b"ignored")
            assert r.status_code == 200, method
            assert r.text.startswith("ok at ")
        head = client.head("/check")

    assert head.status_code == 200
    assert head.headers["cache-control"] == "no-store"
    assert len(store.logged) == 5
