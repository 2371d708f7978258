import uuid
from datetime import datetime, timezone

from leadsync_worker import main as worker_main
from leadsync_worker.main import ping, sheets_realtime_sync


class _DummySession:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def test_ping_task() -> None:
    assert ping() == "pong"


def test_realtime_sync_rejects_malformed_collection_id() -> None:
    assert sheets_realtime_sync("not-a-uuid") == "invalid_collection_id"


def test_expire_call_requests_uses_current_time(monkeypatch) -> None:
    frozen = datetime(2026, 10, 19, 9, 5, tzinfo=timezone.utc)
    seen: list[datetime] = []

    def _expire(db, now):  # noqa: ANN001
        seen.append(now)
        return 3

    monkeypatch.setattr(worker_main, "SessionLocal", lambda: _DummySession())
    monkeypatch.setattr(worker_main, "_now", lambda: frozen)
    monkeypatch.setattr(worker_main, "expire_stale", _expire)

    assert worker_main.expire_call_requests() == 3
    assert seen == [frozen]


def test_realtime_sync_passes_collection_and_client(monkeypatch) -> None:
    collection_id = uuid.uuid4()
    client = object()
    calls: list[tuple[uuid.UUID, object]] = []

    def _run(db, target, sheets):  # noqa: ANN001
        calls.append((target, sheets))
        return "synced"

    monkeypatch.setattr(worker_main, "SessionLocal", lambda: _DummySession())
    monkeypatch.setattr(worker_main, "get_sheets_client", lambda: client)
    monkeypatch.setattr(worker_main, "run_background_sync", _run)

    assert sheets_realtime_sync(str(collection_id)) == "synced"
    assert calls == [(collection_id, client)]
