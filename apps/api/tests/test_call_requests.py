from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from app.models import CallLog, CallLogStatus, CallRequest, CallRequestStatus
from app.services import call_requests
from app.services.push_channel import MobileChannelRegistry
from conftest import MEMBER_USER_ID, OTHER_ACCOUNT_ID, TEST_ACCOUNT_ID, TEST_USER_ID, make_collection, make_record

T0 = datetime(2026, 10, 19, 9, 0, 0, tzinfo=UTC)


class _RecordingRegistry(MobileChannelRegistry):
    def __init__(self, connected: bool = True) -> None:
        super().__init__()
        self.connected = connected
        self.pushed: list[tuple[str, str, dict[str, Any]]] = []

    def send(self, user_id: uuid.UUID | str, event: str, payload: dict[str, Any]) -> bool:
        self.pushed.append((str(user_id), event, payload))
        return self.connected


class _FakeSocket:
    def __init__(self) -> None:
        self.sent: list[Any] = []

    async def send_json(self, data: Any, mode: str = "text") -> None:
        self.sent.append(data)


@pytest.fixture()
def lead(db_session: Session, seeded_context: dict[str, str]):  # noqa: ANN201
    collection = make_collection(db_session)
    return make_record(db_session, collection, 0, display_name="Asha", phone_number="9876543210")


def _create(db: Session, lead, registry: MobileChannelRegistry | None = None, user_id: uuid.UUID = TEST_USER_ID):  # noqa: ANN001, ANN202
    return call_requests.create_request(
        db,
        registry or _RecordingRegistry(),
        user_id=user_id,
        account_id=TEST_ACCOUNT_ID,
        record_id=lead.id,
        phone_number=" 9876543210 ",
        display_name="Asha",
        now=T0,
    )


def test_create_request_pushes_to_mobile(db_session: Session, lead) -> None:  # noqa: ANN001
    registry = _RecordingRegistry()
    request, sent = _create(db_session, lead, registry)

    assert sent is True
    assert request.phone_number == "9876543210"
    assert request.status == CallRequestStatus.PENDING
    user_id, event, payload = registry.pushed[0]
    assert (user_id, event) == (str(TEST_USER_ID), "call:request")
    assert payload["request_id"] == str(request.id)
    assert payload["customer_name"] == "Asha"
    assert payload["expires_at"] == (T0 + timedelta(seconds=300)).isoformat()


def test_create_request_without_live_socket_still_persists(db_session: Session, lead) -> None:  # noqa: ANN001
    request, sent = _create(db_session, lead, _RecordingRegistry(connected=False))
    assert sent is False
    assert call_requests.get_request(db_session, TEST_USER_ID, request.id).id == request.id


def test_create_request_validates_input(db_session: Session, lead) -> None:  # noqa: ANN001
    with pytest.raises(HTTPException) as blank:
        call_requests.create_request(
            db_session, _RecordingRegistry(), TEST_USER_ID, TEST_ACCOUNT_ID, lead.id, "  ", "Asha"
        )
    assert blank.value.status_code == 400

    with pytest.raises(HTTPException) as foreign:
        call_requests.create_request(
            db_session, _RecordingRegistry(), TEST_USER_ID, OTHER_ACCOUNT_ID, lead.id, "9876543210", "Asha"
        )
    assert foreign.value.status_code == 404


def test_pending_request_expires_after_five_minutes(db_session: Session, lead) -> None:  # noqa: ANN001
    request, _ = _create(db_session, lead)

    assert call_requests.effective_status(request, T0 + timedelta(seconds=299)) == CallRequestStatus.PENDING
    assert call_requests.effective_status(request, T0 + timedelta(seconds=301)) == CallRequestStatus.EXPIRED
    with pytest.raises(HTTPException) as exc_info:
        call_requests.respond(db_session, TEST_USER_ID, request.id, "accept", now=T0 + timedelta(seconds=301))
    assert exc_info.value.status_code == 409
    assert call_requests.pending_for_user(db_session, TEST_USER_ID, now=T0 + timedelta(seconds=301)) == []


def test_accept_opens_pending_call_log_then_complete(db_session: Session, lead) -> None:  # noqa: ANN001
    request, _ = _create(db_session, lead)

    accepted = call_requests.respond(db_session, TEST_USER_ID, request.id, "accept", now=T0 + timedelta(seconds=10))
    assert accepted.status == CallRequestStatus.ACCEPTED
    assert accepted.accepted_at is not None
    log = db_session.scalar(select(CallLog).where(CallLog.record_id == lead.id))
    assert log is not None
    assert log.status == CallLogStatus.PENDING
    assert log.phone_number == "9876543210"

    with pytest.raises(HTTPException) as again:
        call_requests.respond(db_session, TEST_USER_ID, request.id, "reject", now=T0 + timedelta(seconds=20))
    assert again.value.status_code == 409

    completed = call_requests.complete(db_session, TEST_USER_ID, request.id, now=T0 + timedelta(seconds=600))
    assert completed.status == CallRequestStatus.COMPLETED
    assert call_requests.effective_status(completed, T0 + timedelta(days=1)) == CallRequestStatus.COMPLETED


def test_respond_checks_action_owner_and_existence(db_session: Session, lead) -> None:  # noqa: ANN001
    request, _ = _create(db_session, lead)

    with pytest.raises(HTTPException) as bad_action:
        call_requests.respond(db_session, TEST_USER_ID, request.id, "maybe", now=T0)
    with pytest.raises(HTTPException) as wrong_user:
        call_requests.respond(db_session, MEMBER_USER_ID, request.id, "accept", now=T0)
    with pytest.raises(HTTPException) as missing:
        call_requests.respond(db_session, TEST_USER_ID, uuid.uuid4(), "accept", now=T0)
    with pytest.raises(HTTPException) as not_accepted:
        call_requests.complete(db_session, TEST_USER_ID, request.id, now=T0)

    assert bad_action.value.status_code == 400
    assert wrong_user.value.status_code == 403
    assert missing.value.status_code == 404
    assert not_accepted.value.status_code == 409


def test_sweep_marks_only_stale_pending_requests(db_session: Session, lead) -> None:  # noqa: ANN001
    stale, _ = _create(db_session, lead)
    fresh, _ = call_requests.create_request(
        db_session,
        _RecordingRegistry(),
        TEST_USER_ID,
        TEST_ACCOUNT_ID,
        lead.id,
        "9876543210",
        "Asha",
        now=T0 + timedelta(seconds=200),
    )

    assert call_requests.expire_stale(db_session, now=T0 + timedelta(seconds=301)) == 1
    db_session.expire_all()
    assert call_requests.get_request(db_session, TEST_USER_ID, stale.id).status == CallRequestStatus.EXPIRED
    assert call_requests.get_request(db_session, TEST_USER_ID, fresh.id).status == CallRequestStatus.PENDING


def test_overlapping_responses_keep_the_first_outcome(
    db_session: Session, session_factory: sessionmaker[Session], lead
) -> None:  # noqa: ANN001
    request, _ = _create(db_session, lead)

    with session_factory() as stale, session_factory() as fresh:
        assert call_requests.get_request(stale, TEST_USER_ID, request.id).status == CallRequestStatus.PENDING
        call_requests.respond(fresh, TEST_USER_ID, request.id, "accept", now=T0 + timedelta(seconds=10))
        with pytest.raises(HTTPException) as exc_info:
            call_requests.respond(stale, TEST_USER_ID, request.id, "reject", now=T0 + timedelta(seconds=11))

    assert exc_info.value.status_code == 409
    assert exc_info.value.detail == "call request is accepted"
    with session_factory() as check:
        row = check.get(CallRequest, request.id)
        assert row is not None
        assert row.status == CallRequestStatus.ACCEPTED
        assert row.accepted_at is not None
        assert check.scalar(select(func.count(CallLog.id))) == 1


def test_overlapping_completions_apply_once(
    db_session: Session, session_factory: sessionmaker[Session], lead
) -> None:  # noqa: ANN001
    request, _ = _create(db_session, lead)
    call_requests.respond(db_session, TEST_USER_ID, request.id, "accept", now=T0 + timedelta(seconds=10))

    with session_factory() as stale, session_factory() as fresh:
        assert call_requests.get_request(stale, TEST_USER_ID, request.id).status == CallRequestStatus.ACCEPTED
        call_requests.complete(fresh, TEST_USER_ID, request.id, now=T0 + timedelta(seconds=60))
        with pytest.raises(HTTPException) as exc_info:
            call_requests.complete(stale, TEST_USER_ID, request.id, now=T0 + timedelta(seconds=90))

    assert exc_info.value.status_code == 409
    assert exc_info.value.detail == "call request is completed"
    with session_factory() as check:
        row = check.get(CallRequest, request.id)
        assert row is not None
        assert row.status == CallRequestStatus.COMPLETED
        assert row.completed_at.replace(tzinfo=None) == (T0 + timedelta(seconds=60)).replace(tzinfo=None)


async def test_registry_delivers_on_socket_loop() -> None:
    registry = MobileChannelRegistry()
    socket = _FakeSocket()
    user_id = uuid.uuid4()
    registry.register(user_id, socket, asyncio.get_running_loop())

    sent = await asyncio.to_thread(registry.send, user_id, "call:request", {"request_id": "r1"})

    assert sent is True
    for _ in range(50):
        if socket.sent:
            break
        await asyncio.sleep(0.01)
    assert socket.sent == [{"event": "call:request", "data": {"request_id": "r1"}}]


async def test_registry_reconnect_replaces_previous_socket() -> None:
    registry = MobileChannelRegistry()
    user_id = uuid.uuid4()
    loop = asyncio.get_running_loop()
    first = registry.register(user_id, _FakeSocket(), loop)
    second = registry.register(user_id, _FakeSocket(), loop)

    registry.unregister(user_id, first)
    assert registry.is_connected(user_id)
    registry.unregister(user_id, second)
    assert not registry.is_connected(user_id)
    assert registry.send(user_id, "call:request", {}) is False
