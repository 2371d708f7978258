from __future__ import annotations

import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from app.main import app
from app.models import CallLog, CallRequest, Collection, Record
from app.services import sheet_sync
from conftest import OTHER_ACCOUNT_ID, TEST_USER_ID, make_collection, make_record


@pytest.mark.integration
async def test_collection_and_record_crud(
    api_overrides: None, seeded_context: dict[str, str], other_headers: dict[str, str]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post("/collections", headers=seeded_context, json={"name": " Walk-ins ", "description": "desk"})
        collection_id = created.json()["id"]
        first = await client.post(
            f"/collections/{collection_id}/records",
            headers=seeded_context,
            json={"display_name": "Asha", "phone_number": "9876543210", "extra_fields": {"city": "Pune"}},
        )
        second = await client.post(
            f"/collections/{collection_id}/records", headers=seeded_context, json={"phone_number": "9876543211"}
        )
        invalid = await client.post(f"/collections/{collection_id}/records", headers=seeded_context, json={"note": "x"})
        patched = await client.patch(
            f"/records/{first.json()['id']}",
            headers=seeded_context,
            json={"status": "interested", "extra_fields": {"budget": "50L"}},
        )
        deleted = await client.delete(f"/records/{second.json()['id']}", headers=seeded_context)
        listing = await client.get("/collections", headers=seeded_context)
        records = await client.get(f"/collections/{collection_id}/records", headers=seeded_context)
        foreign = await client.get(f"/collections/{collection_id}", headers=other_headers)

    assert created.status_code == 201
    assert created.json()["name"] == "Walk-ins"
    assert [first.json()["position"], second.json()["position"]] == [0, 1]
    assert invalid.status_code == 422
    assert patched.json()["status"] == "interested"
    assert patched.json()["extra_fields"] == {"city": "Pune", "budget": "50L"}
    assert deleted.status_code == 204
    assert listing.json()[0]["record_count"] == 1
    assert [row["display_name"] for row in records.json()] == ["Asha"]
    assert foreign.status_code == 403


@pytest.mark.integration
async def test_list_filters_external_collections(
    api_overrides: None, seeded_context: dict[str, str], db_session: Session
) -> None:
    make_collection(db_session, name="Manual")
    make_collection(db_session, name="[MASTER] Acme - Spring", is_external_sourced=True, is_aggregate=True)
    make_collection(db_session, name="Foreign", account_id=OTHER_ACCOUNT_ID)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        everything = await client.get("/collections", headers=seeded_context)
        external = await client.get("/collections", headers=seeded_context, params={"external": "true"})

    assert sorted(row["name"] for row in everything.json()) == ["Manual", "[MASTER] Acme - Spring"]
    assert [row["name"] for row in external.json()] == ["[MASTER] Acme - Spring"]


@pytest.mark.integration
async def test_reorder_keeps_positions_dense(
    api_overrides: None,
    seeded_context: dict[str, str],
    db_session: Session,
    session_factory: sessionmaker[Session],
) -> None:
    collection = make_collection(db_session)
    records = [make_record(db_session, collection, position) for position in (0, 3, 7)]

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            f"/collections/{collection.id}/reorder",
            headers=seeded_context,
            json={"record_ids": [str(records[2].id)]},
        )
        unknown = await client.post(
            f"/collections/{collection.id}/reorder",
            headers=seeded_context,
            json={"record_ids": [str(uuid.uuid4())]},
        )

    assert response.status_code == 200
    assert unknown.status_code == 400
    with session_factory() as check:
        ordered = check.scalars(
            select(Record.id).where(Record.collection_id == collection.id).order_by(Record.position)
        ).all()
        positions = check.scalars(
            select(Record.position).where(Record.collection_id == collection.id).order_by(Record.position)
        ).all()
    assert ordered == [records[2].id, records[0].id, records[1].id]
    assert positions == [0, 1, 2]


@pytest.mark.integration
async def test_record_writes_schedule_realtime_sync_for_linked_collections(
    api_overrides: None,
    seeded_context: dict[str, str],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    triggered: list[uuid.UUID] = []
    monkeypatch.setattr("app.routers.collections.trigger_realtime_sync", triggered.append)
    linked = make_collection(
        db_session,
        linked_sheet_url="https://docs.google.com/spreadsheets/d/abc/edit",
        realtime_sync=True,
    )
    unlinked = make_collection(db_session)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        for target in (linked, unlinked):
            await client.post(
                f"/collections/{target.id}/records", headers=seeded_context, json={"display_name": "Asha"}
            )

    assert triggered == [linked.id]
    assert sheet_sync.wants_realtime_sync(linked)


@pytest.mark.integration
async def test_delete_collection_requires_admin_and_detaches_call_history(
    api_overrides: None,
    seeded_context: dict[str, str],
    member_headers: dict[str, str],
    db_session: Session,
    session_factory: sessionmaker[Session],
) -> None:
    from datetime import UTC, datetime, timedelta

    from app.models import CallLogStatus, CallRequestStatus, CallType

    collection = make_collection(db_session)
    record = make_record(db_session, collection, 0)
    now = datetime.now(UTC)
    db_session.add_all(
        [
            CallRequest(
                user_id=TEST_USER_ID,
                record_id=record.id,
                phone_number=record.phone_number,
                display_name=record.display_name,
                status=CallRequestStatus.PENDING,
                requested_at=now,
                expires_at=now + timedelta(minutes=5),
            ),
            CallLog(
                user_id=TEST_USER_ID,
                record_id=record.id,
                phone_number=record.phone_number,
                call_type=CallType.OUTGOING,
                duration_seconds=10,
                timestamp=now,
                status=CallLogStatus.COMPLETED,
            ),
        ]
    )
    db_session.commit()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        as_member = await client.delete(f"/collections/{collection.id}", headers=member_headers)
        as_admin = await client.delete(f"/collections/{collection.id}", headers=seeded_context)

    assert as_member.status_code == 403
    assert as_admin.status_code == 204
    with session_factory() as check:
        assert check.get(Collection, collection.id) is None
        assert check.scalar(select(func.count(Record.id))) == 0
        assert check.scalar(select(func.count(CallRequest.id))) == 0
        log = check.scalar(select(CallLog))
        assert log is not None and log.record_id is None


@pytest.mark.integration
async def test_record_writes_ignore_system_marker_keys(
    api_overrides: None, seeded_context: dict[str, str], db_session: Session
) -> None:
    collection = make_collection(db_session, is_external_sourced=True)
    ingested = make_record(db_session, collection, 0, external_lead_id="L1", extra_fields={"meta_lead_id": "L1"})

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post(
            f"/collections/{collection.id}/records",
            headers=seeded_context,
            json={"display_name": "Asha", "extra_fields": {"meta_lead_id": "L9", "source_collection_id": "x", "city": "Pune"}},
        )
        patched = await client.patch(
            f"/records/{ingested.id}",
            headers=seeded_context,
            json={"extra_fields": {"meta_lead_id": "forged", "is_copied": "true", "budget": "50L"}},
        )

    assert created.status_code == 201
    assert created.json()["extra_fields"] == {"city": "Pune"}
    assert created.json()["external_lead_id"] is None
    assert patched.json()["extra_fields"] == {"meta_lead_id": "L1", "budget": "50L"}
    assert patched.json()["external_lead_id"] == "L1"
