from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from app.main import app
from app.models import Account, Collection, Record
from app.services import lead_ingest
from app.services.tenant_resolver import resolve_tenant
from app.services.token_vault import store_page_token
from app.settings import settings
from conftest import OTHER_ACCOUNT_ID, TEST_ACCOUNT_ID, FakeRedis
from graph_fakes import standard_graph


def _leadgen_payload(*changes: dict[str, object], page_id: str = "page-1") -> dict[str, object]:
    return {
        "object": "page",
        "entry": [{"id": page_id, "time": 1760000000, "changes": list(changes)}],
    }


@pytest.mark.integration
async def test_verify_accepts_global_token(
    api_overrides: None, seeded_context: dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings, "meta_webhook_verify_token", "global-secret")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get(
            "/meta/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "global-secret", "hub.challenge": "1158201444"},
        )
    assert response.status_code == 200
    assert response.text == "1158201444"


@pytest.mark.integration
async def test_verify_accepts_account_token_and_rejects_mismatch(
    api_overrides: None, seeded_context: dict[str, str], db_session: Session
) -> None:
    account = db_session.get(Account, TEST_ACCOUNT_ID)
    assert account is not None
    account.meta_verify_token = "account-secret"
    db_session.commit()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        ok = await client.get(
            "/meta/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "account-secret", "hub.challenge": "abc"},
        )
        mismatch = await client.get(
            "/meta/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "abc"},
        )
        bad_mode = await client.get(
            "/meta/webhook",
            params={"hub.mode": "unsubscribe", "hub.verify_token": "account-secret", "hub.challenge": "abc"},
        )

    assert ok.status_code == 200
    assert ok.text == "abc"
    assert mismatch.status_code == 403
    assert bad_mode.status_code == 400


@pytest.mark.integration
async def test_leadgen_event_is_acknowledged_then_ingested(
    api_overrides: None,
    seeded_context: dict[str, str],
    db_session: Session,
    session_factory: sessionmaker[Session],
    fake_redis: FakeRedis,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    store_page_token(db_session, TEST_ACCOUNT_ID, "page-1", "page-token")
    db_session.commit()
    stub = standard_graph()
    stub.add_lead("444")
    monkeypatch.setattr(lead_ingest, "get_graph_client", stub.client)

    payload = _leadgen_payload(
        {"field": "leadgen", "value": {"leadgen_id": 444, "page_id": "page-1", "form_id": "form-1"}},
        {"field": "feed", "value": {}},
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/meta/webhook", json=payload)
        retry = await client.post("/meta/webhook", json=payload)

    assert first.status_code == 200
    assert first.text == "EVENT_RECEIVED"
    assert retry.status_code == 200
    assert "leadsync:webhook:lead:page-1:444" in fake_redis.data
    with session_factory() as check:
        assert check.scalar(select(func.count(Collection.id))) == 2
        assert check.scalar(select(func.count(Record.id)).where(Record.external_lead_id == "444")) == 2

    assert stub.calls[0] == "444"


@pytest.mark.integration
async def test_non_page_objects_are_acknowledged_and_ignored(
    api_overrides: None, seeded_context: dict[str, str], session_factory: sessionmaker[Session]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/meta/webhook", json={"object": "instagram", "entry": []})

    assert response.status_code == 200
    assert response.text == "EVENT_RECEIVED"
    with session_factory() as check:
        assert check.scalar(select(func.count(Collection.id))) == 0


@pytest.mark.integration
async def test_debug_config_requires_admin_and_hides_secrets(
    api_overrides: None,
    seeded_context: dict[str, str],
    member_headers: dict[str, str],
    db_session: Session,
) -> None:
    store_page_token(db_session, TEST_ACCOUNT_ID, "page-1", "super-secret-token")
    db_session.commit()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        admin = await client.get("/meta/debug-config", headers=seeded_context)
        member = await client.get("/meta/debug-config", headers=member_headers)

    assert member.status_code == 403
    assert admin.status_code == 200
    body = admin.json()
    assert "super-secret-token" not in admin.text
    assert body["accounts"][0]["page_ids"] == ["page-1"]
    assert body["accounts"][0]["pages_with_token"] == 1
    assert body["accounts"][0]["has_legacy_token"] is False


@pytest.mark.integration
async def test_admin_connects_page_for_ingestion(
    api_overrides: None,
    seeded_context: dict[str, str],
    member_headers: dict[str, str],
    other_headers: dict[str, str],
    session_factory: sessionmaker[Session],
) -> None:
    body = {"page_id": " page-7 ", "access_token": "page-token", "page_name": "Acme Realty"}
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        as_member = await client.put("/meta/pages", headers=member_headers, json=body)
        connected = await client.put("/meta/pages", headers=seeded_context, json=body)
        rotated = await client.put(
            "/meta/pages", headers=seeded_context, json={"page_id": "page-7", "access_token": "rotated"}
        )
        claimed = await client.put("/meta/pages", headers=other_headers, json=body)

    assert as_member.status_code == 403
    assert connected.json() == {"page_id": "page-7", "page_name": "Acme Realty", "has_token": True}
    assert rotated.json()["page_name"] == "Acme Realty"
    assert claimed.status_code == 409
    assert "rotated" not in rotated.text
    with session_factory() as check:
        tenant = resolve_tenant(check, "page-7")
        assert tenant is not None
        assert tenant.account_id == TEST_ACCOUNT_ID
        assert tenant.access_token == "rotated"


@pytest.mark.integration
async def test_account_settings_enable_verification_and_legacy_page(
    api_overrides: None,
    seeded_context: dict[str, str],
    other_headers: dict[str, str],
    session_factory: sessionmaker[Session],
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        half_pair = await client.put("/meta/settings", headers=seeded_context, json={"legacy_page_id": "page-9"})
        updated = await client.put(
            "/meta/settings",
            headers=seeded_context,
            json={"verify_token": "acct-verify", "legacy_page_id": "page-9", "legacy_access_token": "legacy-token"},
        )
        verified = await client.get(
            "/meta/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "acct-verify", "hub.challenge": "42"},
        )
        taken = await client.put(
            "/meta/settings",
            headers=other_headers,
            json={"legacy_page_id": "page-9", "legacy_access_token": "other-token"},
        )

    assert half_pair.status_code == 422
    status_body = updated.json()
    assert status_body["has_verify_token"] is True
    assert status_body["has_legacy_page"] is True
    assert status_body["has_legacy_token"] is True
    assert "legacy-token" not in updated.text
    assert verified.text == "42"
    assert taken.status_code == 409
    with session_factory() as check:
        tenant = resolve_tenant(check, "page-9")
        assert tenant is not None
        assert tenant.access_token == "legacy-token"
        other = check.get(Account, OTHER_ACCOUNT_ID)
        assert other is not None and other.meta_page_id is None
