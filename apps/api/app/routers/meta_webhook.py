from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse
from redis import Redis
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..db import get_db, get_session_factory
from ..models import Account, MetaPage
from ..redis_client import get_redis_client
from ..schemas import (
    MetaAccountSettingsRequest,
    MetaAccountStatus,
    MetaAnalyticsResponse,
    MetaDebugConfigResponse,
    MetaPageConnectRequest,
    MetaPageResponse,
    WebhookPayload,
)
from ..services.analytics import compute_lead_analytics
from ..services.audit import write_audit_log
from ..services.lead_ingest import process_lead_change
from ..services.token_vault import decrypt_or_none, set_legacy_page_token, store_page_token
from ..settings import settings
from ..tenancy import RequestContext, get_request_context, require_admin

router = APIRouter(prefix="/meta", tags=["meta"])
logger = logging.getLogger("app.meta.webhook")

EVENT_RECEIVED = "EVENT_RECEIVED"


def get_webhook_redis() -> Redis | None:
    return get_redis_client()


def _token_matches(db: Session, token: str) -> bool:
    if settings.meta_webhook_verify_token and token == settings.meta_webhook_verify_token:
        return True
    match = db.scalar(
        select(Account.id).where(Account.meta_verify_token == token, Account.deleted_at.is_(None)).limit(1)
    )
    return match is not None


@router.get("/webhook", response_class=PlainTextResponse)
def verify_webhook(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
    db: Session = Depends(get_db),
) -> PlainTextResponse:
    if hub_mode != "subscribe":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="hub.mode must be subscribe")
    if not hub_verify_token or not _token_matches(db, hub_verify_token):
        logger.warning("meta.webhook.verify_failed")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verification token mismatch")
    logger.info("meta.webhook.verified")
    return PlainTextResponse(hub_challenge or "")


@router.post("/webhook", response_class=PlainTextResponse)
def receive_webhook(
    payload: WebhookPayload,
    background_tasks: BackgroundTasks,
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    redis_client: Redis | None = Depends(get_webhook_redis),
) -> PlainTextResponse:
    if payload.object != "page":
        logger.warning("meta.webhook.ignored_object", extra={"target": payload.object})
        return PlainTextResponse(EVENT_RECEIVED)

    scheduled = 0
    for entry in payload.entry:
        for change in entry.changes:
            if change.field != "leadgen":
                continue
            value = change.value
            page_id = value.page_id or entry.id
            if not value.leadgen_id or not page_id:
                logger.warning("meta.webhook.incomplete_change", extra={"page_id": page_id})
                continue
            background_tasks.add_task(
                process_lead_change,
                session_factory,
                str(page_id),
                str(value.leadgen_id),
                str(value.form_id) if value.form_id else None,
                str(value.ad_id) if value.ad_id else None,
                redis_client,
            )
            scheduled += 1

    logger.info("meta.webhook.received", extra={"rows": scheduled})
    return PlainTextResponse(EVENT_RECEIVED)


def _account_status(db: Session, account: Account) -> MetaAccountStatus:
    pages = db.scalars(select(MetaPage).where(MetaPage.account_id == account.id, MetaPage.deleted_at.is_(None))).all()
    return MetaAccountStatus(
        account_id=account.id,
        name=account.name,
        has_verify_token=bool(account.meta_verify_token),
        has_legacy_page=bool(account.meta_page_id),
        has_legacy_token=decrypt_or_none(account.meta_page_access_token_enc) is not None,
        page_ids=sorted(page.page_id for page in pages),
        pages_with_token=sum(1 for page in pages if decrypt_or_none(page.page_access_token_enc)),
    )


def _ensure_page_unclaimed(db: Session, account_id: uuid.UUID, page_id: str) -> None:
    page_owner = db.scalar(
        select(MetaPage.account_id).where(
            MetaPage.page_id == page_id, MetaPage.account_id != account_id, MetaPage.deleted_at.is_(None)
        )
    )
    legacy_owner = db.scalar(
        select(Account.id).where(
            Account.meta_page_id == page_id, Account.id != account_id, Account.deleted_at.is_(None)
        )
    )
    if page_owner is not None or legacy_owner is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="page is connected to another account")


@router.get("/debug-config", response_model=MetaDebugConfigResponse)
def debug_config(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> MetaDebugConfigResponse:
    require_admin(context)
    account = db.get(Account, context.current_account_id)
    accounts = [_account_status(db, account)] if account is not None else []
    return MetaDebugConfigResponse(
        global_verify_token_configured=bool(settings.meta_webhook_verify_token),
        graph_base_url=settings.meta_graph_base_url,
        connector_mode=settings.connector_mode,
        accounts=accounts,
    )


@router.put("/pages", response_model=MetaPageResponse)
def connect_page(
    payload: MetaPageConnectRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> MetaPageResponse:
    require_admin(context)
    page_id = payload.page_id.strip()
    _ensure_page_unclaimed(db, context.current_account_id, page_id)
    page = store_page_token(
        db, context.current_account_id, page_id, payload.access_token.strip(), page_name=payload.page_name.strip()
    )
    write_audit_log(db, context, "meta.page_connected", "meta_page", page_id, {"page_name": page.page_name})
    db.commit()
    logger.info("meta.page.connected", extra={"page_id": page_id, "account_id": str(context.current_account_id)})
    return MetaPageResponse(page_id=page.page_id, page_name=page.page_name, has_token=True)


@router.put("/settings", response_model=MetaAccountStatus)
def update_settings(
    payload: MetaAccountSettingsRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> MetaAccountStatus:
    require_admin(context)
    account = db.get(Account, context.current_account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
    changed: list[str] = []
    if payload.verify_token is not None:
        account.meta_verify_token = payload.verify_token.strip() or None
        changed.append("verify_token")
    if payload.legacy_page_id and payload.legacy_access_token:
        page_id = payload.legacy_page_id.strip()
        _ensure_page_unclaimed(db, account.id, page_id)
        set_legacy_page_token(db, account, page_id, payload.legacy_access_token.strip())
        changed.append("legacy_page")
    write_audit_log(db, context, "meta.settings_updated", "account", str(account.id), {"changed": changed})
    db.commit()
    db.refresh(account)
    return _account_status(db, account)


@router.get("/analytics", response_model=MetaAnalyticsResponse)
def analytics(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> MetaAnalyticsResponse:
    stats = compute_lead_analytics(db, context.current_account_id)
    return MetaAnalyticsResponse(
        total=stats.total,
        today=stats.today,
        this_week=stats.this_week,
        by_page=dict(stats.by_page),
        by_form=dict(stats.by_form),
        by_campaign=dict(stats.by_campaign),
        by_ad_set=dict(stats.by_ad_set),
        by_ad=dict(stats.by_ad),
        by_status=dict(stats.by_status),
        by_date=stats.by_date,
        recent=stats.recent,
    )
