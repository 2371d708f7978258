from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..models import Account, MetaPage
from .token_vault import decrypt_or_none

logger = logging.getLogger("app.meta.tenant")


@dataclass(frozen=True)
class TenantCredential:
    account_id: uuid.UUID
    admin_user_id: uuid.UUID | None
    page_id: str
    access_token: str
    source: str


def resolve_tenant(db: Session, page_id: str) -> TenantCredential | None:
    page_id = str(page_id)
    account = db.scalar(
        select(Account)
        .outerjoin(
            MetaPage,
            (MetaPage.account_id == Account.id) & (MetaPage.page_id == page_id) & MetaPage.deleted_at.is_(None),
        )
        .where(
            Account.deleted_at.is_(None),
            or_(Account.meta_page_id == page_id, MetaPage.id.is_not(None)),
        )
        .order_by(Account.created_at)
        .limit(1)
    )
    if account is None:
        return None

    page_row = db.scalar(
        select(MetaPage).where(
            MetaPage.account_id == account.id,
            MetaPage.page_id == page_id,
            MetaPage.deleted_at.is_(None),
        )
    )
    page_token = decrypt_or_none(page_row.page_access_token_enc) if page_row is not None else None
    if page_token:
        return TenantCredential(
            account_id=account.id,
            admin_user_id=account.admin_user_id,
            page_id=page_id,
            access_token=page_token,
            source="page",
        )

    legacy_token = decrypt_or_none(account.meta_page_access_token_enc)
    if legacy_token:
        return TenantCredential(
            account_id=account.id,
            admin_user_id=account.admin_user_id,
            page_id=page_id,
            access_token=legacy_token,
            source="legacy",
        )

    logger.warning(
        "meta.tenant.missing_access_token",
        extra={"account_id": str(account.id), "page_id": page_id},
    )
    return None
