from __future__ import annotations

import uuid

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Account, MetaPage
from ..settings import settings


def _fernet() -> Fernet:
    key = settings.app_encryption_key or settings.token_encryption_key
    return Fernet(key.encode("utf-8"))


def encrypt_token(token: str) -> str:
    return _fernet().encrypt(token.encode("utf-8")).decode("utf-8")


def decrypt_token(token_enc: str) -> str:
    return _fernet().decrypt(token_enc.encode("utf-8")).decode("utf-8")


def decrypt_or_none(token_enc: str | None) -> str | None:
    if not token_enc:
        return None
    try:
        return decrypt_token(token_enc)
    except InvalidToken:
        return None


def set_legacy_page_token(db: Session, account: Account, page_id: str, access_token: str) -> Account:
    account.meta_page_id = page_id
    account.meta_page_access_token_enc = encrypt_token(access_token)
    db.flush()
    return account


def store_page_token(
    db: Session,
    account_id: uuid.UUID,
    page_id: str,
    access_token: str,
    page_name: str = "",
) -> MetaPage:
    existing = db.scalar(
        select(MetaPage).where(
            MetaPage.account_id == account_id,
            MetaPage.page_id == page_id,
            MetaPage.deleted_at.is_(None),
        )
    )
    if existing is None:
        existing = MetaPage(
            account_id=account_id,
            page_id=page_id,
            page_name=page_name,
            page_access_token_enc=encrypt_token(access_token),
        )
        db.add(existing)
    else:
        existing.page_access_token_enc = encrypt_token(access_token)
        if page_name:
            existing.page_name = page_name
    db.flush()
    return existing
