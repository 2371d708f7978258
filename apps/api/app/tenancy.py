from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_db
from .models import Collection, Membership, Role
from .settings import settings


@dataclass(frozen=True)
class RequestContext:
    current_user_id: uuid.UUID
    current_account_id: uuid.UUID
    current_role: Role


def account_scoped(stmt: Any, account_id: uuid.UUID, model: Any) -> Any:
    return stmt.where(getattr(model, "account_id") == account_id)


def require_admin(context: RequestContext) -> None:
    if context.current_role != Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")


def _parse_role(value: str) -> Role:
    try:
        return Role(value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid role header") from exc


def get_request_context(
    db: Session = Depends(get_db),
    x_leadsync_user_id: str | None = Header(default=None),
    x_leadsync_account_id: str | None = Header(default=None),
    x_leadsync_role: str | None = Header(default=None),
) -> RequestContext:
    if settings.dev_auth_bypass:
        return RequestContext(
            current_user_id=uuid.UUID(settings.dev_user_id),
            current_account_id=uuid.UUID(settings.dev_account_id),
            current_role=_parse_role(settings.dev_role),
        )

    if not x_leadsync_user_id or not x_leadsync_account_id or not x_leadsync_role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing auth context headers")

    try:
        user_id = uuid.UUID(x_leadsync_user_id)
        account_id = uuid.UUID(x_leadsync_account_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid auth context headers") from exc

    role = _parse_role(x_leadsync_role)
    membership = db.scalar(
        select(Membership).where(
            Membership.account_id == account_id,
            Membership.user_id == user_id,
            Membership.deleted_at.is_(None),
        )
    )
    if membership is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="account membership required")

    return RequestContext(current_user_id=user_id, current_account_id=account_id, current_role=role)


def collection_for_context(db: Session, context: RequestContext, collection_id: uuid.UUID) -> Collection:
    collection = db.get(Collection, collection_id)
    if collection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="collection not found")
    if collection.account_id != context.current_account_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="collection belongs to another account")
    return collection
