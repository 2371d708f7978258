from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import Collection

_KEY_SEPARATOR = "|"


@dataclass(frozen=True)
class RoutingKey:
    page_name: str
    form_name: str
    campaign_name: str
    ad_set_name: str
    ad_name: str

    def ad_key(self) -> str:
        parts = (self.page_name, self.form_name, self.campaign_name, self.ad_set_name, self.ad_name)
        return "ad:" + _KEY_SEPARATOR.join(_escape(part) for part in parts)

    def master_key(self) -> str:
        return "master:" + _KEY_SEPARATOR.join(_escape(part) for part in (self.page_name, self.form_name))


@dataclass(frozen=True)
class ResolvedCollections:
    ad: Collection
    master: Collection


def _escape(part: str) -> str:
    return part.replace("\\", "\\\\").replace(_KEY_SEPARATOR, "\\" + _KEY_SEPARATOR)


def master_key_for(page_name: str, form_name: str) -> str:
    return RoutingKey(page_name, form_name, "", "", "").master_key()


def find_by_routing_key(db: Session, account_id: uuid.UUID, routing_key: str) -> Collection | None:
    return db.scalar(
        select(Collection).where(Collection.account_id == account_id, Collection.routing_key == routing_key)
    )


def _find_or_create(db: Session, account_id: uuid.UUID, routing_key: str, template: Collection) -> Collection:
    existing = find_by_routing_key(db, account_id, routing_key)
    if existing is not None:
        return existing
    try:
        with db.begin_nested():
            db.add(template)
            db.flush()
    except IntegrityError:
        # A concurrent caller created the same key first.
        winner = find_by_routing_key(db, account_id, routing_key)
        if winner is None:
            raise
        return winner
    return template


def resolve_collections(
    db: Session,
    account_id: uuid.UUID,
    routing: RoutingKey,
    owner_user_id: uuid.UUID | None = None,
) -> ResolvedCollections:
    page, form = routing.page_name, routing.form_name
    ad = _find_or_create(
        db,
        account_id,
        routing.ad_key(),
        Collection(
            account_id=account_id,
            user_id=owner_user_id,
            name=f"{page} - {routing.campaign_name} - {routing.ad_name}",
            description=(
                f"Leads from Page: {page}, Form: {form}, Campaign: {routing.campaign_name}, "
                f"Ad Set: {routing.ad_set_name}, Ad: {routing.ad_name}"
            ),
            is_external_sourced=True,
            is_aggregate=False,
            page_name=page,
            form_name=form,
            campaign_name=routing.campaign_name,
            ad_set_name=routing.ad_set_name,
            ad_name=routing.ad_name,
            routing_key=routing.ad_key(),
            dynamic_field_names=[],
        ),
    )
    master = _find_or_create(
        db,
        account_id,
        routing.master_key(),
        Collection(
            account_id=account_id,
            user_id=owner_user_id,
            name=f"[MASTER] {page} - {form}",
            description=f"REAL-TIME MASTER: Aggregated leads for Page: {page}, Form: {form}",
            is_external_sourced=True,
            is_aggregate=True,
            page_name=page,
            form_name=form,
            routing_key=routing.master_key(),
            dynamic_field_names=[],
        ),
    )
    return ResolvedCollections(ad=ad, master=master)


def find_master_for(db: Session, collection: Collection) -> Collection | None:
    if not collection.is_external_sourced or collection.is_aggregate:
        return None
    return find_by_routing_key(db, collection.account_id, master_key_for(collection.page_name, collection.form_name))
