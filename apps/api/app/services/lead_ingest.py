from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from redis import Redis
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from packages.security import redact_mapping

from ..models import META_LEAD_ID_KEY, Collection, Record, RecordStatus
from .collection_resolver import RoutingKey, resolve_collections
from .connectors import ConnectorError
from .dedup import lead_exists
from .idempotency import claim_webhook_delivery, release_webhook_delivery
from .meta_graph import LeadBundle, MetaGraphClient, get_graph_client
from .sheet_sync import max_position, trigger_realtime_sync, wants_realtime_sync
from .tenant_resolver import resolve_tenant

logger = logging.getLogger("app.meta.webhook")

DEFAULT_NAME = "Meta Lead"
DEFAULT_ORGANIZATION = "Meta Ads"
DEFAULT_PHONE = "N/A"

CREATED = "created"
DUPLICATE = "duplicate"
FAILED = "failed"


@dataclass
class TargetOutcome:
    kind: str
    collection_id: uuid.UUID
    result: str
    record_id: uuid.UUID | None = None
    realtime_sync: bool = False


@dataclass
class IngestOutcome:
    page_id: str
    leadgen_id: str
    status: str = "processed"
    account_id: uuid.UUID | None = None
    targets: list[TargetOutcome] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def result_for(self, kind: str) -> str | None:
        for target in self.targets:
            if target.kind == kind:
                return target.result
        return None


def merge_field_names(existing: Iterable[str] | None, discovered: Iterable[str]) -> list[str]:
    merged = list(existing or [])
    seen = set(merged)
    for name in discovered:
        if name and name not in seen:
            merged.append(name)
            seen.add(name)
    return merged


def build_extra_fields(bundle: LeadBundle, page_id: str) -> dict[str, str]:
    extras = dict(bundle.lead.field_map)
    extras.update(
        {
            META_LEAD_ID_KEY: bundle.lead.lead_id,
            "meta_page": bundle.page_name,
            "meta_page_id": page_id,
            "meta_form": bundle.form_name,
            "meta_campaign": bundle.campaign_name,
            "meta_ad_set": bundle.ad_set_name,
            "meta_ad": bundle.ad_name,
        }
    )
    if bundle.lead.created_time:
        extras["meta_created_time"] = str(bundle.lead.created_time)
    return extras


def _write_target(
    session_factory: sessionmaker[Session],
    kind: str,
    collection_id: uuid.UUID,
    bundle: LeadBundle,
    page_id: str,
    owner_user_id: uuid.UUID | None,
) -> TargetOutcome:
    lead = bundle.lead
    with session_factory() as db:
        try:
            collection = db.get(Collection, collection_id)
            if collection is None:
                return TargetOutcome(kind=kind, collection_id=collection_id, result=FAILED)
            if lead_exists(db, collection_id, lead.lead_id, lead.email or None):
                return TargetOutcome(kind=kind, collection_id=collection_id, result=DUPLICATE)

            # Field names are unioned into the row as it is now, held until commit.
            collection = db.scalar(
                select(Collection)
                .where(Collection.id == collection_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if collection is None:
                return TargetOutcome(kind=kind, collection_id=collection_id, result=FAILED)

            record = Record(
                account_id=collection.account_id,
                collection_id=collection_id,
                user_id=owner_user_id,
                display_name=lead.customer_name or DEFAULT_NAME,
                organization_name=lead.company_name or DEFAULT_ORGANIZATION,
                phone_number=lead.phone_number or DEFAULT_PHONE,
                status=RecordStatus.NEW,
                position=max_position(db, collection_id) + 1,
                external_lead_id=lead.lead_id,
                extra_fields=build_extra_fields(bundle, page_id),
            )
            db.add(record)
            collection.dynamic_field_names = merge_field_names(collection.dynamic_field_names, lead.field_map)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(
                "meta.webhook.duplicate_on_insert",
                extra={"collection_id": str(collection_id), "leadgen_id": lead.lead_id},
            )
            return TargetOutcome(kind=kind, collection_id=collection_id, result=DUPLICATE)
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            logger.error(
                "meta.webhook.target_write_failed",
                extra={"collection_id": str(collection_id), "leadgen_id": lead.lead_id, "error": str(exc)},
                exc_info=True,
            )
            return TargetOutcome(kind=kind, collection_id=collection_id, result=FAILED)
        record_id = record.id
        realtime = wants_realtime_sync(collection)

    return TargetOutcome(
        kind=kind, collection_id=collection_id, result=CREATED, record_id=record_id, realtime_sync=realtime
    )


def process_lead_change(
    session_factory: sessionmaker[Session],
    page_id: str,
    leadgen_id: str,
    form_id: str | None = None,
    ad_id: str | None = None,
    redis_client: Redis | None = None,
    graph_factory: Callable[[str], MetaGraphClient] | None = None,
    sync_trigger: Callable[[uuid.UUID], None] | None = None,
) -> IngestOutcome:
    outcome = IngestOutcome(page_id=str(page_id), leadgen_id=str(leadgen_id))
    log_extra: dict[str, Any] = {"page_id": outcome.page_id, "leadgen_id": outcome.leadgen_id}

    if not claim_webhook_delivery(redis_client, outcome.page_id, outcome.leadgen_id):
        outcome.status = "duplicate_delivery"
        logger.info("meta.webhook.duplicate_delivery", extra=log_extra)
        return outcome

    with session_factory() as db:
        tenant = resolve_tenant(db, outcome.page_id)
    if tenant is None:
        outcome.status = "no_tenant"
        logger.warning("meta.webhook.no_tenant", extra=log_extra)
        return outcome
    outcome.account_id = tenant.account_id

    graph = (graph_factory or get_graph_client)(tenant.access_token)
    try:
        bundle = asyncio.run(graph.fetch_bundle(outcome.leadgen_id, outcome.page_id, form_id, ad_id))
    except ConnectorError as exc:
        # Let a redelivery retry a transient provider failure.
        release_webhook_delivery(redis_client, outcome.page_id, outcome.leadgen_id)
        outcome.status = "lead_unavailable"
        logger.warning("meta.webhook.lead_fetch_failed", extra={**log_extra, "error": str(exc), "status": exc.category})
        return outcome
    if bundle is None:
        outcome.status = "lead_unavailable"
        logger.warning("meta.webhook.lead_not_found", extra=log_extra)
        return outcome
    outcome.warnings = list(bundle.warnings)
    logger.info(
        "meta.webhook.lead_fetched",
        extra={**log_extra, "outcome": redact_mapping(bundle.lead.field_map), "account_id": str(tenant.account_id)},
    )

    routing = RoutingKey(
        page_name=bundle.page_name,
        form_name=bundle.form_name,
        campaign_name=bundle.campaign_name,
        ad_set_name=bundle.ad_set_name,
        ad_name=bundle.ad_name,
    )
    try:
        with session_factory() as db:
            resolved = resolve_collections(db, tenant.account_id, routing, owner_user_id=tenant.admin_user_id)
            db.commit()
            targets = [("ad", resolved.ad.id), ("master", resolved.master.id)]
    except Exception as exc:  # noqa: BLE001
        release_webhook_delivery(redis_client, outcome.page_id, outcome.leadgen_id)
        outcome.status = "failed"
        logger.error("meta.webhook.routing_failed", extra={**log_extra, "error": str(exc)}, exc_info=True)
        return outcome

    for kind, collection_id in targets:
        result = _write_target(session_factory, kind, collection_id, bundle, outcome.page_id, tenant.admin_user_id)
        outcome.targets.append(result)
        if result.result == CREATED and result.realtime_sync:
            (sync_trigger or trigger_realtime_sync)(collection_id)

    logger.info(
        "meta.webhook.lead_processed",
        extra={**log_extra, "outcome": {target.kind: target.result for target in outcome.targets}},
    )
    return outcome
