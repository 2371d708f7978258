from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..settings import settings
from .connectors import (
    ConnectorError,
    async_retry_delay,
    classify_transport_error,
    is_retryable,
    map_provider_error,
)

logger = logging.getLogger("app.meta.graph")

FORM_PLACEHOLDER = "Meta Form"
CAMPAIGN_PLACEHOLDER = "Search Campaign"
AD_SET_PLACEHOLDER = "Search Ad Set"
AD_PLACEHOLDER = "Search Ad"

_LEAD_FIELDS = "id,created_time,field_data,form_id,ad_id,ad_name,adset_name,campaign_name"
_NOT_FOUND_CODES = {100, 803}

NAME_KEYS = ("full_name", "name", "first_name")
EMAIL_KEYS = ("email",)
PHONE_KEYS = ("phone_number", "phone")
COMPANY_KEYS = ("company_name", "company", "organization")


@dataclass
class LeadDetail:
    lead_id: str
    created_time: str | None = None
    form_id: str | None = None
    ad_id: str | None = None
    customer_name: str = ""
    email: str = ""
    phone_number: str = ""
    company_name: str = ""
    campaign_name: str = ""
    ad_set_name: str = ""
    ad_name: str = ""
    field_map: dict[str, str] = field(default_factory=dict)


@dataclass
class LeadBundle:
    lead: LeadDetail
    page_name: str
    form_name: str
    campaign_name: str
    ad_set_name: str
    ad_name: str
    warnings: list[str] = field(default_factory=list)


def extract_field_value(field_data: list[dict[str, Any]], possible_keys: tuple[str, ...]) -> str:
    for item in field_data:
        name = str(item.get("name") or "").lower()
        if not any(key in name for key in possible_keys):
            continue
        values = item.get("values")
        if isinstance(values, list) and values:
            return str(values[0])
    return ""


def build_field_map(field_data: list[dict[str, Any]]) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in field_data:
        name = item.get("name")
        values = item.get("values")
        if not isinstance(name, str) or not name:
            continue
        if isinstance(values, list) and values:
            result[name] = ", ".join(str(value) for value in values)
        else:
            result[name] = ""
    return result


def parse_lead_payload(lead_id: str, payload: dict[str, Any]) -> LeadDetail:
    field_data = payload.get("field_data")
    if not isinstance(field_data, list):
        field_data = []
    return LeadDetail(
        lead_id=str(lead_id),
        created_time=payload.get("created_time"),
        form_id=str(payload["form_id"]) if payload.get("form_id") else None,
        ad_id=str(payload["ad_id"]) if payload.get("ad_id") else None,
        customer_name=extract_field_value(field_data, NAME_KEYS),
        email=extract_field_value(field_data, EMAIL_KEYS),
        phone_number=extract_field_value(field_data, PHONE_KEYS),
        company_name=extract_field_value(field_data, COMPANY_KEYS),
        campaign_name=str(payload.get("campaign_name") or ""),
        ad_set_name=str(payload.get("adset_name") or ""),
        ad_name=str(payload.get("ad_name") or ""),
        field_map=build_field_map(field_data),
    )


class MetaGraphClient:
    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.access_token = access_token
        self.base_url = (base_url or settings.meta_graph_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.meta_graph_timeout_seconds
        self.transport = transport
        self.max_attempts = max(1, max_attempts or settings.connector_max_attempts)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self.transport,
        )

    async def _get_object(
        self,
        client: httpx.AsyncClient,
        object_id: str,
        fields: str | None = None,
    ) -> dict[str, Any] | None:
        params: dict[str, str] = {"access_token": self.access_token}
        if fields:
            params["fields"] = fields
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await client.get(f"/{object_id}", params=params)
            except httpx.HTTPError as exc:
                mapped = classify_transport_error(exc)
            else:
                if response.status_code < 400:
                    body = response.json()
                    return body if isinstance(body, dict) else None
                error_body = _error_body(response)
                provider_code = error_body.get("code")
                if response.status_code == 404 or provider_code in _NOT_FOUND_CODES:
                    return None
                mapped = map_provider_error(
                    status_code=response.status_code,
                    provider_code=str(provider_code) if provider_code is not None else None,
                    message=str(error_body.get("message") or "graph request failed"),
                )
            if is_retryable(mapped) and attempt < self.max_attempts:
                await async_retry_delay(attempt)
                continue
            raise mapped
        raise ConnectorError("unknown", "exhausted retries")

    async def get_lead_details(self, lead_id: str, client: httpx.AsyncClient | None = None) -> LeadDetail | None:
        if client is None:
            async with self._client() as owned:
                return await self.get_lead_details(lead_id, client=owned)
        payload = await self._get_object(client, lead_id, fields=_LEAD_FIELDS)
        if payload is None:
            return None
        return parse_lead_payload(lead_id, payload)

    async def get_page_details(self, page_id: str, client: httpx.AsyncClient) -> dict[str, Any] | None:
        return await self._get_object(client, page_id, fields="id,name")

    async def get_form_details(self, form_id: str, client: httpx.AsyncClient) -> dict[str, Any] | None:
        return await self._get_object(client, form_id, fields="id,name")

    async def get_ad_details(self, ad_id: str, client: httpx.AsyncClient) -> dict[str, Any] | None:
        return await self._get_object(client, ad_id, fields="id,name,campaign{name},adset{name}")

    async def fetch_bundle(
        self,
        lead_id: str,
        page_id: str,
        form_id: str | None = None,
        ad_id: str | None = None,
    ) -> LeadBundle | None:
        async with self._client() as client:
            lead = await self.get_lead_details(lead_id, client=client)
            if lead is None:
                return None

            form_ref = form_id or lead.form_id
            ad_ref = ad_id or lead.ad_id
            results = await asyncio.gather(
                self.get_page_details(page_id, client),
                self.get_form_details(form_ref, client) if form_ref else _none(),
                self.get_ad_details(ad_ref, client) if ad_ref else _none(),
                return_exceptions=True,
            )

        warnings: list[str] = []
        page_info, form_info, ad_info = (
            _unwrap(label, value, warnings) for label, value in zip(("page", "form", "ad"), results)
        )

        ad_campaign = _nested_name(ad_info, "campaign")
        ad_set = _nested_name(ad_info, "adset")
        ad_own_name = _name(ad_info)
        return LeadBundle(
            lead=lead,
            page_name=_name(page_info) or page_id,
            form_name=_name(form_info) or FORM_PLACEHOLDER,
            campaign_name=lead.campaign_name or ad_campaign or ad_own_name or CAMPAIGN_PLACEHOLDER,
            ad_set_name=lead.ad_set_name or ad_set or AD_SET_PLACEHOLDER,
            ad_name=lead.ad_name or ad_own_name or AD_PLACEHOLDER,
            warnings=warnings,
        )


async def _none() -> None:
    return None


def _unwrap(label: str, value: object, warnings: list[str]) -> dict[str, Any] | None:
    if isinstance(value, BaseException):
        warnings.append(f"{label}_detail_unavailable")
        logger.warning("meta.graph.sub_fetch_failed", extra={"target": label, "error": str(value)})
        return None
    return value if isinstance(value, dict) else None


def _name(payload: dict[str, Any] | None) -> str:
    if not payload:
        return ""
    return str(payload.get("name") or "")


def _nested_name(payload: dict[str, Any] | None, key: str) -> str:
    if not payload:
        return ""
    nested = payload.get(key)
    if isinstance(nested, dict):
        return str(nested.get("name") or "")
    return ""


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    error = body.get("error") if isinstance(body, dict) else None
    return error if isinstance(error, dict) else {}


def get_graph_client(access_token: str) -> MetaGraphClient:
    return MetaGraphClient(access_token=access_token)
