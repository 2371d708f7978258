from __future__ import annotations

import asyncio
import random

import httpx


class ConnectorError(Exception):
    def __init__(self, category: str, message: str, status_code: int | None = None, provider_code: str | None = None) -> None:
        super().__init__(message)
        self.category = category
        self.status_code = status_code
        self.provider_code = provider_code


def map_provider_error(
    status_code: int | None,
    provider_code: str | None = None,
    message: str = "provider request failed",
) -> ConnectorError:
    if status_code in {401, 403}:
        return ConnectorError("auth", message, status_code=status_code, provider_code=provider_code)
    if status_code == 429:
        return ConnectorError("rate_limit", message, status_code=status_code, provider_code=provider_code)
    if status_code is not None and 400 <= status_code < 500:
        return ConnectorError("validation", message, status_code=status_code, provider_code=provider_code)
    if status_code is not None and status_code >= 500:
        return ConnectorError("network", message, status_code=status_code, provider_code=provider_code)
    return ConnectorError("unknown", message, status_code=status_code, provider_code=provider_code)


def classify_transport_error(exc: Exception) -> ConnectorError:
    if isinstance(exc, ConnectorError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ConnectorError("network", "provider request timed out")
    if isinstance(exc, httpx.TransportError):
        return ConnectorError("network", f"provider unreachable: {exc.__class__.__name__}")
    return ConnectorError("unknown", "unclassified connector failure")


def retry_delay_seconds(attempt: int) -> float:
    base = min(8, 2 ** max(0, attempt - 1))
    return base + random.uniform(0.0, 0.2)


async def async_retry_delay(attempt: int) -> None:
    await asyncio.sleep(retry_delay_seconds(attempt))


def is_retryable(error: ConnectorError) -> bool:
    return error.category in {"rate_limit", "network"}
