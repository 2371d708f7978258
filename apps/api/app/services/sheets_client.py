from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from ..settings import settings
from .connectors import ConnectorError, classify_transport_error, is_retryable, map_provider_error, retry_delay_seconds

logger = logging.getLogger("app.sheets.client")

DEFAULT_PREVIEW_RANGE = "A1:Z100"
_ID_PATTERNS = (
    re.compile(r"/d/([a-zA-Z0-9-_]+)"),
    re.compile(r"spreadsheets\.google\.com/.*\?id=([a-zA-Z0-9-_]+)"),
    re.compile(r"[?&]id=([a-zA-Z0-9-_]+)"),
)


@dataclass
class SheetTab:
    name: str
    row_count: int


@dataclass
class SheetValidation:
    valid: bool
    title: str = ""
    tabs: list[SheetTab] = field(default_factory=list)
    error: str | None = None


@dataclass
class SheetData:
    spreadsheet_id: str
    sheet_name: str
    headers: list[str]
    rows: list[list[str]]

    @property
    def total_rows(self) -> int:
        return len(self.rows)


class SheetsClient(Protocol):
    def validate_access(self, sheet_url: str) -> SheetValidation: ...

    def fetch_range(self, sheet_url: str, sheet_name: str | None = None, cell_range: str = DEFAULT_PREVIEW_RANGE) -> SheetData: ...

    def write_range(self, sheet_url: str, data: list[list[str]], sheet_name: str | None = None) -> bool: ...


def extract_spreadsheet_id(url: str) -> str | None:
    for pattern in _ID_PATTERNS:
        match = pattern.search(url or "")
        if match:
            return match.group(1)
    return None


def _require_id(sheet_url: str) -> str:
    spreadsheet_id = extract_spreadsheet_id(sheet_url)
    if not spreadsheet_id:
        raise ConnectorError("validation", "Invalid Google Sheets URL", status_code=400)
    return spreadsheet_id


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def normalize_cells(values: list[list[Any]]) -> list[list[str]]:
    return [[_cell(cell) for cell in row] for row in values]


def split_values(spreadsheet_id: str, sheet_name: str, values: list[list[Any]], has_header: bool = True) -> SheetData:
    normalized = normalize_cells(values)
    if not has_header:
        return SheetData(spreadsheet_id=spreadsheet_id, sheet_name=sheet_name, headers=[], rows=normalized)
    headers = normalized[0] if normalized else []
    return SheetData(spreadsheet_id=spreadsheet_id, sheet_name=sheet_name, headers=headers, rows=normalized[1:])


class GoogleSheetsClient:
    def __init__(
        self,
        access_token: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.access_token = access_token if access_token is not None else settings.google_sheets_access_token
        self.api_key = api_key if api_key is not None else settings.google_sheets_api_key
        self.base_url = (base_url or settings.google_sheets_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.google_sheets_timeout_seconds
        self.transport = transport
        self.max_attempts = max(1, settings.connector_max_attempts)

    def _client(self) -> httpx.Client:
        headers = {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}
        params = {"key": self.api_key} if self.api_key and not self.access_token else {}
        return httpx.Client(
            base_url=self.base_url,
            headers=headers,
            params=params,
            timeout=self.timeout_seconds,
            transport=self.transport,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        with self._client() as client:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    response = client.request(method, path, **kwargs)
                except httpx.HTTPError as exc:
                    mapped = classify_transport_error(exc)
                else:
                    if response.status_code < 400:
                        body = response.json() if response.content else {}
                        return body if isinstance(body, dict) else {}
                    mapped = map_provider_error(
                        status_code=response.status_code,
                        provider_code=_google_status(response),
                        message=_google_message(response),
                    )
                if is_retryable(mapped) and attempt < self.max_attempts:
                    time.sleep(retry_delay_seconds(attempt))
                    continue
                raise mapped
        raise ConnectorError("unknown", "exhausted retries")

    def validate_access(self, sheet_url: str) -> SheetValidation:
        spreadsheet_id = extract_spreadsheet_id(sheet_url)
        if not spreadsheet_id:
            return SheetValidation(valid=False, error="Invalid Google Sheets URL")
        try:
            body = self._request(
                "GET",
                f"/{spreadsheet_id}",
                params={"fields": "properties.title,sheets.properties(title,gridProperties.rowCount)"},
            )
        except ConnectorError as exc:
            if exc.category == "auth":
                return SheetValidation(valid=False, error="Sheet is not accessible or requires permission")
            return SheetValidation(valid=False, error=f"Unable to access the sheet: {exc}")
        tabs = []
        for sheet in body.get("sheets") or []:
            props = sheet.get("properties") or {}
            grid = props.get("gridProperties") or {}
            tabs.append(SheetTab(name=str(props.get("title") or ""), row_count=int(grid.get("rowCount") or 0)))
        title = str((body.get("properties") or {}).get("title") or "")
        return SheetValidation(valid=True, title=title, tabs=tabs)

    def _first_tab(self, spreadsheet_id: str) -> str:
        body = self._request("GET", f"/{spreadsheet_id}", params={"fields": "sheets.properties.title"})
        sheets = body.get("sheets") or []
        if not sheets:
            raise ConnectorError("validation", "No sheets found in the spreadsheet", status_code=400)
        return str(sheets[0]["properties"]["title"])

    def fetch_range(self, sheet_url: str, sheet_name: str | None = None, cell_range: str = DEFAULT_PREVIEW_RANGE) -> SheetData:
        spreadsheet_id = _require_id(sheet_url)
        tab = sheet_name or self._first_tab(spreadsheet_id)
        a1 = quote(f"'{tab}'!{cell_range}", safe="")
        body = self._request(
            "GET",
            f"/{spreadsheet_id}/values/{a1}",
            params={"valueRenderOption": "UNFORMATTED_VALUE"},
        )
        values = body.get("values") or []
        first_row, _ = _row_bounds(cell_range, len(values))
        return split_values(spreadsheet_id, tab, values, has_header=first_row == 1)

    def write_range(self, sheet_url: str, data: list[list[str]], sheet_name: str | None = None) -> bool:
        if not self.access_token:
            raise ConnectorError("auth", "writing requires an OAuth access token", status_code=401)
        spreadsheet_id = _require_id(sheet_url)
        tab = sheet_name or self._first_tab(spreadsheet_id)
        quoted_tab = quote(f"'{tab}'", safe="")
        self._request("POST", f"/{spreadsheet_id}/values/{quoted_tab}:clear", json={})
        a1 = f"'{tab}'!A1"
        self._request(
            "PUT",
            f"/{spreadsheet_id}/values/{quote(a1, safe='')}",
            params={"valueInputOption": "RAW"},
            json={"range": a1, "majorDimension": "ROWS", "values": data},
        )
        return True


class MockSheetsClient:

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.books: dict[str, dict[str, list[list[str]]]] = {}
        self.titles: dict[str, str] = {}

    def seed(self, sheet_url: str, sheet_name: str, values: list[list[str]], title: str = "Mock Sheet") -> None:
        spreadsheet_id = _require_id(sheet_url)
        with self._lock:
            self.books.setdefault(spreadsheet_id, {})[sheet_name] = [list(row) for row in values]
            self.titles[spreadsheet_id] = title

    def validate_access(self, sheet_url: str) -> SheetValidation:
        spreadsheet_id = extract_spreadsheet_id(sheet_url)
        if not spreadsheet_id:
            return SheetValidation(valid=False, error="Invalid Google Sheets URL")
        with self._lock:
            book = self.books.get(spreadsheet_id)
            if book is None:
                return SheetValidation(valid=False, error="Unable to access the sheet: not found")
            tabs = [SheetTab(name=name, row_count=len(rows)) for name, rows in book.items()]
            return SheetValidation(valid=True, title=self.titles.get(spreadsheet_id, ""), tabs=tabs)

    def fetch_range(self, sheet_url: str, sheet_name: str | None = None, cell_range: str = DEFAULT_PREVIEW_RANGE) -> SheetData:
        spreadsheet_id = _require_id(sheet_url)
        with self._lock:
            book = self.books.get(spreadsheet_id)
            if not book:
                raise ConnectorError("validation", "No sheets found in the spreadsheet", status_code=404)
            tab = sheet_name or next(iter(book))
            if tab not in book:
                raise ConnectorError("validation", f"Unknown sheet tab {tab}", status_code=400)
            values = [list(row) for row in book[tab]]
        first_row, last_row = _row_bounds(cell_range, len(values))
        window = values[first_row - 1 : last_row]
        return split_values(spreadsheet_id, tab, window, has_header=first_row == 1)

    def write_range(self, sheet_url: str, data: list[list[str]], sheet_name: str | None = None) -> bool:
        spreadsheet_id = _require_id(sheet_url)
        with self._lock:
            book = self.books.setdefault(spreadsheet_id, {})
            tab = sheet_name or next(iter(book), "Sheet1")
            book[tab] = [list(row) for row in data]
        return True


_ROW_RANGE = re.compile(r"^[A-Z]+(\d+):[A-Z]+(\d+)$")


def _row_bounds(cell_range: str, total: int) -> tuple[int, int]:
    match = _ROW_RANGE.match(cell_range)
    if not match:
        return 1, total
    return int(match.group(1)), int(match.group(2))


def row_window_range(start_row: int, end_row: int, last_column: str = "ZZ") -> str:
    return f"A{start_row}:{last_column}{end_row}"


def _google_status(response: httpx.Response) -> str | None:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        return None
    value = error.get("status") if isinstance(error, dict) else None
    return str(value) if value else None


def _google_message(response: httpx.Response) -> str:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        return f"sheets request failed with status {response.status_code}"
    message = error.get("message") if isinstance(error, dict) else None
    return str(message or f"sheets request failed with status {response.status_code}")


mock_sheets_client = MockSheetsClient()


def get_sheets_client() -> SheetsClient:
    if settings.connector_mode == "live":
        return GoogleSheetsClient()
    return mock_sheets_client
