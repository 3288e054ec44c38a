"""
PulseCheck - Tabular Store Adapter (Google Sheets)
The ledger's only persistence layer. No locks, no transactions.

The adapter handles:
  - Tab creation and listing
  - Range reads and writes in A1 notation
  - Row appends (returns where the row landed)
  - Row deletion by index range
"""
import re
import json
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import quote

import httpx
import google.auth.exceptions
import google.auth.transport.requests
from google.oauth2 import service_account

from pulsecheck.config import (
    LEDGER_BACKEND, GOOGLE_SHEET_ID, GOOGLE_CREDENTIALS_JSON,
    SHEETS_BASE_URL, SHEETS_SCOPES, HTTP_TIMEOUT_SECONDS,
)
from pulsecheck.models import LedgerError, StoreUnavailable, NotFound

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^([A-Z]*)(\d*)(?::([A-Z]*)(\d*))?$")
_UPDATED_ROW_RE = re.compile(r"!\$?[A-Z]+\$?(\d+)")


# ── A1 Notation ──────────────────────────────────────────────────

def column_letter(index: int) -> str:
    """1 -> A, 26 -> Z, 27 -> AA."""
    letters = ""
    while index > 0:
        index, rem = divmod(index - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def column_index(letters: str) -> int:
    """A -> 1, Z -> 26, AA -> 27."""
    index = 0
    for ch in letters:
        index = index * 26 + (ord(ch) - ord("A") + 1)
    return index


def cell_ref(row: int, column: int) -> str:
    return f"{column_letter(column)}{row}"


def qualified_range(table: str, range_ref: str) -> str:
    """'My Survey'!A1:B6; tab names are always quoted."""
    escaped = table.replace("'", "''")
    return f"'{escaped}'!{range_ref}"


def parse_range(range_ref: str) -> tuple:
    """
    Parse an A1 range into (first_row, first_col, last_row, last_col).
    Bounds are 1-based and inclusive; None means open-ended.
    """
    match = _RANGE_RE.match(range_ref.upper())
    if not match or not any(match.groups()):
        raise ValueError(f"Unsupported range: {range_ref}")
    c1, r1, c2, r2 = match.groups()
    if ":" not in range_ref:
        c2, r2 = c1, r1
    return (
        int(r1) if r1 else None,
        column_index(c1) if c1 else None,
        int(r2) if r2 else None,
        column_index(c2) if c2 else None,
    )


def _trim(rows: list[list[str]]) -> list[list[str]]:
    """Drop trailing empty cells and trailing empty rows, as the Sheets API does."""
    trimmed = []
    for row in rows:
        row = list(row)
        while row and row[-1] == "":
            row.pop()
        trimmed.append(row)
    while trimmed and not trimmed[-1]:
        trimmed.pop()
    return trimmed


# ── Store Contract ───────────────────────────────────────────────

class TabularStore(ABC):
    """Abstract interface for the tabular backing store."""

    @abstractmethod
    async def create_table(self, name: str) -> None:
        """Create a new tab. Raises LedgerError if it already exists."""
        ...

    @abstractmethod
    async def list_tables(self) -> list[str]:
        """Tab titles in spreadsheet order."""
        ...

    @abstractmethod
    async def read_range(self, name: str, range_ref: str) -> list[list[str]]:
        """Read a range. Trailing empty cells/rows are omitted; [] if empty."""
        ...

    @abstractmethod
    async def write_range(self, name: str, range_ref: str, rows: list[list[str]]) -> None:
        """Overwrite cells starting at the top-left of range_ref."""
        ...

    @abstractmethod
    async def append_rows(self, name: str, rows: list[list[str]]) -> int:
        """Append rows after the last non-empty row. Returns the first new row number."""
        ...

    @abstractmethod
    async def delete_rows(self, name: str, first_row: int, last_row: int) -> None:
        """Delete rows first_row..last_row (1-based, inclusive), shifting later rows up."""
        ...

    async def close(self) -> None:
        pass


class GoogleSheetsAdapter(TabularStore):
    """Google Sheets REST v4, authenticated with a service account."""

    def __init__(
        self,
        spreadsheet_id: str = GOOGLE_SHEET_ID,
        credentials_json: str = GOOGLE_CREDENTIALS_JSON,
        base_url: str = SHEETS_BASE_URL,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.spreadsheet_id = spreadsheet_id
        self.base_url = base_url.rstrip("/")
        self._credentials_json = credentials_json
        self._credentials = None
        self._sheet_ids: dict[str, int] = {}
        self.client = httpx.AsyncClient(timeout=timeout)

    async def _token(self) -> str:
        if self._credentials is None:
            if not self._credentials_json:
                raise StoreUnavailable("GOOGLE_CREDENTIALS_JSON environment variable not set.")
            try:
                info = json.loads(self._credentials_json)
                self._credentials = service_account.Credentials.from_service_account_info(
                    info, scopes=SHEETS_SCOPES,
                )
            except (ValueError, KeyError) as e:
                raise StoreUnavailable(f"Invalid service account credentials: {e}") from e

        if not self._credentials.valid:
            try:
                # google-auth refresh is blocking
                await asyncio.to_thread(
                    self._credentials.refresh,
                    google.auth.transport.requests.Request(),
                )
            except google.auth.exceptions.GoogleAuthError as e:
                logger.error(f"Sheets auth refresh failed: {e}")
                raise StoreUnavailable(f"Auth refresh failed: {e}") from e
        return self._credentials.token

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        """Make authenticated request to the Sheets API."""
        url = f"{self.base_url}/spreadsheets/{self.spreadsheet_id}{path}"
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {await self._token()}"

        try:
            resp = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Sheets API transport error: {e}")
            raise StoreUnavailable(str(e)) from e

        if resp.status_code == 404 or (
            resp.status_code == 400 and "Unable to parse range" in resp.text
        ):
            raise NotFound(f"Sheets range not found: {path}")
        if resp.status_code == 400 and "already exists" in resp.text:
            raise LedgerError(f"Sheets rejected request: {resp.text[:200]}")
        if resp.is_error:
            logger.error(f"Sheets API error {resp.status_code}: {resp.text[:200]}")
            raise StoreUnavailable(f"Sheets API returned {resp.status_code}")
        return resp.json() if resp.content else {}

    def _values_path(self, name: str, range_ref: str) -> str:
        return "/values/" + quote(qualified_range(name, range_ref), safe="")

    async def _load_sheet_ids(self) -> dict[str, int]:
        result = await self._request(
            "GET", "", params={"fields": "sheets.properties(sheetId,title)"},
        )
        self._sheet_ids = {
            s["properties"]["title"]: s["properties"]["sheetId"]
            for s in result.get("sheets", [])
        }
        return self._sheet_ids

    async def create_table(self, name: str) -> None:
        result = await self._request("POST", ":batchUpdate", json={
            "requests": [{"addSheet": {"properties": {"title": name}}}],
        })
        replies = result.get("replies") or [{}]
        sheet_id = replies[0].get("addSheet", {}).get("properties", {}).get("sheetId")
        if sheet_id is not None:
            self._sheet_ids[name] = sheet_id
        logger.info(f"Created sheet tab '{name}'")

    async def list_tables(self) -> list[str]:
        return list((await self._load_sheet_ids()).keys())

    async def read_range(self, name: str, range_ref: str) -> list[list[str]]:
        result = await self._request("GET", self._values_path(name, range_ref))
        return result.get("values", [])

    async def write_range(self, name: str, range_ref: str, rows: list[list[str]]) -> None:
        await self._request(
            "PUT",
            self._values_path(name, range_ref),
            params={"valueInputOption": "RAW"},
            json={"values": rows},
        )

    async def append_rows(self, name: str, rows: list[list[str]]) -> int:
        result = await self._request(
            "POST",
            self._values_path(name, "A1") + ":append",
            params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
            json={"values": rows},
        )
        updated_range = result.get("updates", {}).get("updatedRange", "")
        match = _UPDATED_ROW_RE.search(updated_range)
        if not match:
            logger.warning(f"Append to '{name}' returned no row position: {updated_range!r}")
            return 0
        return int(match.group(1))

    async def delete_rows(self, name: str, first_row: int, last_row: int) -> None:
        sheet_id = self._sheet_ids.get(name)
        if sheet_id is None:
            sheet_id = (await self._load_sheet_ids()).get(name)
        if sheet_id is None:
            raise NotFound(f"Sheet tab '{name}' not found")
        await self._request("POST", ":batchUpdate", json={
            "requests": [{
                "deleteDimension": {
                    "range": {
                        "sheetId": sheet_id,
                        "dimension": "ROWS",
                        "startIndex": first_row - 1,
                        "endIndex": last_row,
                    },
                },
            }],
        })

    async def close(self) -> None:
        await self.client.aclose()


class MemoryStore(TabularStore):
    """
    In-process store with the same range semantics as Sheets.
    Used for local runs (LEDGER_BACKEND=memory) and tests.
    """

    def __init__(self):
        self.tables: dict[str, list[list[str]]] = {}
        self.calls: list[tuple] = []

    def _table(self, name: str) -> list[list[str]]:
        if name not in self.tables:
            raise NotFound(f"Sheet tab '{name}' not found")
        return self.tables[name]

    async def create_table(self, name: str) -> None:
        self.calls.append(("create_table", name))
        if name in self.tables:
            raise LedgerError(f"A sheet with the name '{name}' already exists")
        self.tables[name] = []

    async def list_tables(self) -> list[str]:
        self.calls.append(("list_tables",))
        return list(self.tables.keys())

    async def read_range(self, name: str, range_ref: str) -> list[list[str]]:
        self.calls.append(("read_range", name, range_ref))
        rows = self._table(name)
        r1, c1, r2, c2 = parse_range(range_ref)
        r1 = r1 or 1
        c1 = c1 or 1
        r2 = r2 or len(rows)
        window = []
        for row in rows[r1 - 1:r2]:
            window.append(row[c1 - 1:c2] if c2 else row[c1 - 1:])
        return _trim(window)

    async def write_range(self, name: str, range_ref: str, rows: list[list[str]]) -> None:
        self.calls.append(("write_range", name, range_ref))
        table = self._table(name)
        r1, c1, _, _ = parse_range(range_ref)
        r1 = r1 or 1
        c1 = c1 or 1
        for offset, values in enumerate(rows):
            while len(table) < r1 + offset:
                table.append([])
            row = table[r1 + offset - 1]
            needed = c1 - 1 + len(values)
            if len(row) < needed:
                row.extend([""] * (needed - len(row)))
            for i, value in enumerate(values):
                row[c1 - 1 + i] = "" if value is None else str(value)

    async def append_rows(self, name: str, rows: list[list[str]]) -> int:
        self.calls.append(("append_rows", name))
        table = self._table(name)
        occupied = len(_trim(table))
        del table[occupied:]
        first_row = occupied + 1
        for values in rows:
            table.append(["" if v is None else str(v) for v in values])
        return first_row

    async def delete_rows(self, name: str, first_row: int, last_row: int) -> None:
        self.calls.append(("delete_rows", name, first_row, last_row))
        table = self._table(name)
        del table[first_row - 1:last_row]


def get_store(backend: Optional[str] = None) -> TabularStore:
    """Factory: return the configured tabular store."""
    if (backend or LEDGER_BACKEND) == "memory":
        return MemoryStore()
    return GoogleSheetsAdapter()  # Default
