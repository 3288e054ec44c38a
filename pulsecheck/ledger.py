"""
PulseCheck - Ledger Accessor
Typed reads and writes over the fixed survey tab layout.

Survey tab layout (1-based rows):
  1 Creator | 2 Recipients (JSON) | 3 Reminder Message | 4 Reminder Hours
  5 Last Reminder (epoch ms) | 6 Definition (JSON) | 7 Header | 8+ answers

The store has no locks or transactions. Column and row lookups are cached
per survey; the one place a stale read can cause a duplicate row is the
miss-then-append in upsert_response, which is serialised per (survey, user)
inside this process but not across processes.
"""
import asyncio
import logging
import weakref
from typing import Optional

from pulsecheck.audit import audit
from pulsecheck.config import (
    ROW_RECIPIENTS, ROW_LAST_REMINDER, ROW_DEFINITION, ROW_HEADER,
    ROW_CREATOR, ROW_REMINDER_MESSAGE, ROW_REMINDER_HOURS, FIRST_DATA_ROW,
    METADATA_LABELS, FIXED_HEADERS, FIXED_COLUMN_COUNT, RESERVED_TABLES,
)
from pulsecheck.integrations.sheets import TabularStore, cell_ref, column_letter
from pulsecheck.models import (
    LedgerError, NotFound, Recipient, Survey, SurveyDefinition, SurveyDetails,
    dump_recipients, parse_recipients,
)

logger = logging.getLogger(__name__)


class SurveySchema:
    """Ordered column bindings for one survey, built from its header row."""

    def __init__(self, headers: list[str]):
        self.headers = list(headers)
        self.columns: dict[str, int] = {}
        for position, header in enumerate(self.headers[FIXED_COLUMN_COUNT:]):
            # First occurrence wins, matching a left-to-right header scan
            self.columns.setdefault(header, FIXED_COLUMN_COUNT + position + 1)

    @property
    def questions(self) -> list[str]:
        return self.headers[FIXED_COLUMN_COUNT:]

    @property
    def width(self) -> int:
        return len(self.headers)

    def column_for(self, question: str) -> Optional[int]:
        """1-based column for a question header, or None."""
        return self.columns.get(question)


def _format_hours(hours: float) -> str:
    return str(int(hours)) if float(hours).is_integer() else str(hours)


def _cell(rows: list[list[str]], row: int, column: int = 2) -> str:
    """Value at 1-based (row, column) of a block read from A1."""
    if len(rows) < row:
        return ""
    values = rows[row - 1]
    return values[column - 1] if len(values) >= column else ""


class Ledger:
    """The spreadsheet as the system of record for surveys and answers."""

    def __init__(self, store: TabularStore):
        self.store = store
        self._schemas: dict[str, SurveySchema] = {}
        self._row_index: dict[str, dict[str, int]] = {}
        # (survey, user) -> Lock; an entry lives only while some upsert holds it
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def invalidate(self, name: str) -> None:
        """Drop cached column bindings and row positions for a survey."""
        self._schemas.pop(name, None)
        self._row_index.pop(name, None)

    # ── Survey Creation ──────────────────────────────────────────

    async def create_survey(
        self,
        name: str,
        creator: str,
        question_headers: list[str],
        details: SurveyDetails,
        definition_json: str,
        created_ms: int = 0,
        request_id: Optional[str] = None,
    ) -> bool:
        """
        Create the survey tab, then write the 7-row metadata block.

        Two writes, no rollback: a False return after the first write
        succeeded leaves an empty tab behind.
        """
        try:
            await self.store.create_table(name)
        except LedgerError as e:
            logger.error(f"Could not create survey tab '{name}': {e}")
            return False

        self.invalidate(name)
        values = [
            creator,
            dump_recipients(details.recipients),
            details.reminder_message,
            _format_hours(details.reminder_hours),
            str(created_ms),
            definition_json,
        ]
        block = [[label, value] for label, value in zip(METADATA_LABELS, values)]
        block.append(FIXED_HEADERS + list(question_headers))

        try:
            await self.store.write_range(name, "A1", block)
        except LedgerError as e:
            logger.error(
                f"Survey tab '{name}' created but metadata write failed: {e}. "
                "The tab may be left as an orphaned empty survey."
            )
            audit("survey_orphaned", survey=name, request_id=request_id,
                  payload={"error": str(e)})
            return False

        audit("survey_created", survey=name, actor=creator, request_id=request_id,
              payload={"questions": len(question_headers),
                       "recipients": len(details.recipients)})
        return True

    async def save_recipients(
        self,
        name: str,
        recipients: list[Recipient],
        request_id: Optional[str] = None,
    ) -> None:
        """Record who the survey went to (and the thread refs) once dispatched."""
        await self.store.write_range(
            name, f"B{ROW_RECIPIENTS}", [[dump_recipients(recipients)]],
        )
        audit("recipients_saved", survey=name, request_id=request_id,
              payload={"count": len(recipients)})

    # ── Metadata Reads ───────────────────────────────────────────

    async def list_survey_names(self) -> list[str]:
        tables = await self.store.list_tables()
        return [t for t in tables if t not in RESERVED_TABLES]

    async def load_survey(self, name: str) -> Survey:
        rows = await self.store.read_range(name, f"A1:B{ROW_LAST_REMINDER}")
        if not rows:
            raise NotFound(f"Survey '{name}' has no metadata block")

        hours_raw = _cell(rows, ROW_REMINDER_HOURS)
        try:
            reminder_hours = float(hours_raw) if hours_raw else 0.0
        except ValueError as e:
            raise LedgerError(f"Survey '{name}' has invalid reminder hours {hours_raw!r}") from e

        last_raw = _cell(rows, ROW_LAST_REMINDER)
        try:
            last_reminder = int(float(last_raw)) if last_raw else 0
        except ValueError:
            logger.debug(f"Survey '{name}' last reminder {last_raw!r} unreadable, using 0")
            last_reminder = 0

        return Survey(
            name=name,
            creator=_cell(rows, ROW_CREATOR),
            recipients=parse_recipients(_cell(rows, ROW_RECIPIENTS)),
            reminder_message=_cell(rows, ROW_REMINDER_MESSAGE),
            reminder_hours=reminder_hours,
            last_reminder=last_reminder,
        )

    async def get_definition(self, name: str) -> SurveyDefinition:
        """Raises NotFound if the definition cell is absent, empty or malformed."""
        rows = await self.store.read_range(name, f"B{ROW_DEFINITION}")
        return SurveyDefinition.from_cell(name, _cell(rows, 1, 1))

    async def schema(self, name: str) -> SurveySchema:
        cached = self._schemas.get(name)
        if cached is not None:
            return cached
        rows = await self.store.read_range(name, f"{ROW_HEADER}:{ROW_HEADER}")
        if not rows or not rows[0]:
            raise NotFound(f"Survey '{name}' has no header row")
        schema = SurveySchema(rows[0])
        self._schemas[name] = schema
        return schema

    async def get_question_text(self, name: str, index: int) -> str:
        """Header cell at index + 2 (after User and Timestamp)."""
        schema = await self.schema(name)
        position = FIXED_COLUMN_COUNT + index
        if index < 0 or position >= schema.width:
            raise NotFound(f"Survey '{name}' has no question at index {index}")
        return schema.headers[position]

    async def update_last_reminder(self, name: str, timestamp_ms: int) -> None:
        await self.store.write_range(
            name, f"B{ROW_LAST_REMINDER}", [[str(timestamp_ms)]],
        )

    # ── Answer Rows ──────────────────────────────────────────────

    async def _load_row_index(self, name: str) -> dict[str, int]:
        rows = await self.store.read_range(name, f"A{FIRST_DATA_ROW}:A")
        index: dict[str, int] = {}
        for offset, row in enumerate(rows):
            if row and row[0]:
                index.setdefault(row[0], FIRST_DATA_ROW + offset)
        self._row_index[name] = index
        return index

    async def find_row(self, name: str, user: str) -> Optional[int]:
        """
        Row number of the user's answer row, or None.
        Answer rows are never deleted, so a cached hit stays valid; a miss
        re-reads column A because another process may have appended it.
        """
        index = self._row_index.get(name)
        if index is not None and user in index:
            return index[user]
        index = await self._load_row_index(name)
        return index.get(user)

    async def read_response_row(self, name: str, user: str) -> Optional[list[str]]:
        row = await self.find_row(name, user)
        if row is None:
            return None
        rows = await self.store.read_range(name, f"{row}:{row}")
        return rows[0] if rows else []

    async def read_all_responses(self, name: str) -> dict[str, list[str]]:
        """Every answer row keyed by user (first row wins), refreshing the row index."""
        schema = await self.schema(name)
        last_column = column_letter(max(schema.width, FIXED_COLUMN_COUNT))
        rows = await self.store.read_range(name, f"A{FIRST_DATA_ROW}:{last_column}")
        responses: dict[str, list[str]] = {}
        index: dict[str, int] = {}
        for offset, row in enumerate(rows):
            if not row or not row[0] or row[0] in responses:
                continue
            responses[row[0]] = row
            index[row[0]] = FIRST_DATA_ROW + offset
        self._row_index[name] = index
        return responses

    def _lock(self, name: str, user: str) -> asyncio.Lock:
        lock = self._locks.get((name, user))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[(name, user)] = lock
        return lock

    async def upsert_response(
        self,
        name: str,
        user: str,
        question: str,
        answer: str,
        timestamp: str,
        request_id: Optional[str] = None,
    ) -> bool:
        """
        Record an answer. Writes one cell if the user already has a row,
        otherwise appends a new row. An unknown question (or a survey with
        no header) is logged and ignored. Returns True if a write happened.
        """
        try:
            schema = await self.schema(name)
        except NotFound as e:
            logger.warning(f"Dropping answer from {user}: {e}")
            return False

        column = schema.column_for(question)
        if column is None:
            logger.warning(
                f"Question '{question}' not found in header of '{name}'; "
                f"answer from {user} dropped"
            )
            return False

        lock = self._lock(name, user)
        async with lock:
            row = await self.find_row(name, user)
            if row is not None:
                await self.store.write_range(name, cell_ref(row, column), [[answer]])
                created = False
            else:
                values = [""] * schema.width
                values[0] = user
                values[1] = timestamp
                values[column - 1] = answer
                row = await self.store.append_rows(name, [values])
                if row:
                    self._row_index.setdefault(name, {})[user] = row
                else:
                    self._row_index.pop(name, None)
                created = True

        audit("response_recorded", survey=name, user=user, request_id=request_id,
              payload={"question": question, "row": row, "new_row": created})
        return True
