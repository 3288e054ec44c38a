"""
PulseCheck - Data Models
Ledger records, API schemas, and the error taxonomy.

Records:
  Survey (one tab per survey), Recipient, Group (rows of the Groups tab),
  SurveyDefinition (JSON stored in the survey's definition cell)
"""
import json
import logging
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ValidationError, field_validator
from pulsecheck.config import DEFAULT_REMINDER_MESSAGE, DEFAULT_REMINDER_HOURS

logger = logging.getLogger(__name__)


# ── Errors ────────────────────────────────────────────────────────

class LedgerError(Exception):
    """Base class for ledger failures."""


class StoreUnavailable(LedgerError):
    """The backing store could not be reached (network, auth, 5xx)."""


class NotFound(LedgerError):
    """A tab, definition, header, question or group is missing."""


class GroupExists(LedgerError):
    """A group with this name is already saved."""


class MessagingError(Exception):
    """A messaging call failed for a single recipient."""


# ── Enums ─────────────────────────────────────────────────────────

class RecipientKind(str, Enum):
    INDIVIDUAL = "individual"
    CHANNEL = "channel"


class PollFormat(str, Enum):
    BUTTONS = "buttons"
    DROPDOWN = "dropdown"
    CHECKBOXES = "checkboxes"


# Slack id prefixes
_INDIVIDUAL_PREFIXES = ("U", "W")
_CHANNEL_PREFIXES = ("C", "G")


def kind_for_id(recipient_id: str) -> Optional[RecipientKind]:
    """Derive the recipient kind from a Slack id. None if unrecognised."""
    if not recipient_id:
        return None
    if recipient_id.startswith(_INDIVIDUAL_PREFIXES):
        return RecipientKind.INDIVIDUAL
    if recipient_id.startswith(_CHANNEL_PREFIXES):
        return RecipientKind.CHANNEL
    return None


# ── Ledger Records ────────────────────────────────────────────────

class Recipient(BaseModel):
    id: str
    kind: RecipientKind = RecipientKind.INDIVIDUAL
    thread_ts: Optional[str] = None  # Message to thread the reminder under

    @property
    def is_individual(self) -> bool:
        return self.kind == RecipientKind.INDIVIDUAL


def parse_recipients(raw: str) -> list[Recipient]:
    """
    Parse the recipients cell (JSON array).

    Accepts bare id strings or objects with id/kind/ts. Entries whose id
    is not a recognisable individual or channel id are dropped.
    """
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Recipients cell is not valid JSON: {raw[:80]!r}")
        return []
    if not isinstance(items, list):
        return []

    recipients = []
    for item in items:
        if isinstance(item, str):
            item = {"id": item}
        if not isinstance(item, dict) or not item.get("id"):
            continue
        recipient_id = str(item["id"])
        kind = item.get("kind") or kind_for_id(recipient_id)
        if kind not in (RecipientKind.INDIVIDUAL.value, RecipientKind.CHANNEL.value):
            logger.debug(f"Dropping recipient with unrecognised id: {recipient_id}")
            continue
        recipients.append(Recipient(
            id=recipient_id,
            kind=kind,
            thread_ts=item.get("thread_ts") or item.get("ts"),
        ))
    return recipients


def dump_recipients(recipients: list[Recipient]) -> str:
    return json.dumps([r.model_dump(mode="json", exclude_none=True) for r in recipients])


class QuestionDefinition(BaseModel):
    text: str
    format: PollFormat = PollFormat.BUTTONS
    options: list[str] = Field(default_factory=list)


class SurveyDefinition(BaseModel):
    """JSON stored in the survey's definition cell."""
    questions: list[QuestionDefinition] = Field(default_factory=list)
    intro_message: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None

    @property
    def question_texts(self) -> list[str]:
        return [q.text for q in self.questions]

    @classmethod
    def from_cell(cls, survey_name: str, raw: str) -> "SurveyDefinition":
        if not raw or not raw.strip():
            raise NotFound(f"Survey '{survey_name}' has no definition")
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise NotFound(f"Survey '{survey_name}' has a malformed definition: {e}") from e


class Survey(BaseModel):
    """Metadata block of a survey tab (rows 1-5); the definition is read separately."""
    name: str
    creator: str = ""
    recipients: list[Recipient] = Field(default_factory=list)
    reminder_message: str = ""
    reminder_hours: float = 0
    last_reminder: int = 0  # Epoch millis

    def next_reminder_due(self, ms_per_hour: int) -> int:
        return self.last_reminder + int(self.reminder_hours * ms_per_hour)


class Group(BaseModel):
    name: str
    creator: str = ""
    members: list[str] = Field(default_factory=list)
    created_at: str = ""


class SurveyDetails(BaseModel):
    """Reminder settings written alongside a new survey."""
    reminder_message: str
    reminder_hours: float
    recipients: list[Recipient] = Field(default_factory=list)


class SweepResult(BaseModel):
    surveys_seen: int = 0
    surveys_due: int = 0
    surveys_failed: int = 0
    reminders_sent: int = 0
    reminders_failed: int = 0
    skipped_overlap: bool = False


# ── API Schemas ───────────────────────────────────────────────────

class SurveyCreateRequest(BaseModel):
    name: str
    creator: str
    questions: list[QuestionDefinition]
    reminder_message: str = DEFAULT_REMINDER_MESSAGE
    reminder_hours: float = Field(DEFAULT_REMINDER_HOURS, gt=0)
    recipients: list[str] = Field(default_factory=list)
    group: Optional[str] = None
    intro_message: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None


class ResponseSubmitRequest(BaseModel):
    user: str
    question: str
    answer: str
    event_id: Optional[str] = None      # External delivery id, for dedup
    allow_change: bool = False          # Overwrite an existing answer


class GroupCreateRequest(BaseModel):
    name: str
    creator: str
    members: list[str]


class RecipientsUpdateRequest(BaseModel):
    recipients: list[Recipient]

    @field_validator("recipients", mode="before")
    @classmethod
    def derive_kind(cls, value):
        """Fill a missing kind from the id prefix, as the recipients cell does."""
        if not isinstance(value, list):
            return value
        items = []
        for item in value:
            if isinstance(item, dict) and not item.get("kind"):
                item = {**item, "kind": kind_for_id(str(item.get("id", "")))}
            items.append(item)
        return items
