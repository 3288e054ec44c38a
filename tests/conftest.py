import asyncio
from typing import Optional

import pytest

from pulsecheck.integrations.messaging import MessagingProvider
from pulsecheck.integrations.sheets import MemoryStore
from pulsecheck.ledger import Ledger
from pulsecheck.models import (
    MessagingError, QuestionDefinition, Recipient, SurveyDefinition, SurveyDetails,
    kind_for_id,
)

HOUR_MS = 3_600_000
NOW = 1_750_000_000_000


class FakeMessenger(MessagingProvider):
    """Records sends; names and failures are configured per user id."""

    def __init__(self, names: Optional[dict] = None):
        self.names = names or {}
        self.sent: list[dict] = []
        self.fail_send: set[str] = set()
        self.hang_send: set[str] = set()
        self.name_lookups: list[str] = []

    async def send_message(self, recipient_id, text, thread_ts=None):
        if recipient_id in self.hang_send:
            await asyncio.sleep(3600)
        if recipient_id in self.fail_send:
            raise MessagingError("channel_not_found")
        self.sent.append({"to": recipient_id, "text": text, "thread_ts": thread_ts})
        return {"channel": recipient_id, "ts": "1700000000.000100"}

    async def resolve_display_name(self, user_id):
        self.name_lookups.append(user_id)
        if user_id not in self.names:
            raise MessagingError("user_not_found")
        return self.names[user_id]


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger(store):
    return Ledger(store)


@pytest.fixture
def messenger():
    return FakeMessenger({"U1": "Bob Jones", "U2": "Jane Doe", "U3": "Sam"})


async def make_survey(
    ledger: Ledger,
    name: str = "Team Pulse",
    questions=("How was your week?", "Any blockers?"),
    recipients=(),
    reminder_hours: float = 1,
    last_reminder: int = 0,
    message: str = "Hi [firstName], please respond",
) -> None:
    definition = SurveyDefinition(
        questions=[QuestionDefinition(text=q, options=["Good", "Bad"]) for q in questions],
    )
    created = await ledger.create_survey(
        name,
        "Alice Admin",
        list(questions),
        SurveyDetails(
            reminder_message=message,
            reminder_hours=reminder_hours,
            recipients=[
                r if isinstance(r, Recipient) else Recipient(id=r, kind=kind_for_id(r))
                for r in recipients
            ],
        ),
        definition.model_dump_json(),
        created_ms=last_reminder,
    )
    assert created
