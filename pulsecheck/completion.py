"""
PulseCheck - Completion Tracker
Answer-presence checks over the ledger.
Gates duplicate submissions, and decides who still needs a reminder.

Completion policy: a user has completed a survey only when every question
of the survey's definition has a non-empty cell in their row.
"""
import logging
from typing import Optional

from pulsecheck.ledger import Ledger
from pulsecheck.models import NotFound

logger = logging.getLogger(__name__)


def _cell(row: list[str], column: Optional[int]) -> str:
    if column is None or len(row) < column:
        return ""
    return row[column - 1]


class CompletionTracker:
    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    async def is_answered(self, name: str, user: str, question: str) -> bool:
        """
        True iff the (user, question) cell is non-empty.
        False if the survey header, the question or the user's row is missing.
        """
        try:
            schema = await self.ledger.schema(name)
        except NotFound as e:
            logger.warning(f"Completion check on '{name}' failed: {e}")
            return False

        column = schema.column_for(question)
        if column is None:
            logger.debug(f"Question '{question}' not in header of '{name}'")
            return False

        row = await self.ledger.read_response_row(name, user)
        if row is None:
            return False

        answered = _cell(row, column) != ""
        if answered:
            logger.info(f"Duplicate answer detected for user \"{user}\" on question \"{question}\"")
        return answered

    async def is_complete(self, name: str, user: str, questions: list[str]) -> bool:
        """Every listed question answered. A survey with no questions is never complete."""
        if not questions:
            return False
        try:
            schema = await self.ledger.schema(name)
        except NotFound as e:
            logger.warning(f"Completion check on '{name}' failed: {e}")
            return False

        row = await self.ledger.read_response_row(name, user)
        if row is None:
            return False
        return all(_cell(row, schema.column_for(q)) != "" for q in questions)

    async def incomplete_users(
        self,
        name: str,
        users: list[str],
        questions: list[str],
    ) -> list[str]:
        """
        Users (ledger keys) who have not answered every question.
        Reads the whole answer block once instead of one row per user.
        """
        if not questions:
            return list(users)
        schema = await self.ledger.schema(name)
        responses = await self.ledger.read_all_responses(name)
        columns = [schema.column_for(q) for q in questions]

        incomplete = []
        for user in users:
            row = responses.get(user)
            if row is None or any(_cell(row, c) == "" for c in columns):
                incomplete.append(user)
        return incomplete
