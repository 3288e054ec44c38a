"""
PulseCheck - Recipient / Group Resolver
Saved groups live in the Groups tab: Name | Creator | Members | Created At.
Members are stored comma-delimited. Names are unique at creation time;
if duplicates exist from older data, the first row wins.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from pulsecheck.audit import audit
from pulsecheck.config import GROUPS_TABLE, GROUP_HEADERS, GROUP_MEMBER_DELIMITER
from pulsecheck.integrations.sheets import TabularStore, column_letter
from pulsecheck.models import Group, GroupExists, NotFound

logger = logging.getLogger(__name__)

_GROUP_RANGE = f"A2:{column_letter(len(GROUP_HEADERS))}"


def split_members(raw: str) -> list[str]:
    return [m.strip() for m in (raw or "").split(GROUP_MEMBER_DELIMITER) if m.strip()]


def _row_to_group(row: list[str]) -> Group:
    padded = list(row) + [""] * (len(GROUP_HEADERS) - len(row))
    return Group(
        name=padded[0],
        creator=padded[1],
        members=split_members(padded[2]),
        created_at=padded[3],
    )


class GroupResolver:
    def __init__(self, store: TabularStore):
        self.store = store
        # Lookup-then-write on the Groups tab is serialised within this process
        self._write_lock = asyncio.Lock()

    async def ensure_table(self) -> None:
        """Create the Groups tab with its header if it does not exist yet."""
        if GROUPS_TABLE in await self.store.list_tables():
            return
        await self.store.create_table(GROUPS_TABLE)
        await self.store.write_range(GROUPS_TABLE, "A1", [GROUP_HEADERS])
        logger.info(f"Created '{GROUPS_TABLE}' tab")

    async def _rows(self) -> list[tuple[int, list[str]]]:
        """(row number, values) for every stored group row."""
        try:
            rows = await self.store.read_range(GROUPS_TABLE, _GROUP_RANGE)
        except NotFound:
            return []
        return [(offset + 2, row) for offset, row in enumerate(rows) if row and row[0]]

    async def find_group(self, name: str) -> Optional[Group]:
        for _, row in await self._rows():
            if row[0] == name:
                return _row_to_group(row)
        return None

    async def list_groups(self) -> list[Group]:
        return [_row_to_group(row) for _, row in await self._rows()]

    async def resolve_group(self, name: str) -> list[str]:
        """Member ids of a saved group; [] if there is no such group."""
        group = await self.find_group(name)
        if group is None:
            logger.info(f"Group '{name}' not found")
            return []
        return group.members

    async def create_group(
        self,
        name: str,
        creator: str,
        member_ids: Iterable[str],
        request_id: Optional[str] = None,
    ) -> Group:
        """Append a new group. Raises GroupExists if the name is taken."""
        name = name.strip()
        members = list(dict.fromkeys(m.strip() for m in member_ids if m.strip()))
        async with self._write_lock:
            if await self.find_group(name) is not None:
                raise GroupExists(f"Group '{name}' already exists")

            group = Group(
                name=name,
                creator=creator,
                members=members,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            await self.store.append_rows(GROUPS_TABLE, [[
                group.name,
                group.creator,
                GROUP_MEMBER_DELIMITER.join(group.members),
                group.created_at,
            ]])
        audit("group_created", actor=creator, request_id=request_id,
              payload={"group": name, "members": len(members)})
        return group

    async def delete_group(self, name: str, request_id: Optional[str] = None) -> bool:
        """Delete the first row with this name. False if there is none."""
        async with self._write_lock:
            for row_number, row in await self._rows():
                if row[0] == name:
                    await self.store.delete_rows(GROUPS_TABLE, row_number, row_number)
                    audit("group_deleted", request_id=request_id, payload={"group": name})
                    return True
        return False

    async def expand_recipients(
        self,
        manual_ids: Iterable[str],
        group_name: Optional[str] = None,
    ) -> set[str]:
        """Union of the manual selections and the named group's members."""
        recipients = {r for r in manual_ids if r}
        if group_name:
            recipients.update(await self.resolve_group(group_name))
        return recipients
