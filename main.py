"""
PulseCheck Survey Ledger & Reminders - Main Entry Point

Usage:
    # Start the API server (the reminder scheduler runs inside it):
    python main.py serve

    # Run a single reminder sweep now:
    python main.py sweep

    # Run the reminder scheduler on its own (no API):
    python main.py worker [interval_seconds]

    # Create the Groups tab if missing:
    python main.py init

    # List saved groups:
    python main.py groups

    # Show whether a user answered a question:
    python main.py answered "<survey>" "<user>" "<question>"
"""
import sys
import json
import asyncio
import logging
import os
import uvicorn
from pulsecheck.config import APP_HOST, APP_PORT, DEBUG, SWEEP_INTERVAL_SECONDS
from pulsecheck.completion import CompletionTracker
from pulsecheck.groups import GroupResolver
from pulsecheck.integrations.messaging import get_messenger
from pulsecheck.integrations.sheets import get_store
from pulsecheck.ledger import Ledger
from pulsecheck.scheduler import ReminderScheduler, run_worker

logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("pulsecheck")


async def sweep_once() -> dict:
    store = get_store()
    messenger = get_messenger()
    try:
        scheduler = ReminderScheduler(Ledger(store), messenger)
        result = await scheduler.run_sweep()
        return result.model_dump()
    finally:
        await messenger.close()
        await store.close()


async def init_ledger() -> None:
    store = get_store()
    try:
        await GroupResolver(store).ensure_table()
        logger.info("Groups tab ready.")
    finally:
        await store.close()


async def list_groups() -> list:
    store = get_store()
    try:
        return [g.model_dump() for g in await GroupResolver(store).list_groups()]
    finally:
        await store.close()


async def check_answered(survey: str, user: str, question: str) -> bool:
    store = get_store()
    try:
        return await CompletionTracker(Ledger(store)).is_answered(survey, user, question)
    finally:
        await store.close()


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        return

    command = sys.argv[1].lower()

    if command == "serve":
        port = int(os.getenv("PORT", APP_PORT))
        print(f"\n  PulseCheck API running at http://localhost:{port}\n")
        uvicorn.run(
            "pulsecheck.web.api:app",
            host=APP_HOST,
            port=port,
            reload=DEBUG,
        )

    elif command == "sweep":
        results = asyncio.run(sweep_once())
        print(f"Sweep complete: {results}")

    elif command == "worker":
        interval = int(sys.argv[2]) if len(sys.argv) > 2 else SWEEP_INTERVAL_SECONDS
        asyncio.run(run_worker(interval_seconds=interval))

    elif command == "init":
        asyncio.run(init_ledger())
        print("Ledger initialized.")

    elif command == "groups":
        groups = asyncio.run(list_groups())
        print("\n  Saved Groups")
        print("  " + "=" * 45)
        for group in groups:
            print(f"  {group['name']:.<30} {len(group['members'])} members")
        print()

    elif command == "answered":
        if len(sys.argv) < 5:
            print('Usage: python main.py answered "<survey>" "<user>" "<question>"')
            return
        answered = asyncio.run(check_answered(sys.argv[2], sys.argv[3], sys.argv[4]))
        print(json.dumps({"answered": answered}))

    else:
        print(f"Unknown command: {command}")
        print(__doc__)


if __name__ == "__main__":
    main()
