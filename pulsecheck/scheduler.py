"""
PulseCheck - Reminder Scheduler
Periodic sweep over every survey tab: whose reminder window is open,
who has not finished, and a personalised nudge to each of them.
Runs as an asyncio task inside the API process, or standalone:

    python -m pulsecheck.scheduler [interval_seconds]
"""
import sys
import time
import signal
import asyncio
import logging
from typing import Callable, Optional

from pulsecheck.audit import audit, gen_request_id
from pulsecheck.completion import CompletionTracker
from pulsecheck.config import (
    FIRST_NAME_TOKEN, MS_PER_HOUR, REMOTE_CALL_TIMEOUT_SECONDS,
    SWEEP_INTERVAL_SECONDS,
)
from pulsecheck.integrations.messaging import MessagingProvider, get_messenger
from pulsecheck.integrations.sheets import get_store
from pulsecheck.ledger import Ledger
from pulsecheck.models import SweepResult

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def first_name(display_name: str) -> str:
    parts = display_name.split()
    return parts[0] if parts else ""


def personalize(template: str, display_name: str) -> str:
    """Replace every [firstName] token with the first word of the display name."""
    return template.replace(FIRST_NAME_TOKEN, first_name(display_name))


class ReminderScheduler:
    """
    One sweep = one pass over all surveys, in tab order.

    Failure scope:
      - listing surveys fails      -> the whole sweep aborts (next tick retries)
      - one survey fails           -> that survey is skipped this sweep
      - one recipient fails        -> that recipient is skipped, others continue
    """

    def __init__(
        self,
        ledger: Ledger,
        messenger: MessagingProvider,
        completion: Optional[CompletionTracker] = None,
        call_timeout: float = REMOTE_CALL_TIMEOUT_SECONDS,
        clock: Callable[[], int] = now_ms,
    ):
        self.ledger = ledger
        self.messenger = messenger
        self.completion = completion or CompletionTracker(ledger)
        self.call_timeout = call_timeout
        self._clock = clock
        self._sweep_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def _call(self, coro):
        """Bound every remote call so one hung request cannot stall the sweep."""
        return await asyncio.wait_for(coro, timeout=self.call_timeout)

    # ── Sweep ────────────────────────────────────────────────────

    async def run_sweep(self, now: Optional[int] = None) -> SweepResult:
        result = SweepResult()
        if self._sweep_lock.locked():
            logger.warning("Previous reminder sweep still running; skipping this tick.")
            result.skipped_overlap = True
            return result

        async with self._sweep_lock:
            now = self._clock() if now is None else now
            request_id = gen_request_id()
            logger.info(f"Running reminder sweep ({request_id}) at {now}...")

            names = await self._call(self.ledger.list_survey_names())
            for name in names:
                result.surveys_seen += 1
                try:
                    await self._process_survey(name, now, result, request_id)
                except Exception as e:
                    result.surveys_failed += 1
                    logger.error(f"Reminder processing failed for survey '{name}': {e}", exc_info=True)

        return result

    async def _process_survey(
        self,
        name: str,
        now: int,
        result: SweepResult,
        request_id: str,
    ) -> None:
        survey = await self._call(self.ledger.load_survey(name))
        if not survey.recipients:
            return
        if now < survey.next_reminder_due(MS_PER_HOUR):
            return

        result.surveys_due += 1
        logger.info(f"Sending reminders for survey: {name}")
        definition = await self._call(self.ledger.get_definition(name))

        # Channels never get reminders; individuals need a display name
        named = []
        for recipient in survey.recipients:
            if not recipient.is_individual:
                continue
            try:
                display_name = await self._call(
                    self.messenger.resolve_display_name(recipient.id)
                )
            except Exception as e:
                logger.warning(f"Could not resolve name for {recipient.id} in '{name}': {e!r}")
                continue
            named.append((recipient, display_name))

        pending = set(await self._call(self.completion.incomplete_users(
            name, [display_name for _, display_name in named], definition.question_texts,
        )))

        for recipient, display_name in named:
            if display_name not in pending:
                continue
            text = personalize(survey.reminder_message, display_name)
            try:
                await self._call(self.messenger.send_message(
                    recipient.id, text, thread_ts=recipient.thread_ts,
                ))
            except Exception as e:
                result.reminders_failed += 1
                logger.error(f"Error sending reminder to {recipient.id}: {e!r}")
                audit("reminder_failed", survey=name, user=recipient.id,
                      actor="scheduler", request_id=request_id, payload={"error": str(e)})
                continue
            result.reminders_sent += 1
            logger.info(f"Sent reminder to {first_name(display_name)} for survey {name}")
            audit("reminder_sent", survey=name, user=recipient.id,
                  actor="scheduler", request_id=request_id)

        # Close the window even if nobody was messaged
        if now > survey.last_reminder:
            await self._call(self.ledger.update_last_reminder(name, now))
        audit("reminder_window_closed", survey=name, actor="scheduler",
              request_id=request_id, payload={"last_reminder": now})

    # ── Timer ────────────────────────────────────────────────────

    async def run_forever(self, interval_seconds: int = SWEEP_INTERVAL_SECONDS) -> None:
        logger.info(f"Reminder scheduler started. Sweeping every {interval_seconds}s.")
        while not self._stop.is_set():
            try:
                result = await self.run_sweep()
                logger.info(f"Sweep results: {result.model_dump()}")
            except Exception as e:
                logger.error(f"Reminder sweep aborted: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Reminder scheduler stopped.")

    def start(self, interval_seconds: int = SWEEP_INTERVAL_SECONDS) -> asyncio.Task:
        self._stop.clear()
        self._task = asyncio.create_task(self.run_forever(interval_seconds))
        return self._task

    def request_stop(self) -> None:
        logger.info("Stop requested. Finishing current sweep...")
        self._stop.set()

    async def stop(self) -> None:
        self.request_stop()
        if self._task is not None:
            await self._task
            self._task = None


async def run_worker(interval_seconds: int = SWEEP_INTERVAL_SECONDS) -> None:
    """Standalone worker: sweep on a timer until SIGINT/SIGTERM."""
    store = get_store()
    messenger = get_messenger()
    scheduler = ReminderScheduler(Ledger(store), messenger)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, scheduler.request_stop)

    try:
        await scheduler.run_forever(interval_seconds)
    finally:
        await messenger.close()
        await store.close()
    logger.info("Worker shutdown complete.")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    interval = int(sys.argv[1]) if len(sys.argv) > 1 else SWEEP_INTERVAL_SECONDS
    asyncio.run(run_worker(interval_seconds=interval))
