"""
PulseCheck - HTTP API
FastAPI app hosting the request-triggered ledger writes and, on the
same event loop, the periodic reminder scheduler.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from pulsecheck.audit import gen_request_id
from pulsecheck.completion import CompletionTracker
from pulsecheck.config import (
    SCHEDULER_ENABLED, SWEEP_INTERVAL_SECONDS, LEDGER_BACKEND,
)
from pulsecheck.groups import GroupResolver
from pulsecheck.idempotency import IdempotencyCache
from pulsecheck.integrations.messaging import MessagingProvider, get_messenger
from pulsecheck.integrations.sheets import get_store
from pulsecheck.ledger import Ledger
from pulsecheck.models import (
    GroupCreateRequest, GroupExists, LedgerError, NotFound, Recipient,
    RecipientsUpdateRequest, ResponseSubmitRequest, StoreUnavailable,
    SurveyCreateRequest, SurveyDefinition, SurveyDetails, kind_for_id,
)
from pulsecheck.scheduler import ReminderScheduler, now_ms

logger = logging.getLogger(__name__)


def create_app(
    ledger: Optional[Ledger] = None,
    messenger: Optional[MessagingProvider] = None,
    start_scheduler: Optional[bool] = None,
) -> FastAPI:
    ledger = ledger or Ledger(get_store())
    messenger = messenger or get_messenger()
    start_scheduler = SCHEDULER_ENABLED if start_scheduler is None else start_scheduler

    completion = CompletionTracker(ledger)
    groups = GroupResolver(ledger.store)
    scheduler = ReminderScheduler(ledger, messenger, completion)
    deliveries = IdempotencyCache()

    app = FastAPI(title="PulseCheck", version="1.0.0")
    app.state.ledger = ledger
    app.state.scheduler = scheduler

    @app.on_event("startup")
    async def startup():
        try:
            await groups.ensure_table()
        except StoreUnavailable as e:
            logger.error(f"Could not prepare Groups tab: {e}")
        if start_scheduler:
            scheduler.start(SWEEP_INTERVAL_SECONDS)
        logger.info("PulseCheck started. Ledger backend: %s", LEDGER_BACKEND)

    @app.on_event("shutdown")
    async def shutdown():
        if start_scheduler:
            await scheduler.stop()
        await messenger.close()
        await ledger.store.close()

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request, exc):
        logger.error(f"Ledger unavailable during {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"error": "ledger unavailable"})

    @app.exception_handler(NotFound)
    async def not_found(request, exc):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    # ── Health ───────────────────────────────────────────────────

    @app.get("/health")
    def health():
        return {"status": "healthy", "ledger": LEDGER_BACKEND}

    # ── Surveys ──────────────────────────────────────────────────

    @app.post("/api/surveys")
    async def create_survey(req: SurveyCreateRequest):
        request_id = gen_request_id()
        ids = await groups.expand_recipients(req.recipients, req.group)
        recipients = [
            Recipient(id=rid, kind=kind_for_id(rid))
            for rid in sorted(ids) if kind_for_id(rid) is not None
        ]
        definition = SurveyDefinition(
            questions=req.questions,
            intro_message=req.intro_message,
            image_url=req.image_url,
            video_url=req.video_url,
        )
        created = await ledger.create_survey(
            req.name,
            req.creator,
            definition.question_texts,
            SurveyDetails(
                reminder_message=req.reminder_message,
                reminder_hours=req.reminder_hours,
                recipients=recipients,
            ),
            definition.model_dump_json(),
            created_ms=now_ms(),
            request_id=request_id,
        )
        if not created:
            raise HTTPException(409, f"Survey '{req.name}' could not be created")
        return {"created": True, "name": req.name,
                "recipients": [r.id for r in recipients], "request_id": request_id}

    @app.get("/api/surveys/{name}/definition")
    async def get_definition(name: str):
        definition = await ledger.get_definition(name)
        return definition.model_dump(mode="json")

    @app.get("/api/surveys/{name}/questions/{index}")
    async def get_question(name: str, index: int):
        return {"index": index, "text": await ledger.get_question_text(name, index)}

    @app.put("/api/surveys/{name}/recipients")
    async def save_recipients(name: str, req: RecipientsUpdateRequest):
        request_id = gen_request_id()
        await ledger.save_recipients(name, req.recipients, request_id=request_id)
        return {"saved": len(req.recipients), "request_id": request_id}

    # ── Responses ────────────────────────────────────────────────

    @app.post("/api/surveys/{name}/responses")
    async def submit_response(name: str, req: ResponseSubmitRequest):
        request_id = gen_request_id()
        if req.event_id and not deliveries.check_and_remember(req.event_id):
            return {"recorded": False, "duplicate": True, "reason": "duplicate_delivery"}

        try:
            if not req.allow_change and await completion.is_answered(name, req.user, req.question):
                return {"recorded": False, "duplicate": True, "reason": "already_answered"}

            recorded = await ledger.upsert_response(
                name, req.user, req.question, req.answer,
                datetime.now(timezone.utc).isoformat(),
                request_id=request_id,
            )
        except LedgerError:
            # Nothing was written; let the platform's retry through
            if req.event_id:
                deliveries.forget(req.event_id)
            raise
        return {"recorded": recorded, "duplicate": False, "request_id": request_id}

    @app.get("/api/surveys/{name}/responses")
    async def check_response(name: str, user: str, question: str):
        return {"answered": await completion.is_answered(name, user, question)}

    # ── Groups ───────────────────────────────────────────────────

    @app.post("/api/groups")
    async def create_group(req: GroupCreateRequest):
        try:
            group = await groups.create_group(req.name, req.creator, req.members)
        except GroupExists as e:
            raise HTTPException(409, str(e))
        return group.model_dump()

    @app.get("/api/groups")
    async def list_groups():
        return [g.model_dump() for g in await groups.list_groups()]

    @app.get("/api/groups/{name}")
    async def get_group(name: str):
        group = await groups.find_group(name)
        if group is None:
            raise HTTPException(404, "Group not found")
        return group.model_dump()

    @app.delete("/api/groups/{name}")
    async def delete_group(name: str):
        if not await groups.delete_group(name):
            raise HTTPException(404, "Group not found")
        return {"deleted": True, "name": name}

    # ── Scheduler ────────────────────────────────────────────────

    @app.post("/api/sweep")
    async def run_sweep():
        result = await scheduler.run_sweep()
        return result.model_dump()

    return app


app = create_app()
