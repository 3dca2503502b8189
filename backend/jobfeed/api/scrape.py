"""
Scrape control endpoints

    GET  /scrape/status          admin   current progress snapshot
    POST /scrape                 admin   {"action": "start" | "cancel"}
    GET  /scrape/history         admin   recent terminal runs
    *    /scrape/sources[/{id}]  admin   managed source CRUD
    GET|POST /scrape/cron        secret  synchronous scheduled run

Every response is ``Cache-Control: no-store``; pollers must never see a
cached snapshot.
"""

import hmac
import logging
import re
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from jobfeed.auth import require_admin
from jobfeed.config import get_settings
from jobfeed.schemas import ManagedSourceCreate, ManagedSourcePatch, ScrapeControlRequest
from jobfeed.services.orchestrator import ScrapeOrchestrator, get_orchestrator
from jobfeed.services.run_state import RunStateError
from jobfeed.services.sources import SourceNotFoundError, SourceValidationError

logger = logging.getLogger(__name__)

router = APIRouter()

NO_STORE = {"Cache-Control": "no-store"}
_BEARER = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def no_store_json(body: dict, status_code: int = 200) -> JSONResponse:
    return JSONResponse(jsonable_encoder(body, by_alias=True), status_code=status_code, headers=NO_STORE)


def _snapshot(snapshot) -> Optional[dict]:
    return snapshot.to_stored() if snapshot is not None else None


def request_secret(request: Request) -> str:
    header_secret = (request.headers.get("x-scrape-token") or "").strip()
    if header_secret:
        return header_secret
    match = _BEARER.match(request.headers.get("authorization") or "")
    return match.group(1).strip() if match else ""


# ==================== Admin control ====================

@router.get("/status")
async def scrape_status(
    _: str = Depends(require_admin),
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    progress = await orchestrator.get_snapshot()
    return no_store_json({"ok": True, "progress": _snapshot(progress)})


@router.post("")
async def control_scrape(
    payload: Optional[ScrapeControlRequest] = Body(None),
    _: str = Depends(require_admin),
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    action = (payload.action if payload else "start").strip().lower()

    try:
        if action == "cancel":
            progress = await orchestrator.request_cancel()
            return no_store_json({"ok": True, "action": "cancel", "progress": _snapshot(progress)})

        outcome = await orchestrator.start()
    except RunStateError as e:
        logger.error(f"Scrape control failed: {e}")
        return no_store_json({"ok": False, "error": "run_state_unavailable", "message": str(e)}, 500)

    body = {
        "ok": True,
        "action": "start",
        "accepted": outcome.accepted,
        "progress": _snapshot(outcome.progress),
    }
    if outcome.already_running:
        body["alreadyRunning"] = True
    if outcome.run_id:
        body["runId"] = outcome.run_id
    return no_store_json(body)


@router.get("/history")
async def scrape_history(
    limit: int = Query(30, ge=1, le=100),
    _: str = Depends(require_admin),
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    history = await orchestrator.get_history(limit)
    return no_store_json({"ok": True, "history": [entry.model_dump(mode="json", by_alias=True) for entry in history]})


# ==================== Managed sources ====================

@router.get("/sources")
async def list_sources(
    _: str = Depends(require_admin),
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    resolution = await orchestrator.registry.resolve()
    return no_store_json(
        {
            "ok": True,
            "sources": [source.model_dump(mode="json", by_alias=True) for source in resolution.managed],
            "usingFallbackSources": resolution.using_fallback,
        }
    )


@router.post("/sources")
async def add_source(
    payload: ManagedSourceCreate,
    _: str = Depends(require_admin),
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    try:
        source = await orchestrator.registry.add(payload)
    except SourceValidationError as e:
        return no_store_json({"ok": False, "error": "invalid_source", "message": str(e)}, 400)
    return no_store_json({"ok": True, "source": source.model_dump(mode="json", by_alias=True)})


@router.patch("/sources/{source_id}")
async def set_source_enabled(
    source_id: str,
    payload: ManagedSourcePatch,
    _: str = Depends(require_admin),
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    try:
        source = await orchestrator.registry.set_enabled(source_id, payload.enabled)
    except SourceNotFoundError as e:
        return no_store_json({"ok": False, "error": "not_found", "message": str(e)}, 404)
    except SourceValidationError as e:
        return no_store_json({"ok": False, "error": "invalid_source", "message": str(e)}, 400)
    return no_store_json({"ok": True, "source": source.model_dump(mode="json", by_alias=True)})


@router.delete("/sources/{source_id}")
async def delete_source(
    source_id: str,
    _: str = Depends(require_admin),
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.registry.delete(source_id)
    except SourceNotFoundError as e:
        return no_store_json({"ok": False, "error": "not_found", "message": str(e)}, 404)
    except SourceValidationError as e:
        return no_store_json({"ok": False, "error": "invalid_source", "message": str(e)}, 400)
    return no_store_json({"ok": True})


# ==================== Cron trigger ====================

@router.api_route("/cron", methods=["GET", "POST"])
async def cron_scrape(
    request: Request,
    trigger: Optional[str] = Query(None),
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    configured = get_settings().scrape_secret.strip()
    if not configured:
        return no_store_json({"ok": False, "error": "missing_secret_configuration"}, 500)

    provided = request_secret(request)
    if not hmac.compare_digest(provided.encode("utf-8"), configured.encode("utf-8")):
        return no_store_json({"ok": False, "error": "unauthorized"}, 401)

    run_trigger = "manual" if (trigger or "").strip().lower() == "manual" else "auto"
    try:
        result = await orchestrator.run(run_trigger)
    except Exception as e:
        logger.exception("Cron scrape failed")
        return no_store_json({"ok": False, "error": "scrape_failed", "message": str(e)}, 500)

    body = result.as_dict()
    if not result.ok:
        body.update({"error": "scrape_failed", "message": result.error_message})
        return no_store_json(body, 500)
    return no_store_json(body)
