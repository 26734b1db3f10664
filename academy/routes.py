"""REST endpoints exposing progress, content and sync controls to the web client."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field, ValidationError

from .models import (
    AppConfig,
    AppNotification,
    ArenaScenario,
    CalendarEvent,
    Goal,
    Habit,
    Material,
    Module,
    NotebookEntry,
    Role,
    Stream,
)
from .services import AcademyServices
from .sync import SyncTrigger

router = APIRouter(tags=["academy"])
logger = logging.getLogger(__name__)

ADMIN_COLLECTIONS: Dict[str, Type[BaseModel]] = {
    "modules": Module,
    "materials": Material,
    "streams": Stream,
    "events": CalendarEvent,
    "scenarios": ArenaScenario,
}


class LoginRequest(BaseModel):
    telegram_id: Optional[str] = None
    telegram_username: Optional[str] = None
    name: Optional[str] = None


class ProgressUpdateRequest(BaseModel):
    name: Optional[str] = None
    theme: Optional[str] = None
    notebook: Optional[List[NotebookEntry]] = None
    habits: Optional[List[Habit]] = None
    goals: Optional[List[Goal]] = None
    stats: Optional[Dict[str, Any]] = None


class LessonCompletionRequest(BaseModel):
    xp_bonus: int = Field(default=0, ge=0)


class XpRequest(BaseModel):
    amount: int = Field(..., ge=0)


def get_services(request: Request) -> AcademyServices:
    return request.app.state.services


def _require_admin(services: AcademyServices) -> None:
    if services.state.user.role is not Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required.")


def _progress_payload(services: AcademyServices) -> Dict[str, Any]:
    return services.state.user.to_storage()


@router.get("/healthz")
def health(services: AcademyServices = Depends(get_services)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "airtable_configured": services.client.is_configured(),
        "sync_in_flight": services.orchestrator.in_flight,
    }


@router.get("/api/progress")
def get_progress(services: AcademyServices = Depends(get_services)) -> Dict[str, Any]:
    return _progress_payload(services)


@router.patch("/api/progress")
def update_progress(
    request: ProgressUpdateRequest,
    services: AcademyServices = Depends(get_services),
) -> Dict[str, Any]:
    changes = request.model_dump(exclude_none=True)
    if changes:
        services.state.update_user(**changes)
    return _progress_payload(services)


@router.post("/api/progress/lessons/{lesson_id}/complete")
def complete_lesson(
    lesson_id: str,
    request: LessonCompletionRequest,
    services: AcademyServices = Depends(get_services),
) -> Dict[str, Any]:
    services.state.complete_lesson(lesson_id, request.xp_bonus)
    return _progress_payload(services)


@router.post("/api/progress/xp")
def earn_xp(request: XpRequest, services: AcademyServices = Depends(get_services)) -> Dict[str, Any]:
    services.state.earn_xp(request.amount)
    return _progress_payload(services)


@router.post("/api/session/login")
async def login(request: LoginRequest, services: AcademyServices = Depends(get_services)) -> Dict[str, Any]:
    if not (request.telegram_id or request.telegram_username):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="telegram_id or telegram_username is required.")
    user = await services.orchestrator.login(request.model_dump(exclude_none=True))
    return user.to_storage()


@router.post("/api/session/logout")
def logout(services: AcademyServices = Depends(get_services)) -> Dict[str, Any]:
    services.state.logout()
    return _progress_payload(services)


@router.post("/api/sync")
async def manual_sync(services: AcademyServices = Depends(get_services)) -> Dict[str, Any]:
    report = await services.orchestrator.sync(SyncTrigger.MANUAL)
    return report.to_payload()


@router.get("/api/content")
def get_content(services: AcademyServices = Depends(get_services)) -> Dict[str, Any]:
    payload = services.state.snapshot()
    payload["config"] = services.state.config.to_storage()
    return payload


@router.put("/api/admin/config")
async def save_config(payload: Dict[str, Any], services: AcademyServices = Depends(get_services)) -> Dict[str, Any]:
    _require_admin(services)
    try:
        config = AppConfig.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors()) from exc
    services.state.set_config(config)
    record_id = await services.content.save_config(config)
    return {"record_id": record_id}


@router.post("/api/admin/notifications")
async def broadcast_notification(
    payload: Dict[str, Any],
    services: AcademyServices = Depends(get_services),
) -> Dict[str, Any]:
    _require_admin(services)
    payload = {"id": f"notif-{uuid4().hex[:12]}", **payload}
    try:
        notification = AppNotification.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors()) from exc
    record_id = await services.content.save_notification(notification)
    services.state.prepend_notification(notification)
    return {"id": notification.id, "record_id": record_id}


@router.put("/api/admin/{collection}/{item_id}")
async def save_content_item(
    collection: str,
    item_id: str,
    payload: Dict[str, Any],
    services: AcademyServices = Depends(get_services),
) -> Dict[str, Any]:
    _require_admin(services)
    model = ADMIN_COLLECTIONS.get(collection)
    if model is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown collection '{collection}'.")
    try:
        item = model.model_validate({**payload, "id": item_id})
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors()) from exc

    savers = {
        "modules": services.content.save_module,
        "materials": services.content.save_material,
        "streams": services.content.save_stream,
        "events": services.content.save_event,
        "scenarios": services.content.save_scenario,
    }
    record_id = await savers[collection](item)  # type: ignore[operator]
    services.state.upsert_collection_item(collection, item)
    logger.info("Saved %s item %s (record_id=%s)", collection, item_id, record_id)
    return {"id": item_id, "record_id": record_id}


__all__ = ["router", "get_services"]
