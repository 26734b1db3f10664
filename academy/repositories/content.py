"""Entity-level reads and writes for academy content stored in Airtable."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import List, Optional

from pydantic import ValidationError

from ..models import (
    AppConfig,
    AppNotification,
    ArenaScenario,
    CalendarEvent,
    ConfigEntry,
    Lesson,
    Material,
    Module,
    Stream,
    UserProgress,
)
from ..normalizer import (
    CONFIG_SCHEMA,
    EVENT_SCHEMA,
    LESSON_SCHEMA,
    MATERIAL_SCHEMA,
    MODULE_SCHEMA,
    NOTIFICATION_SCHEMA,
    SCENARIO_SCHEMA,
    STREAM_SCHEMA,
    decode_user_record,
)
from .records import RecordRepository

logger = logging.getLogger(__name__)

APP_CONFIG_RECORD_KEY = "appConfig"


def attach_lessons(modules: List[Module], lessons: List[Lesson]) -> List[Module]:
    """Attach each lesson to every module whose row id appears in its module link."""
    joined: List[Module] = []
    for module in modules:
        module_lessons = [
            lesson.model_copy(deep=True)
            for lesson in lessons
            if module.record_id and module.record_id in lesson.module_record_ids
        ]
        joined.append(module.model_copy(update={"lessons": module_lessons}))
    return joined


class ContentRepository:
    def __init__(self, records: RecordRepository) -> None:
        self._records = records

    async def get_modules_with_lessons(self) -> List[Module]:
        modules, lessons = await asyncio.gather(
            self._records.fetch_table("Modules", MODULE_SCHEMA),
            self._records.fetch_table("Lessons", LESSON_SCHEMA),
        )
        if modules and not lessons:
            # Modules without their lessons would replace the cached ones with empty lists.
            logger.warning("Lessons came back empty; leaving %s modules unapplied", len(modules))
            return []
        return attach_lessons(modules, lessons)

    async def get_materials(self) -> List[Material]:
        return await self._records.fetch_table("Materials", MATERIAL_SCHEMA)

    async def get_streams(self) -> List[Stream]:
        return await self._records.fetch_table("Streams", STREAM_SCHEMA)

    async def get_events(self) -> List[CalendarEvent]:
        return await self._records.fetch_table("Events", EVENT_SCHEMA)

    async def get_scenarios(self) -> List[ArenaScenario]:
        return await self._records.fetch_table("Scenarios", SCENARIO_SCHEMA)

    async def get_notifications(self) -> List[AppNotification]:
        return await self._records.fetch_table("Notifications", NOTIFICATION_SCHEMA)

    async def get_all_users(self) -> List[UserProgress]:
        return await self._records.fetch_table("Users", decode_user_record)

    async def get_config_record(self) -> Optional[AppConfig]:
        entries: List[ConfigEntry] = await self._records.fetch_table("Config", CONFIG_SCHEMA)
        entry = next((item for item in entries if item.key == APP_CONFIG_RECORD_KEY), None)
        if entry is None or not entry.value:
            return None
        try:
            return AppConfig.model_validate(json.loads(entry.value))
        except (ValueError, ValidationError):
            logger.error("Failed to parse appConfig JSON from Airtable")
            return None

    async def save_module(self, module: Module) -> Optional[str]:
        return await self._records.upsert_record(
            "Modules",
            "id",
            module.id,
            {
                "title": module.title,
                "description": module.description,
                "category": module.category,
                "minLevel": module.min_level,
                "imageUrl": module.image_url,
                "videoUrl": module.video_url,
            },
        )

    async def save_material(self, material: Material) -> Optional[str]:
        return await self._records.upsert_record(
            "Materials",
            "id",
            material.id,
            {
                "title": material.title,
                "description": material.description,
                "type": material.type,
                "url": material.url,
            },
        )

    async def save_stream(self, stream: Stream) -> Optional[str]:
        return await self._records.upsert_record(
            "Streams",
            "id",
            stream.id,
            {
                "title": stream.title,
                "date": stream.date,
                "status": stream.status,
                "youtubeUrl": stream.youtube_url,
            },
        )

    async def save_event(self, event: CalendarEvent) -> Optional[str]:
        return await self._records.upsert_record(
            "Events",
            "id",
            event.id,
            {
                "title": event.title,
                "description": event.description,
                "date": event.date,
                "type": event.type,
                "durationMinutes": event.duration_minutes,
            },
        )

    async def save_scenario(self, scenario: ArenaScenario) -> Optional[str]:
        return await self._records.upsert_record(
            "Scenarios",
            "id",
            scenario.id,
            {
                "title": scenario.title,
                "difficulty": scenario.difficulty,
                "clientRole": scenario.client_role,
                "objective": scenario.objective,
                "initialMessage": scenario.initial_message,
            },
        )

    async def save_notification(self, notification: AppNotification) -> Optional[str]:
        return await self._records.upsert_record(
            "Notifications",
            "id",
            notification.id,
            {
                "title": notification.title,
                "message": notification.message,
                "type": notification.type,
                "date": notification.date,
                "targetRole": notification.target_role,
                "targetUserId": notification.target_user_id,
            },
        )

    async def save_config(self, config: AppConfig) -> Optional[str]:
        payload = config.to_storage()
        # The shared Config row is readable by every client; keep the token local.
        payload.setdefault("integrations", {})["airtablePat"] = ""
        return await self._records.upsert_record(
            "Config",
            "key",
            APP_CONFIG_RECORD_KEY,
            {"value": json.dumps(payload, ensure_ascii=False)},
        )


__all__ = ["APP_CONFIG_RECORD_KEY", "ContentRepository", "attach_lessons"]
