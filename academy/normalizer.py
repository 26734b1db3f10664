"""Tolerant mapping of hand-edited Airtable rows into typed models.

Field names in the remote base drift ("Title", "title", "Name", ...), so every
logical field is described by an ordered tuple of accepted spellings plus a
documented default. Adding a new spelling is a data change, not a code change.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .models import (
    AppNotification,
    ArenaScenario,
    CalendarEvent,
    ConfigEntry,
    Lesson,
    Material,
    Module,
    RemoteRecord,
    Role,
    Stream,
    UserProgress,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


class RecordMappingError(ValueError):
    """Raised when a single remote record cannot be mapped into its model."""


@dataclass(frozen=True)
class FieldSpec:
    variants: Tuple[str, ...]
    default: Any = None
    default_factory: Optional[Callable[[], Any]] = None

    def resolve_default(self) -> Any:
        if self.default_factory is not None:
            return self.default_factory()
        return self.default


def first_present(fields: Mapping[str, Any], variants: Iterable[str], default: Any = None) -> Any:
    """Return the value of the first variant present (and not ``None``) in ``fields``."""
    for variant in variants:
        value = fields.get(variant)
        if value is not None:
            return value
    return default


@dataclass(frozen=True)
class EntitySchema:
    name: str
    model: Type[BaseModel]
    fields: Mapping[str, FieldSpec]
    record_id_field: Optional[str] = None

    def __call__(self, record: RemoteRecord) -> Any:
        return normalize_record(record, self)


def normalize_record(record: RemoteRecord, schema: EntitySchema) -> Any:
    values: Dict[str, Any] = {}
    for name, spec in schema.fields.items():
        value = first_present(record.fields, spec.variants, _MISSING)
        values[name] = spec.resolve_default() if value is _MISSING else value
    if "id" in schema.model.model_fields and values.get("id") in (None, ""):
        values["id"] = record.id
    if schema.record_id_field:
        values[schema.record_id_field] = record.id
    try:
        return schema.model.model_validate(values)
    except ValidationError as exc:
        raise RecordMappingError(f"{schema.name} record {record.id}: {exc.error_count()} invalid field(s)") from exc


def map_records(records: Iterable[RemoteRecord], mapper: Callable[[RemoteRecord], T], table: str) -> List[T]:
    """Apply ``mapper`` to each record, dropping (and logging) the ones that fail."""
    mapped: List[T] = []
    for record in records:
        try:
            mapped.append(mapper(record))
        except (RecordMappingError, ValidationError, ValueError, TypeError) as exc:
            logger.warning("Dropping record %s from %s: %s", record.id, table, exc)
    return mapped


def normalize_records(records: Iterable[RemoteRecord], schema: EntitySchema) -> List[Any]:
    return map_records(records, schema, schema.name)


def _id_spec(*extra: str) -> FieldSpec:
    return FieldSpec(("id", "ID", *extra))


def _title(default: str, *variants: str) -> FieldSpec:
    return FieldSpec(variants or ("title", "Title", "Name"), default)


_DATE = FieldSpec(("date", "Date", "DateTime"), default_factory=utc_now_iso)
_DESCRIPTION = FieldSpec(("description", "Description", "Desc"), "")
_VIDEO_URL = FieldSpec(("videoUrl", "VideoUrl", "Video", "VideoURL"))


LESSON_SCHEMA = EntitySchema(
    name="Lessons",
    model=Lesson,
    fields={
        "id": _id_spec("Id"),
        "title": _title("Untitled Lesson"),
        "description": _DESCRIPTION,
        "content": FieldSpec(("content", "Content", "Body", "Text"), ""),
        "xp_reward": FieldSpec(("xpReward", "XP", "XpReward", "Reward"), 50),
        "homework_type": FieldSpec(("homeworkType", "HomeworkType", "Type"), "TEXT"),
        "homework_task": FieldSpec(("homeworkTask", "HomeworkTask", "Task"), ""),
        "ai_grading_instruction": FieldSpec(("aiGradingInstruction", "AIGradingInstruction", "GradingInstruction"), ""),
        "video_url": _VIDEO_URL,
        "module_record_ids": FieldSpec(("Module", "module", "ModuleId", "ModuleLink"), default_factory=list),
    },
)

MODULE_SCHEMA = EntitySchema(
    name="Modules",
    model=Module,
    fields={
        "id": _id_spec("Id"),
        "title": _title("Untitled Module"),
        "description": _DESCRIPTION,
        "category": FieldSpec(("category", "Category"), "GENERAL"),
        "min_level": FieldSpec(("minLevel", "MinLevel", "Level"), 1),
        "image_url": FieldSpec(("imageUrl", "ImageUrl", "Image", "ImageURL"), ""),
        "video_url": _VIDEO_URL,
    },
    record_id_field="record_id",
)

MATERIAL_SCHEMA = EntitySchema(
    name="Materials",
    model=Material,
    fields={
        "id": _id_spec(),
        "title": _title("Material"),
        "description": FieldSpec(("description", "Description"), ""),
        "type": FieldSpec(("type", "Type"), "LINK"),
        "url": FieldSpec(("url", "URL", "Link"), "#"),
    },
)

STREAM_SCHEMA = EntitySchema(
    name="Streams",
    model=Stream,
    fields={
        "id": _id_spec(),
        "title": _title("Stream"),
        "date": _DATE,
        "status": FieldSpec(("status", "Status"), "UPCOMING"),
        "youtube_url": FieldSpec(("youtubeUrl", "YoutubeUrl", "YouTube", "URL"), ""),
    },
)

EVENT_SCHEMA = EntitySchema(
    name="Events",
    model=CalendarEvent,
    fields={
        "id": _id_spec(),
        "title": _title("Event"),
        "description": FieldSpec(("description", "Description"), ""),
        "date": _DATE,
        "type": FieldSpec(("type", "Type", "EventType"), "OTHER"),
        "duration_minutes": FieldSpec(("durationMinutes", "Duration"), 60),
    },
)

SCENARIO_SCHEMA = EntitySchema(
    name="Scenarios",
    model=ArenaScenario,
    fields={
        "id": _id_spec(),
        "title": _title("Scenario", "title", "Title"),
        "difficulty": FieldSpec(("difficulty", "Difficulty"), "Easy"),
        "client_role": FieldSpec(("clientRole", "ClientRole", "Role"), ""),
        "objective": FieldSpec(("objective", "Objective", "Goal"), ""),
        "initial_message": FieldSpec(("initialMessage", "InitialMessage", "Message"), ""),
    },
)

NOTIFICATION_SCHEMA = EntitySchema(
    name="Notifications",
    model=AppNotification,
    fields={
        "id": _id_spec(),
        "title": _title("", "title", "Title"),
        "message": FieldSpec(("message", "Message", "Text"), ""),
        "type": FieldSpec(("type", "Type"), "INFO"),
        "date": FieldSpec(("date", "Date"), default_factory=utc_now_iso),
        "target_role": FieldSpec(("targetRole", "TargetRole"), "ALL"),
        "target_user_id": FieldSpec(("targetUserId", "TargetUserId")),
    },
)

CONFIG_SCHEMA = EntitySchema(
    name="Config",
    model=ConfigEntry,
    fields={
        "key": FieldSpec(("key", "Key")),
        "value": FieldSpec(("value", "Value")),
    },
)

# Users rows keep a handful of top-level columns; the rest of the progress
# document travels as JSON in the Data column.
USER_FIELDS: Dict[str, FieldSpec] = {
    "telegram_id": FieldSpec(("TelegramId", "telegramId", "Telegram ID")),
    "name": FieldSpec(("Name", "name")),
    "role": FieldSpec(("Role", "role"), "STUDENT"),
    "xp": FieldSpec(("XP", "Xp", "xp"), 0),
    "level": FieldSpec(("Level", "level"), 1),
    "last_sync_timestamp": FieldSpec(("LastSync", "lastSync", "Last Sync"), 0),
    "data": FieldSpec(("Data", "data")),
}


def normalize_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    candidate = str(value or "").strip().upper()
    try:
        return Role(candidate)
    except ValueError:
        logger.debug("Unknown role %r; defaulting to STUDENT", value)
        return Role.STUDENT


def _as_int(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _user_field(record: RemoteRecord, name: str) -> Any:
    spec = USER_FIELDS[name]
    return first_present(record.fields, spec.variants, spec.resolve_default())


def remote_last_sync(record: RemoteRecord) -> int:
    """The ``LastSync`` stamp of a Users row in epoch millis (0 when absent)."""
    return max(_as_int(_user_field(record, "last_sync_timestamp"), 0), 0)


def _decode_data_blob(record: RemoteRecord) -> Dict[str, Any]:
    raw = _user_field(record, "data")
    if raw in (None, ""):
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise RecordMappingError(f"Users record {record.id}: malformed Data payload") from exc
    if not isinstance(decoded, dict):
        raise RecordMappingError(f"Users record {record.id}: Data payload is not an object")
    return decoded


def decode_user_record(record: RemoteRecord) -> UserProgress:
    payload = _decode_data_blob(record)
    telegram_id = _user_field(record, "telegram_id")
    if telegram_id is not None and str(telegram_id) == str(payload.get("telegramUsername") or ""):
        # Learners without a numeric Telegram id are keyed by their username.
        telegram_id = None
    name = _user_field(record, "name")
    payload.update(
        {
            "id": telegram_id,
            "airtableRecordId": record.id,
            "telegramId": telegram_id,
            "role": normalize_role(_user_field(record, "role")),
            "xp": max(_as_int(_user_field(record, "xp"), 0), 0),
            "level": max(_as_int(_user_field(record, "level"), 1), 1),
            "lastSyncTimestamp": remote_last_sync(record),
        }
    )
    if name is not None:
        payload["name"] = name
    try:
        return UserProgress.model_validate(payload)
    except ValidationError as exc:
        raise RecordMappingError(f"Users record {record.id}: {exc.error_count()} invalid field(s)") from exc


__all__ = [
    "CONFIG_SCHEMA",
    "EVENT_SCHEMA",
    "EntitySchema",
    "FieldSpec",
    "LESSON_SCHEMA",
    "MATERIAL_SCHEMA",
    "MODULE_SCHEMA",
    "NOTIFICATION_SCHEMA",
    "RecordMappingError",
    "SCENARIO_SCHEMA",
    "STREAM_SCHEMA",
    "USER_FIELDS",
    "decode_user_record",
    "first_present",
    "map_records",
    "normalize_record",
    "normalize_records",
    "normalize_role",
    "remote_last_sync",
]
