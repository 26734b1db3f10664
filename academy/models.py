"""Domain models shared by the sync layer, local state and HTTP routes."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_XP_PER_LEVEL = 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def level_for_xp(xp: int, xp_per_level: int = DEFAULT_XP_PER_LEVEL) -> int:
    return max(int(xp), 0) // xp_per_level + 1


def _coerce_optional_str(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return str(value)
    return value


class CamelModel(BaseModel):
    """Base model that reads and writes the camelCase keys used by the web client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Role(str, Enum):
    STUDENT = "STUDENT"
    CURATOR = "CURATOR"
    ADMIN = "ADMIN"


class RemoteRecord(BaseModel):
    """Raw Airtable row: opaque id plus an arbitrary field mapping."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    created_time: Optional[str] = Field(default=None, alias="createdTime")


class _Identified(CamelModel):
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        return _coerce_optional_str(value)


class NotebookEntry(_Identified):
    text: str = ""
    type: str = "NOTE"
    date: str = Field(default_factory=utc_now_iso)


class Habit(_Identified):
    title: str = ""
    streak: int = Field(default=0, ge=0)
    completed_dates: List[str] = Field(default_factory=list)


class Goal(_Identified):
    title: str = ""
    current_value: float = 0
    target_value: float = 0
    unit: str = ""
    is_completed: bool = False

    def progress_label(self) -> str:
        return f"{_format_number(self.current_value)} / {_format_number(self.target_value)} {self.unit}".rstrip()


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


class UserProgress(CamelModel):
    """Offline-first learner progress. ``last_sync_timestamp`` is the last-modified stamp."""

    id: Optional[str] = None
    airtable_record_id: Optional[str] = None
    telegram_id: Optional[str] = None
    telegram_username: Optional[str] = None
    name: str = "Recruit"
    role: Role = Role.STUDENT
    is_authenticated: bool = False
    xp: int = Field(default=0, ge=0)
    level: int = Field(default=1, ge=1)
    completed_lesson_ids: List[str] = Field(default_factory=list)
    submitted_homeworks: List[Dict[str, Any]] = Field(default_factory=list)
    chat_history: List[Dict[str, Any]] = Field(default_factory=list)
    theme: str = "LIGHT"
    notebook: List[NotebookEntry] = Field(default_factory=list)
    habits: List[Habit] = Field(default_factory=list)
    goals: List[Goal] = Field(default_factory=list)
    stats: Dict[str, Any] = Field(default_factory=dict)
    last_sync_timestamp: int = Field(default=0, ge=0)

    @field_validator("id", "telegram_id", "telegram_username", mode="before")
    @classmethod
    def _identity_as_text(cls, value: Any) -> Any:
        return _coerce_optional_str(value)

    @field_validator("completed_lesson_ids")
    @classmethod
    def _dedupe_lessons(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))

    @property
    def external_id(self) -> Optional[str]:
        """Stable id used to find the learner's row in the Users table."""
        return self.telegram_id or self.telegram_username or None


# Fields that only make sense on this device and never come from the remote row.
LOCAL_ONLY_USER_FIELDS = frozenset({"is_authenticated"})

# Fields stored as top-level Users columns; everything else travels in the Data blob.
TOP_LEVEL_USER_FIELDS = frozenset(
    {"id", "airtable_record_id", "name", "role", "xp", "level", "telegram_id", "last_sync_timestamp"}
)


class Lesson(_Identified):
    title: str = "Untitled Lesson"
    description: str = ""
    content: str = ""
    xp_reward: int = 50
    homework_type: str = "TEXT"
    homework_task: str = ""
    ai_grading_instruction: str = ""
    video_url: Optional[str] = None
    module_record_ids: List[str] = Field(default_factory=list, exclude=True)

    @field_validator("module_record_ids", mode="before")
    @classmethod
    def _link_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class Module(_Identified):
    record_id: Optional[str] = None
    title: str = "Untitled Module"
    description: str = ""
    category: str = "GENERAL"
    min_level: int = 1
    image_url: str = ""
    video_url: Optional[str] = None
    lessons: List[Lesson] = Field(default_factory=list)


class Material(_Identified):
    title: str = "Material"
    description: str = ""
    type: str = "LINK"
    url: str = "#"


class Stream(_Identified):
    title: str = "Stream"
    date: str = Field(default_factory=utc_now_iso)
    status: str = "UPCOMING"
    youtube_url: str = ""


class CalendarEvent(_Identified):
    title: str = "Event"
    description: str = ""
    date: str = Field(default_factory=utc_now_iso)
    type: str = "OTHER"
    duration_minutes: int = 60


class ArenaScenario(_Identified):
    title: str = "Scenario"
    difficulty: str = "Easy"
    client_role: str = ""
    objective: str = ""
    initial_message: str = ""


class AppNotification(_Identified):
    title: str = ""
    message: str = ""
    type: str = "INFO"
    date: str = Field(default_factory=utc_now_iso)
    target_role: str = "ALL"
    target_user_id: Optional[str] = None

    @field_validator("target_user_id", mode="before")
    @classmethod
    def _target_as_text(cls, value: Any) -> Any:
        return _coerce_optional_str(value)

    def is_visible_to(self, user: UserProgress) -> bool:
        if self.target_user_id and self.target_user_id != user.telegram_id:
            return False
        if self.target_role and self.target_role != "ALL" and self.target_role != user.role.value:
            return False
        return True


class ConfigEntry(CamelModel):
    key: Optional[str] = None
    value: Optional[str] = None


class Integrations(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    telegram_bot_token: str = ""
    google_drive_folder_id: str = ""
    crm_webhook_url: str = ""
    ai_model_version: str = ""
    database_url: str = ""
    airtable_pat: str = ""
    airtable_base_id: str = ""
    airtable_table_name: str = "Users"


class AppConfig(CamelModel):
    """Global academy configuration edited from the admin panel."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    app_name: str = "SalesPro: 300 Spartans"
    app_description: str = "Elite Sales Academy"
    primary_color: str = "#6C5DD3"
    system_instruction: str = ""
    welcome_video_url: str = ""
    welcome_message: str = ""
    integrations: Integrations = Field(default_factory=Integrations)
    features: Dict[str, Any] = Field(default_factory=dict)
    ai_config: Dict[str, Any] = Field(default_factory=dict)
    system_agent: Dict[str, Any] = Field(default_factory=dict)


__all__ = [
    "AppConfig",
    "AppNotification",
    "ArenaScenario",
    "CalendarEvent",
    "CamelModel",
    "ConfigEntry",
    "DEFAULT_XP_PER_LEVEL",
    "Goal",
    "Habit",
    "Integrations",
    "LOCAL_ONLY_USER_FIELDS",
    "Lesson",
    "Material",
    "Module",
    "NotebookEntry",
    "RemoteRecord",
    "Role",
    "Stream",
    "TOP_LEVEL_USER_FIELDS",
    "UserProgress",
    "level_for_xp",
    "now_ms",
    "utc_now_iso",
]
