import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .storage import KeyValueStorage


class Settings(BaseSettings):
    airtable_pat: Optional[str] = Field(None, alias="AIRTABLE_PAT")
    airtable_base_id: Optional[str] = Field(None, alias="AIRTABLE_BASE_ID")
    airtable_api_url: str = Field("https://api.airtable.com/v0", alias="AIRTABLE_API_URL")
    airtable_timeout_seconds: float = Field(15.0, gt=0, alias="AIRTABLE_TIMEOUT_SECONDS")
    table_users: str = Field("Users", alias="AIRTABLE_TABLE_USERS")
    table_modules: str = Field("Modules", alias="AIRTABLE_TABLE_MODULES")
    table_lessons: str = Field("Lessons", alias="AIRTABLE_TABLE_LESSONS")
    table_materials: str = Field("Materials", alias="AIRTABLE_TABLE_MATERIALS")
    table_streams: str = Field("Streams", alias="AIRTABLE_TABLE_STREAMS")
    table_events: str = Field("Events", alias="AIRTABLE_TABLE_EVENTS")
    table_scenarios: str = Field("Scenarios", alias="AIRTABLE_TABLE_SCENARIOS")
    table_notifications: str = Field("Notifications", alias="AIRTABLE_TABLE_NOTIFICATIONS")
    sync_interval_seconds: float = Field(120.0, gt=0, alias="ACADEMY_SYNC_INTERVAL_SECONDS")
    cache_ttl_ms: int = Field(30000, ge=0, alias="ACADEMY_CACHE_TTL_MS")
    sync_grace_ms: int = Field(2000, ge=0, alias="ACADEMY_SYNC_GRACE_MS")
    autosave_delay_ms: int = Field(2000, ge=0, alias="ACADEMY_AUTOSAVE_DELAY_MS")
    xp_per_level: int = Field(1000, gt=0, alias="ACADEMY_XP_PER_LEVEL")
    storage_path: str = Field("data/academy_storage.json", alias="ACADEMY_STORAGE_PATH")

    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        populate_by_name=True,
        extra="ignore",
    )

    def table_names(self) -> Dict[str, str]:
        """Logical table name -> actual Airtable table name."""
        return {
            "Users": self.table_users,
            "Modules": self.table_modules,
            "Lessons": self.table_lessons,
            "Materials": self.table_materials,
            "Streams": self.table_streams,
            "Events": self.table_events,
            "Scenarios": self.table_scenarios,
            "Notifications": self.table_notifications,
            "Config": "Config",
            "Notebook": "Notebook",
            "Habits": "Habits",
            "Goals": "Goals",
        }


@dataclass(frozen=True)
class AirtableCredentials:
    pat: str
    base_id: str

    @property
    def is_configured(self) -> bool:
        return bool(self.pat and self.base_id and len(self.pat) > 10 and self.base_id.startswith("app"))


def resolve_airtable_credentials(settings: Settings, storage: Optional[KeyValueStorage] = None) -> AirtableCredentials:
    """Environment credentials win over the ones saved from the admin panel."""
    stored: Dict[str, Any] = {}
    if storage is not None:
        app_config = storage.get("appConfig", {}) or {}
        integrations = app_config.get("integrations") if isinstance(app_config, dict) else None
        if isinstance(integrations, dict):
            stored = integrations
    pat = settings.airtable_pat or stored.get("airtablePat") or ""
    base_id = settings.airtable_base_id or stored.get("airtableBaseId") or ""
    return AirtableCredentials(pat=str(pat).strip(), base_id=str(base_id).strip())


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid academy configuration: {exc}") from exc
