"""Service context wiring the sync layer together once per process."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from .airtable import AirtableClient
from .cache import RecordCache
from .config import Settings, get_settings, resolve_airtable_credentials
from .models import now_ms
from .reconciler import UserReconciler
from .repositories.content import ContentRepository
from .repositories.records import RecordRepository
from .state import AppState, AutoSaver
from .storage import JsonFileStorage, KeyValueStorage
from .sync import SyncOrchestrator


@dataclass
class AcademyServices:
    settings: Settings
    storage: KeyValueStorage
    client: AirtableClient
    records: RecordRepository
    content: ContentRepository
    reconciler: UserReconciler
    state: AppState
    orchestrator: SyncOrchestrator
    autosaver: AutoSaver

    async def aclose(self) -> None:
        await self.orchestrator.stop()
        await self.autosaver.aclose()
        await self.client.aclose()


def create_services(
    settings: Optional[Settings] = None,
    *,
    storage: Optional[KeyValueStorage] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], int] = now_ms,
) -> AcademyServices:
    settings = settings or get_settings()
    storage = storage if storage is not None else JsonFileStorage(settings.storage_path)

    client = AirtableClient(
        settings,
        lambda: resolve_airtable_credentials(settings, storage),
        client=http_client,
    )
    cache = RecordCache(settings.cache_ttl_ms, clock=clock)
    records = RecordRepository(client, cache)
    content = ContentRepository(records)
    reconciler = UserReconciler(records, grace_ms=settings.sync_grace_ms, clock=clock)
    state = AppState(storage, xp_per_level=settings.xp_per_level, clock=clock)
    orchestrator = SyncOrchestrator(content, reconciler, state, interval_seconds=settings.sync_interval_seconds)
    autosaver = AutoSaver(orchestrator.sync_user, delay_ms=settings.autosave_delay_ms)
    state.add_listener(autosaver.schedule)

    return AcademyServices(
        settings=settings,
        storage=storage,
        client=client,
        records=records,
        content=content,
        reconciler=reconciler,
        state=state,
        orchestrator=orchestrator,
        autosaver=autosaver,
    )


__all__ = ["AcademyServices", "create_services"]
