"""Offline-first application state persisted to local storage."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type

from pydantic import BaseModel, ValidationError

from .models import (
    AppConfig,
    AppNotification,
    ArenaScenario,
    CalendarEvent,
    Material,
    Module,
    Stream,
    UserProgress,
    level_for_xp,
    now_ms,
)
from .reconciler import ReconcileResult, SyncDecision
from .storage import (
    ALL_USERS_KEY,
    APP_CONFIG_KEY,
    EVENTS_KEY,
    MATERIALS_KEY,
    MODULES_KEY,
    NOTIFICATIONS_KEY,
    PROGRESS_KEY,
    SCENARIOS_KEY,
    STREAMS_KEY,
    KeyValueStorage,
)

logger = logging.getLogger(__name__)

COLLECTIONS: Dict[str, Tuple[str, Type[BaseModel]]] = {
    "modules": (MODULES_KEY, Module),
    "materials": (MATERIALS_KEY, Material),
    "streams": (STREAMS_KEY, Stream),
    "events": (EVENTS_KEY, CalendarEvent),
    "scenarios": (SCENARIOS_KEY, ArenaScenario),
    "notifications": (NOTIFICATIONS_KEY, AppNotification),
    "all_users": (ALL_USERS_KEY, UserProgress),
}

ProgressListener = Callable[[UserProgress], None]


def _load_models(raw: Any, model: Type[BaseModel], key: str) -> List[BaseModel]:
    items: List[BaseModel] = []
    if not isinstance(raw, list):
        return items
    for payload in raw:
        try:
            items.append(model.model_validate(payload))
        except ValidationError:
            logger.warning("Skipping unreadable %s entry in local storage", key)
    return items


class AppState:
    """Holds the learner's progress, global config and cached content collections.

    Every mutation is written through to local storage. Collections are only
    ever replaced wholesale, and several collections can be replaced in a
    single step so readers never observe a half-applied sync.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        xp_per_level: int = 1000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._storage = storage
        self._xp_per_level = xp_per_level
        self._clock = clock
        self._listeners: List[ProgressListener] = []
        self._user = self._load_user()
        self._config = self._load_config()
        self._collections: Dict[str, List[BaseModel]] = {
            name: _load_models(storage.get(key, []), model, key) for name, (key, model) in COLLECTIONS.items()
        }

    def _load_user(self) -> UserProgress:
        raw = self._storage.get(PROGRESS_KEY)
        if not raw:
            return UserProgress()
        try:
            return UserProgress.model_validate(raw)
        except ValidationError:
            logger.warning("Stored progress is unreadable; starting from the guest default")
            return UserProgress()

    def _load_config(self) -> AppConfig:
        raw = self._storage.get(APP_CONFIG_KEY)
        if not raw:
            return AppConfig()
        try:
            return AppConfig.model_validate(raw)
        except ValidationError:
            logger.warning("Stored appConfig is unreadable; using defaults")
            return AppConfig()

    # -- listeners -----------------------------------------------------------

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def _notify(self, user: UserProgress) -> None:
        for listener in list(self._listeners):
            try:
                listener(user)
            except Exception:  # noqa: BLE001
                logger.exception("Progress listener failed")

    # -- reads ---------------------------------------------------------------

    @property
    def user(self) -> UserProgress:
        return self._user

    @property
    def config(self) -> AppConfig:
        return self._config

    def collection(self, name: str) -> List[Any]:
        if name not in COLLECTIONS:
            raise KeyError(f"Unknown collection '{name}'")
        return list(self._collections[name])

    def snapshot(self) -> Dict[str, Any]:
        return {
            name: [item.model_dump(mode="json", by_alias=True) for item in items]
            for name, items in self._collections.items()
        }

    # -- progress mutations ---------------------------------------------------

    def _store_user(self, user: UserProgress, *, notify: bool) -> UserProgress:
        self._user = user
        self._storage.set(PROGRESS_KEY, user.to_storage())
        if notify:
            self._notify(user)
        return user

    def update_user(self, **changes: Any) -> UserProgress:
        """Merge ``changes`` into the progress record and stamp it as modified."""
        payload = self._user.model_dump()
        payload.update(changes)
        payload["last_sync_timestamp"] = self._clock()
        return self._store_user(UserProgress.model_validate(payload), notify=True)

    def earn_xp(self, amount: int) -> UserProgress:
        xp = max(self._user.xp + int(amount), 0)
        return self.update_user(xp=xp, level=level_for_xp(xp, self._xp_per_level))

    def complete_lesson(self, lesson_id: str, xp_bonus: int) -> UserProgress:
        if lesson_id in self._user.completed_lesson_ids:
            return self._user
        xp = self._user.xp + max(int(xp_bonus), 0)
        return self.update_user(
            xp=xp,
            level=level_for_xp(xp, self._xp_per_level),
            completed_lesson_ids=[*self._user.completed_lesson_ids, lesson_id],
        )

    def begin_session(self, login_data: Mapping[str, Any]) -> UserProgress:
        payload = self._user.model_dump()
        payload.update({key: value for key, value in login_data.items() if value is not None})
        payload["is_authenticated"] = True
        return self._store_user(UserProgress.model_validate(payload), notify=False)

    def logout(self) -> UserProgress:
        return self._store_user(UserProgress(), notify=False)

    def apply_reconcile_result(self, snapshot: UserProgress, result: ReconcileResult) -> UserProgress:
        """Fold a reconciliation result into the current progress record.

        ``snapshot`` is the record that was sent to the reconciler. If the learner
        changed anything while the round trip was in flight, only the server-driven
        corrections are applied on top of the newer local record.
        """
        if result.decision in (SyncDecision.SKIPPED, SyncDecision.FAILED):
            return self._user
        current = self._user
        untouched = current == snapshot
        if result.decision is SyncDecision.PULLED:
            if untouched:
                updated = result.user
            else:
                updated = current.model_copy(
                    update={
                        "xp": result.user.xp,
                        "level": result.user.level,
                        "role": result.user.role,
                        "airtable_record_id": result.user.airtable_record_id,
                    }
                )
        else:
            update: Dict[str, Any] = {"airtable_record_id": result.record_id or current.airtable_record_id}
            if untouched:
                update["last_sync_timestamp"] = result.user.last_sync_timestamp
            updated = current.model_copy(update=update)
        if updated == current:
            return current
        return self._store_user(updated, notify=False)

    # -- config ----------------------------------------------------------------

    def set_config(self, config: AppConfig) -> AppConfig:
        self._config = config
        self._storage.set(APP_CONFIG_KEY, config.to_storage())
        return config

    def apply_remote_config(self, remote: AppConfig) -> AppConfig:
        """Adopt the shared config while keeping locally entered Airtable credentials."""
        local = self._config.integrations
        integrations = remote.integrations.model_copy(
            update={
                "airtable_pat": remote.integrations.airtable_pat or local.airtable_pat,
                "airtable_base_id": remote.integrations.airtable_base_id or local.airtable_base_id,
            }
        )
        return self.set_config(remote.model_copy(update={"integrations": integrations}))

    # -- collections -----------------------------------------------------------

    def apply_collections(self, updates: Mapping[str, Optional[Sequence[BaseModel]]]) -> List[str]:
        """Replace every collection in ``updates`` whose value is not ``None``.

        ``None`` means the remote fetch came back empty; the cached collection is kept.
        """
        staged = dict(self._collections)
        applied: List[str] = []
        for name, items in updates.items():
            if name not in COLLECTIONS:
                raise KeyError(f"Unknown collection '{name}'")
            if items is None:
                continue
            staged[name] = list(items)
            applied.append(name)
        if not applied:
            return applied
        self._collections = staged
        for name in applied:
            key, _ = COLLECTIONS[name]
            self._storage.set(key, [item.model_dump(mode="json", by_alias=True) for item in staged[name]])
        return applied

    def upsert_collection_item(self, name: str, item: BaseModel) -> None:
        items = self.collection(name)
        item_id = getattr(item, "id", None)
        for index, existing in enumerate(items):
            if getattr(existing, "id", None) == item_id:
                items[index] = item
                break
        else:
            items.append(item)
        self.apply_collections({name: items})

    def prepend_notification(self, notification: AppNotification) -> None:
        self.apply_collections({"notifications": [notification, *self.collection("notifications")]})


class AutoSaver:
    """Debounces a remote push after each progress mutation while authenticated."""

    def __init__(self, push: Callable[[], Awaitable[Any]], *, delay_ms: int = 2000) -> None:
        self._push = push
        self._delay = delay_ms / 1000
        self._task: Optional[asyncio.Task[None]] = None
        self._waiting = False

    @property
    def pending(self) -> Optional[asyncio.Task[None]]:
        return self._task

    def schedule(self, user: UserProgress) -> None:
        if not user.is_authenticated:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; remote push deferred to the next sync")
            return
        if self._task is not None and self._waiting:
            self._task.cancel()
        self._waiting = True
        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        await asyncio.sleep(self._delay)
        self._waiting = False
        try:
            await self._push()
        except Exception:  # noqa: BLE001
            logger.exception("Debounced progress push failed")

    async def aclose(self) -> None:
        task = self._task
        if task is None:
            return
        if self._waiting:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._waiting = False


__all__ = ["AppState", "AutoSaver", "COLLECTIONS"]
