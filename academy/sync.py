"""Sync orchestrator: interval and on-demand sync cycles behind a single-flight latch."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from time import perf_counter
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .models import UserProgress
from .reconciler import SyncDecision, UserReconciler
from .repositories.content import ContentRepository
from .state import AppState
from .telemetry import SyncEvent, emit_event

logger = logging.getLogger(__name__)


class SyncTrigger(str, Enum):
    STARTUP = "startup"
    LOGIN = "login"
    MANUAL = "manual"
    INTERVAL = "interval"
    AUTOSAVE = "autosave"


@dataclass
class SyncReport:
    trigger: SyncTrigger
    skipped: bool = False
    applied: List[str] = field(default_factory=list)
    user_decision: Optional[SyncDecision] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger.value,
            "skipped": self.skipped,
            "applied": list(self.applied),
            "user_decision": self.user_decision.value if self.user_decision else None,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
        }


def _non_empty(items: Any, name: str) -> Optional[Sequence[Any]]:
    if isinstance(items, BaseException):
        logger.warning("Fetching %s failed: %s", name, items)
        return None
    if not items:
        return None
    return items


class SyncOrchestrator:
    """Runs sync cycles on start-up, login, manual refresh and a fixed interval.

    Only one cycle runs at a time. A trigger that arrives while a cycle is in
    flight is a no-op, and a running cycle is never cancelled.
    """

    def __init__(
        self,
        content: ContentRepository,
        reconciler: UserReconciler,
        state: AppState,
        *,
        interval_seconds: float = 120.0,
    ) -> None:
        self._content = content
        self._reconciler = reconciler
        self._state = state
        self._interval = interval_seconds
        self._syncing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._stop: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task[None]] = None

    @property
    def in_flight(self) -> bool:
        return self._syncing

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def _acquire(self, trigger: SyncTrigger) -> bool:
        if self._syncing:
            logger.debug("Sync already in flight; ignoring %s trigger", trigger.value)
            return False
        self._syncing = True
        self._idle.clear()
        return True

    def _release(self) -> None:
        self._syncing = False
        self._idle.set()

    async def wait_idle(self) -> None:
        while self._syncing:
            await self._idle.wait()

    async def sync(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncReport:
        report = SyncReport(trigger=trigger)
        if not self._acquire(trigger):
            report.skipped = True
            return report
        started = perf_counter()
        try:
            report.applied = await self._refresh_collections()
            report.user_decision = await self._reconcile_current_user()
        except Exception:  # noqa: BLE001
            logger.exception("Sync cycle failed (trigger=%s)", trigger.value)
        finally:
            self._release()
        report.duration_ms = int((perf_counter() - started) * 1000)
        emit_event(
            SyncEvent.SYNC_CYCLE_COMPLETED,
            trigger=trigger,
            applied=report.applied,
            user_decision=report.user_decision,
            duration_ms=report.duration_ms,
        )
        return report

    async def sync_user(self, trigger: SyncTrigger = SyncTrigger.AUTOSAVE) -> SyncReport:
        """Reconcile only the progress record, under the same latch as full cycles."""
        report = SyncReport(trigger=trigger)
        if not self._acquire(trigger):
            report.skipped = True
            return report
        started = perf_counter()
        try:
            report.user_decision = await self._reconcile_current_user()
        finally:
            self._release()
        report.duration_ms = int((perf_counter() - started) * 1000)
        return report

    async def login(self, login_data: Mapping[str, Any]) -> UserProgress:
        """Mark the learner as authenticated and run a full cycle for them."""
        await self.wait_idle()
        # No await between here and the latch, so the login cycle cannot be skipped.
        self._state.begin_session(login_data)
        await self.sync(SyncTrigger.LOGIN)
        return self._state.user

    async def _refresh_collections(self) -> List[str]:
        content = self._content
        (
            modules,
            materials,
            streams,
            events,
            scenarios,
            notifications,
            users,
            config,
        ) = await asyncio.gather(
            content.get_modules_with_lessons(),
            content.get_materials(),
            content.get_streams(),
            content.get_events(),
            content.get_scenarios(),
            content.get_notifications(),
            content.get_all_users(),
            content.get_config_record(),
            return_exceptions=True,
        )

        visible_notifications = _non_empty(notifications, "notifications")
        if visible_notifications is not None:
            user = self._state.user
            visible_notifications = [item for item in visible_notifications if item.is_visible_to(user)]

        applied = self._state.apply_collections(
            {
                "modules": _non_empty(modules, "modules"),
                "materials": _non_empty(materials, "materials"),
                "streams": _non_empty(streams, "streams"),
                "events": _non_empty(events, "events"),
                "scenarios": _non_empty(scenarios, "scenarios"),
                "notifications": visible_notifications,
                "all_users": _non_empty(users, "users"),
            }
        )
        if config is not None and not isinstance(config, BaseException):
            self._state.apply_remote_config(config)
            applied.append("config")
        elif isinstance(config, BaseException):
            logger.warning("Fetching config failed: %s", config)
        return applied

    async def _reconcile_current_user(self) -> Optional[SyncDecision]:
        snapshot = self._state.user
        if not snapshot.is_authenticated:
            return None
        result = await self._reconciler.reconcile(snapshot)
        self._state.apply_reconcile_result(snapshot, result)
        return result.decision

    def start(self) -> None:
        """Launch the interval loop on the running event loop."""
        if self.running:
            return
        self._stop = asyncio.Event()
        self._loop_task = asyncio.get_running_loop().create_task(self._run_loop(self._stop))

    async def _run_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                await self.sync(SyncTrigger.INTERVAL)

    async def stop(self) -> None:
        """Stop the interval loop, letting an in-flight cycle finish first."""
        task = self._loop_task
        if task is None:
            return
        if self._stop is not None:
            self._stop.set()
        await task
        self._loop_task = None
        self._stop = None


__all__ = ["SyncOrchestrator", "SyncReport", "SyncTrigger"]
