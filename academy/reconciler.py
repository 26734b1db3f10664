"""Last-write-wins reconciliation of the learner progress record with Airtable."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .airtable import AirtableClient, AirtableError
from .models import LOCAL_ONLY_USER_FIELDS, TOP_LEVEL_USER_FIELDS, UserProgress, now_ms
from .normalizer import decode_user_record, remote_last_sync
from .repositories.records import RecordRepository
from .telemetry import SyncEvent, emit_event

logger = logging.getLogger(__name__)

USERS_TABLE = "Users"
USER_MATCH_FIELD = "TelegramId"
DEFAULT_GRACE_MS = 2000


class SyncDecision(str, Enum):
    CREATED = "created"
    PUSHED = "pushed"
    PULLED = "pulled"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    user: UserProgress
    decision: SyncDecision
    record_id: Optional[str] = None


def build_user_fields(user: UserProgress, external_id: str, timestamp: int) -> Dict[str, Any]:
    """Users row payload: top-level columns plus the JSON ``Data`` blob."""
    rest = user.model_dump(
        mode="json",
        by_alias=True,
        exclude=set(TOP_LEVEL_USER_FIELDS | LOCAL_ONLY_USER_FIELDS),
    )
    return {
        "TelegramId": str(external_id),
        "Name": user.name or "Unknown",
        "Role": user.role.value,
        "XP": int(user.xp),
        "Level": int(user.level),
        "LastSync": timestamp,
        "Data": json.dumps(rest, ensure_ascii=False),
    }


class UserReconciler:
    """Decides whether to push, pull or keep the local progress record.

    * local newer than remote by more than the grace window: push local
    * remote newer by more than the grace window: adopt the remote record
      (local-only fields survive)
    * otherwise: keep local and remember the remote row id

    Notebook entries, habits and goals are upserted item by item after the
    decision, regardless of which side won.
    """

    def __init__(
        self,
        records: RecordRepository,
        *,
        grace_ms: int = DEFAULT_GRACE_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._records = records
        self._grace_ms = grace_ms
        self._clock = clock

    @property
    def client(self) -> AirtableClient:
        return self._records.client

    async def reconcile(self, local: UserProgress) -> ReconcileResult:
        external_id = local.external_id
        if not external_id or not self.client.is_configured():
            return ReconcileResult(user=local, decision=SyncDecision.SKIPPED)
        try:
            result = await self._reconcile(local, external_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Airtable user sync failed for %s: %s", external_id, exc)
            emit_event(SyncEvent.USER_RECONCILED, external_id=external_id, decision=SyncDecision.FAILED)
            return ReconcileResult(user=local, decision=SyncDecision.FAILED)

        emit_event(
            SyncEvent.USER_RECONCILED,
            external_id=external_id,
            decision=result.decision,
            record_id=result.record_id,
        )
        return result

    async def _reconcile(self, local: UserProgress, external_id: str) -> ReconcileResult:
        remote = await self.client.find_first(USERS_TABLE, USER_MATCH_FIELD, external_id, strict=True)
        current = self._clock()
        fields = build_user_fields(local, external_id, current)

        if remote is None:
            created = await self.client.create_record(USERS_TABLE, fields, strict=True)
            if created is None:
                raise AirtableError(f"Creating user {external_id} returned no record")
            self._records.invalidate(USERS_TABLE)
            final = local.model_copy(update={"last_sync_timestamp": current, "airtable_record_id": created.id})
            decision = SyncDecision.CREATED
            logger.info("Airtable: created user %s", external_id)
        else:
            local_time = local.last_sync_timestamp or 0
            remote_time = remote_last_sync(remote)
            if local_time > remote_time + self._grace_ms:
                await self.client.update_record(USERS_TABLE, remote.id, fields, strict=True)
                self._records.invalidate(USERS_TABLE)
                final = local.model_copy(update={"last_sync_timestamp": current, "airtable_record_id": remote.id})
                decision = SyncDecision.PUSHED
                logger.info("Airtable: updated user %s (local newer)", external_id)
            elif remote_time > local_time + self._grace_ms:
                adopted = decode_user_record(remote)
                final = adopted.model_copy(update={name: getattr(local, name) for name in LOCAL_ONLY_USER_FIELDS})
                decision = SyncDecision.PULLED
                logger.info("Airtable: pulled newer user data for %s", external_id)
            else:
                final = local.model_copy(update={"airtable_record_id": remote.id})
                decision = SyncDecision.UNCHANGED

        record_id = final.airtable_record_id
        if record_id:
            await self._sync_children(final, record_id)
        return ReconcileResult(user=final, decision=decision, record_id=record_id)

    async def _sync_children(self, user: UserProgress, record_id: str) -> None:
        writes: List[Awaitable[Optional[str]]] = []
        link = [record_id]
        for note in user.notebook:
            writes.append(
                self._records.upsert_record(
                    "Notebook",
                    "id",
                    note.id,
                    {"Text": note.text, "Type": note.type, "Date": note.date, "User": link},
                )
            )
        for habit in user.habits:
            writes.append(
                self._records.upsert_record(
                    "Habits",
                    "id",
                    habit.id,
                    {"Title": habit.title, "Streak": habit.streak, "User": link},
                )
            )
        for goal in user.goals:
            writes.append(
                self._records.upsert_record(
                    "Goals",
                    "id",
                    goal.id,
                    {
                        "Title": goal.title,
                        "Progress": goal.progress_label(),
                        "IsCompleted": goal.is_completed,
                        "User": link,
                    },
                )
            )
        if not writes:
            return
        results = await asyncio.gather(*writes, return_exceptions=True)
        failed = sum(1 for item in results if item is None or isinstance(item, BaseException))
        if failed:
            logger.warning("Failed to sync %s of %s user detail records", failed, len(writes))


__all__ = [
    "DEFAULT_GRACE_MS",
    "ReconcileResult",
    "SyncDecision",
    "UserReconciler",
    "build_user_fields",
]
