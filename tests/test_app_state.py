from __future__ import annotations

import asyncio

import pytest

from academy.models import AppConfig, Integrations, Material, Module, Role, UserProgress
from academy.reconciler import ReconcileResult, SyncDecision
from academy.state import AppState, AutoSaver
from academy.storage import APP_CONFIG_KEY, JsonFileStorage, MATERIALS_KEY, PROGRESS_KEY


def _state(storage, clock) -> AppState:
    return AppState(storage, xp_per_level=1000, clock=clock)


def test_earning_xp_levels_up_and_persists(storage, clock) -> None:
    state = _state(storage, clock)

    state.earn_xp(2500)

    assert state.user.xp == 2500
    assert state.user.level == 3
    assert state.user.last_sync_timestamp == clock.now
    reloaded = _state(JsonFileStorage(storage.path), clock)
    assert reloaded.user.xp == 2500
    assert reloaded.user.level == 3


def test_completing_a_lesson_twice_awards_xp_once(storage, clock) -> None:
    state = _state(storage, clock)

    state.complete_lesson("l1", 150)
    clock.advance(1000)
    state.complete_lesson("l1", 150)

    assert state.user.xp == 150
    assert state.user.completed_lesson_ids == ["l1"]
    assert state.user.last_sync_timestamp == clock.now - 1000


def test_unreadable_progress_falls_back_to_guest(storage, clock) -> None:
    storage.set(PROGRESS_KEY, {"xp": -5})

    state = _state(storage, clock)

    assert state.user == UserProgress()


def test_apply_collections_skips_missing_results(storage, clock) -> None:
    storage.set(MATERIALS_KEY, [{"id": "mat-local"}])
    state = _state(storage, clock)

    applied = state.apply_collections({"modules": [Module(id="m1")], "materials": None})

    assert applied == ["modules"]
    assert [item.id for item in state.collection("materials")] == ["mat-local"]
    assert [item.id for item in state.collection("modules")] == ["m1"]


def test_apply_collections_rejects_unknown_names(storage, clock) -> None:
    state = _state(storage, clock)

    with pytest.raises(KeyError):
        state.apply_collections({"lessons": []})


def test_upsert_collection_item_replaces_by_id(storage, clock) -> None:
    state = _state(storage, clock)
    state.apply_collections({"materials": [Material(id="a", title="Old"), Material(id="b")]})

    state.upsert_collection_item("materials", Material(id="a", title="New"))
    state.upsert_collection_item("materials", Material(id="c"))

    assert [(item.id, item.title) for item in state.collection("materials")] == [
        ("a", "New"),
        ("b", "Material"),
        ("c", "Material"),
    ]


def test_pulled_result_is_adopted_when_untouched(storage, clock) -> None:
    state = _state(storage, clock)
    state.begin_session({"telegram_id": "42"})
    snapshot = state.user
    remote = UserProgress(telegram_id="42", xp=900, role=Role.CURATOR, airtable_record_id="rec1", is_authenticated=True)

    state.apply_reconcile_result(snapshot, ReconcileResult(remote, SyncDecision.PULLED, "rec1"))

    assert state.user == remote
    assert storage.get(PROGRESS_KEY)["role"] == "CURATOR"


def test_pulled_result_only_corrects_when_user_changed_meanwhile(storage, clock) -> None:
    state = _state(storage, clock)
    state.begin_session({"telegram_id": "42"})
    snapshot = state.user
    state.update_user(theme="DARK")
    remote = UserProgress(telegram_id="42", xp=900, level=1, role=Role.ADMIN, airtable_record_id="rec1", theme="LIGHT")

    state.apply_reconcile_result(snapshot, ReconcileResult(remote, SyncDecision.PULLED, "rec1"))

    assert state.user.theme == "DARK"
    assert state.user.xp == 900
    assert state.user.role is Role.ADMIN
    assert state.user.airtable_record_id == "rec1"


def test_pushed_result_adopts_record_id_and_stamp(storage, clock) -> None:
    state = _state(storage, clock)
    state.begin_session({"telegram_id": "42"})
    snapshot = state.user
    pushed = snapshot.model_copy(update={"airtable_record_id": "rec9", "last_sync_timestamp": clock.now + 10})

    state.apply_reconcile_result(snapshot, ReconcileResult(pushed, SyncDecision.PUSHED, "rec9"))

    assert state.user.airtable_record_id == "rec9"
    assert state.user.last_sync_timestamp == clock.now + 10


def test_failed_result_leaves_state_alone(storage, clock) -> None:
    state = _state(storage, clock)
    state.begin_session({"telegram_id": "42"})
    before = state.user

    state.apply_reconcile_result(before, ReconcileResult(UserProgress(xp=5), SyncDecision.FAILED))

    assert state.user == before


def test_remote_config_keeps_local_credentials(storage, clock) -> None:
    state = _state(storage, clock)
    state.set_config(AppConfig(integrations=Integrations(airtable_pat="patLOCAL.secret", airtable_base_id="appLOCAL")))

    state.apply_remote_config(AppConfig(app_name="Remote Academy"))

    assert state.config.app_name == "Remote Academy"
    assert state.config.integrations.airtable_pat == "patLOCAL.secret"
    assert storage.get(APP_CONFIG_KEY)["integrations"]["airtableBaseId"] == "appLOCAL"


def test_logout_resets_to_guest_without_notifying(storage, clock) -> None:
    state = _state(storage, clock)
    seen = []
    state.add_listener(seen.append)
    state.begin_session({"telegram_id": "42"})

    state.logout()

    assert state.user.is_authenticated is False
    assert seen == []


def test_autosaver_debounces_bursts() -> None:
    pushes = []

    async def push() -> None:
        pushes.append(1)

    async def scenario() -> None:
        saver = AutoSaver(push, delay_ms=20)
        user = UserProgress(is_authenticated=True)
        for _ in range(5):
            saver.schedule(user)
            await asyncio.sleep(0.001)
        await asyncio.sleep(0.1)
        await saver.aclose()

    asyncio.run(scenario())

    assert pushes == [1]


def test_autosaver_ignores_guests_and_missing_loop() -> None:
    pushes = []

    async def push() -> None:
        pushes.append(1)

    saver = AutoSaver(push, delay_ms=0)
    saver.schedule(UserProgress(is_authenticated=True))
    assert saver.pending is None

    async def scenario() -> None:
        saver.schedule(UserProgress())
        assert saver.pending is None

    asyncio.run(scenario())
    assert pushes == []


def test_progress_mutations_schedule_autosave(storage, clock) -> None:
    state = _state(storage, clock)
    pushes = []

    async def push() -> None:
        pushes.append(state.user.xp)

    async def scenario() -> None:
        saver = AutoSaver(push, delay_ms=10)
        state.add_listener(saver.schedule)
        state.begin_session({"telegram_id": "42"})
        state.earn_xp(10)
        state.earn_xp(20)
        await asyncio.sleep(0.05)
        await saver.aclose()

    asyncio.run(scenario())

    assert pushes == [30]
