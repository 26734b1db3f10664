from __future__ import annotations

import json

import pytest

from academy.models import RemoteRecord, Role
from academy.normalizer import (
    LESSON_SCHEMA,
    MATERIAL_SCHEMA,
    MODULE_SCHEMA,
    NOTIFICATION_SCHEMA,
    RecordMappingError,
    decode_user_record,
    first_present,
    normalize_record,
    normalize_records,
    remote_last_sync,
)


def _record(record_id: str, **fields) -> RemoteRecord:
    return RemoteRecord(id=record_id, fields=fields)


def test_first_present_respects_variant_order() -> None:
    fields = {"Name": "from name", "Title": "from title"}
    assert first_present(fields, ("title", "Title", "Name")) == "from title"
    assert first_present({"title": None, "Name": "x"}, ("title", "Name")) == "x"
    assert first_present({}, ("title",), "fallback") == "fallback"


def test_lesson_variants_and_defaults() -> None:
    lesson = normalize_record(
        _record("recL1", Name="Cold calls", Body="Script", Reward=120, Module=["recM1"]),
        LESSON_SCHEMA,
    )

    assert lesson.id == "recL1"
    assert lesson.title == "Cold calls"
    assert lesson.content == "Script"
    assert lesson.xp_reward == 120
    assert lesson.module_record_ids == ["recM1"]
    assert lesson.homework_type == "TEXT"
    assert lesson.video_url is None
    assert "moduleRecordIds" not in lesson.model_dump(by_alias=True)


def test_missing_required_fields_get_documented_defaults() -> None:
    module = normalize_record(_record("recM9"), MODULE_SCHEMA)

    assert module.id == "recM9"
    assert module.record_id == "recM9"
    assert module.title == "Untitled Module"
    assert module.category == "GENERAL"
    assert module.min_level == 1

    material = normalize_record(_record("recX"), MATERIAL_SCHEMA)
    assert material.title == "Material"
    assert material.url == "#"


def test_explicit_id_wins_over_row_id() -> None:
    module = normalize_record(_record("recM1", ID=7, Title="Intro"), MODULE_SCHEMA)
    assert module.id == "7"
    assert module.record_id == "recM1"


def test_bad_record_is_dropped_and_siblings_survive() -> None:
    records = [
        _record("recA", Title="Good"),
        _record("recB", Title="Bad", MinLevel="not a number"),
        _record("recC", title="Also good"),
    ]

    modules = normalize_records(records, MODULE_SCHEMA)

    assert [module.title for module in modules] == ["Good", "Also good"]


def test_notification_target_fields() -> None:
    notification = normalize_record(
        _record("recN", Title="Hi", Text="Body", TargetRole="ADMIN", targetUserId=42),
        NOTIFICATION_SCHEMA,
    )
    assert notification.message == "Body"
    assert notification.target_role == "ADMIN"
    assert notification.target_user_id == "42"


def test_decode_user_record_merges_data_blob() -> None:
    data = {"completedLessonIds": ["l1", "l2"], "theme": "DARK", "notebook": [{"id": "n1", "text": "note"}]}
    record = _record(
        "recU1",
        TelegramId=12345,
        Name="Leonidas",
        Role="admin",
        XP=2500,
        Level=3,
        LastSync=1_700_000_000_000,
        Data=json.dumps(data),
    )

    user = decode_user_record(record)

    assert user.telegram_id == "12345"
    assert user.id == "12345"
    assert user.airtable_record_id == "recU1"
    assert user.role is Role.ADMIN
    assert user.xp == 2500
    assert user.level == 3
    assert user.last_sync_timestamp == 1_700_000_000_000
    assert user.completed_lesson_ids == ["l1", "l2"]
    assert user.theme == "DARK"
    assert user.notebook[0].text == "note"


def test_username_keyed_row_has_no_telegram_id() -> None:
    record = _record("recU4", TelegramId="spartan_01", Data=json.dumps({"telegramUsername": "spartan_01"}))

    user = decode_user_record(record)

    assert user.telegram_id is None
    assert user.id is None
    assert user.telegram_username == "spartan_01"
    assert user.external_id == "spartan_01"


def test_decode_user_record_rejects_malformed_data() -> None:
    record = _record("recU2", TelegramId="1", Data="{not json")
    with pytest.raises(RecordMappingError):
        decode_user_record(record)


def test_unknown_role_defaults_to_student_and_missing_stamp_is_zero() -> None:
    record = _record("recU3", TelegramId="9", Role="OVERLORD")
    user = decode_user_record(record)
    assert user.role is Role.STUDENT
    assert remote_last_sync(record) == 0
    assert user.name == "Recruit"
