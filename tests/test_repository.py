from __future__ import annotations

import sqlite3

import pytest

from lesson_portal.services.accounts import Role, hash_password, verify_password
from lesson_portal.services.storage import LessonRepository


def _insert(repository: LessonRepository, teacher_id: int, class_group: int, name: str, mime: str = "application/pdf"):
    return repository.insert_lesson(
        teacher_id=teacher_id,
        class_group=class_group,
        title=f"Lesson {name}",
        description=None,
        original_file_name=name,
        storage_key=f"class_{class_group}/1_abcdef_{name}",
        file_size_bytes=1024,
        mime_type=mime,
    )


def test_user_lookup_helpers(repository: LessonRepository) -> None:
    user_id = repository.add_user(
        "gv01",
        "Cô Lan",
        hash_password("Secret123", method="pbkdf2:sha256:1000"),
        Role.TEACHER,
    )

    by_id = repository.get_user(user_id)
    by_login = repository.find_user_by_login("gv01")

    assert by_id is not None and by_login is not None
    assert by_id.id == by_login.id == user_id
    assert by_login.role is Role.TEACHER
    assert by_login.is_teacher and by_login.can_upload and by_login.is_active
    assert verify_password("Secret123", by_login.password_hash)
    assert not verify_password("secret123", by_login.password_hash)
    assert repository.find_user_by_login("nobody") is None
    assert [user.user_no for user in repository.iter_users()] == ["gv01"]


def test_duplicate_login_is_rejected(make_user) -> None:
    make_user("hs01", Role.STUDENT, class_group=2)
    with pytest.raises(sqlite3.IntegrityError):
        make_user("hs01", Role.STUDENT, class_group=3)


def test_lesson_crud_cycle(repository: LessonRepository, make_user) -> None:
    teacher_id = make_user("gv01", Role.TEACHER)

    record = _insert(repository, teacher_id, 2, "notes.pdf")

    assert len(record.id) == 32
    assert record.created_at == record.updated_at
    fetched = repository.get_lesson(record.id)
    assert fetched == record
    assert not fetched.is_video

    assert repository.delete_lesson(record.id)
    assert repository.get_lesson(record.id) is None
    assert not repository.delete_lesson(record.id)


def test_insert_lesson_requires_existing_teacher(repository: LessonRepository) -> None:
    with pytest.raises(sqlite3.IntegrityError):
        _insert(repository, 999, 1, "orphan.pdf")


def test_storage_key_must_be_unique(repository: LessonRepository, make_user) -> None:
    teacher_id = make_user("gv01", Role.TEACHER)
    _insert(repository, teacher_id, 1, "same.pdf")
    with pytest.raises(sqlite3.IntegrityError):
        _insert(repository, teacher_id, 1, "same.pdf")


def test_list_and_summarize_filters(repository: LessonRepository, make_user) -> None:
    first_teacher = make_user("gv01", Role.TEACHER)
    second_teacher = make_user("gv02", Role.TEACHER)
    _insert(repository, first_teacher, 1, "a.pdf")
    _insert(repository, first_teacher, 2, "b.mp4", "video/mp4")
    newest = _insert(repository, second_teacher, 2, "c.pdf")

    assert repository.list_lessons()[0].id == newest.id
    assert len(repository.list_lessons()) == 3
    assert {lesson.original_file_name for lesson in repository.list_lessons(class_group=2)} == {
        "b.mp4",
        "c.pdf",
    }
    assert [lesson.original_file_name for lesson in repository.list_lessons(teacher_id=second_teacher)] == [
        "c.pdf"
    ]

    summaries = repository.summarize_class_groups()
    assert [(s.class_group, s.lesson_count, s.video_count) for s in summaries] == [(1, 1, 0), (2, 2, 1)]
    own = repository.summarize_class_groups(teacher_id=first_teacher, class_group=2)
    assert [(s.class_group, s.lesson_count, s.video_count) for s in own] == [(2, 1, 1)]


def test_audit_events_round_trip(repository: LessonRepository) -> None:
    repository.insert_audit_event("login_attempt", details={"user_no": "gv01", "success": False})
    repository.insert_audit_event("lesson_uploaded", severity="low", user_id=None, details={"tên": "bài"})

    events = repository.list_audit_events()

    assert [event.action for event in events] == ["lesson_uploaded", "login_attempt"]
    assert events[0].details == {"tên": "bài"}
    assert events[1].details["success"] is False
    assert len(repository.list_audit_events(limit=1)) == 1


def test_repository_emits_db_events(temp_config) -> None:
    captured = []

    def emitter(event_type, message, **kwargs):
        captured.append((event_type, message, kwargs))

    repository = LessonRepository(temp_config, event_emitter=emitter)
    repository.add_user("gv01", "GV", "x", Role.TEACHER)

    actions = [message for _, message, _ in captured]
    assert "users.insert" in actions
    assert "add_user" in actions
    assert all(event_type == "DB_QUERY" for event_type, _, _ in captured)
    add_event = next(kwargs for _, message, kwargs in captured if message == "add_user")
    assert add_event["payload"]["status"] == "ok"
    assert add_event["payload"]["user_id"] == 1
