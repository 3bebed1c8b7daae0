"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .accounts import Role, UserRecord


@dataclass
class LessonRecord:
    id: str
    teacher_id: int
    class_group: int
    title: str
    description: Optional[str]
    original_file_name: str
    storage_key: str
    file_size_bytes: int
    mime_type: str
    created_at: str
    updated_at: str

    @property
    def is_video(self) -> bool:
        return self.mime_type.startswith("video/")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuditEventRecord:
    id: int
    user_id: Optional[int]
    action: str
    severity: str
    details: Dict[str, Any]
    created_at: str


@dataclass
class ClassGroupSummary:
    class_group: int
    lesson_count: int
    video_count: int


LOGGER = logging.getLogger(__name__)

_LESSON_COLUMNS = (
    "id, teacher_id, class_group, title, description, original_file_name, "
    "storage_key, file_size_bytes, mime_type, created_at, updated_at"
)
_USER_COLUMNS = "id, user_no, user_name, user_group, class_group, password_hash, status, created_at"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _user_from_row(row: sqlite3.Row) -> UserRecord:
    return UserRecord(
        id=int(row["id"]),
        user_no=row["user_no"],
        user_name=row["user_name"] or "",
        role=Role(int(row["user_group"])),
        class_group=int(row["class_group"]) if row["class_group"] is not None else None,
        password_hash=row["password_hash"],
        status=row["status"] or "active",
        created_at=row["created_at"],
    )


class LessonRepository:
    """Repository exposing the lesson, user and audit tables."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {key: value for key, value in event_payload.items() if value is not None}
            self._event_emitter("DB_QUERY", action, payload=filtered, duration_ms=duration_ms)

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None = None,
        *,
        action: str,
        table: Optional[str] = None,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...] = tuple(parameters) if parameters is not None else ()
        with self._track_db_event(
            action,
            table=table,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            cursor = connection.execute(statement, params)
            if cursor.rowcount is not None and cursor.rowcount >= 0:
                event.setdefault("rowcount", int(cursor.rowcount))
            return cursor

    @contextlib.contextmanager
    def _connect(self):
        """Yield a connection that commits on success and always closes."""

        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        try:
            self._execute(connection, "PRAGMA foreign_keys = ON", action="pragma_foreign_keys")
            with connection:
                yield connection
        finally:
            connection.close()

    # ---------------------------------------------------------------------
    # Users
    # ---------------------------------------------------------------------
    def add_user(
        self,
        user_no: str,
        user_name: str,
        password_hash: str,
        role: Role,
        *,
        class_group: Optional[int] = None,
        status: str = "active",
    ) -> int:
        LOGGER.debug("Adding user '%s' with role %s", user_no, Role(role).name)
        with self._track_db_event("add_user", table="users", user_no=user_no) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    """
                    INSERT INTO users(user_no, user_name, user_group, class_group, password_hash, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_no,
                        user_name,
                        int(role),
                        class_group,
                        password_hash,
                        status,
                        utc_timestamp(),
                    ),
                    action="users.insert",
                    table="users",
                )
                event["user_id"] = int(cursor.lastrowid)
                return int(cursor.lastrowid)

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?",
                (user_id,),
                action="users.lookup",
                table="users",
            )
            row = cursor.fetchone()
            return _user_from_row(row) if row else None

    def find_user_by_login(self, user_no: str) -> Optional[UserRecord]:
        LOGGER.debug("Looking up user by login '%s'", user_no)
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                f"SELECT {_USER_COLUMNS} FROM users WHERE user_no = ?",
                (user_no,),
                action="users.lookup_by_login",
                table="users",
            )
            row = cursor.fetchone()
            return _user_from_row(row) if row else None

    def iter_users(self) -> Iterable[UserRecord]:
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                f"SELECT {_USER_COLUMNS} FROM users ORDER BY user_group, user_no",
                action="users.list",
                table="users",
            )
            rows = cursor.fetchall()
        for row in rows:
            yield _user_from_row(row)

    # ---------------------------------------------------------------------
    # Lessons
    # ---------------------------------------------------------------------
    def insert_lesson(
        self,
        *,
        teacher_id: int,
        class_group: int,
        title: str,
        description: Optional[str],
        original_file_name: str,
        storage_key: str,
        file_size_bytes: int,
        mime_type: str,
    ) -> LessonRecord:
        timestamp = utc_timestamp()
        record = LessonRecord(
            id=uuid.uuid4().hex,
            teacher_id=int(teacher_id),
            class_group=int(class_group),
            title=title,
            description=description,
            original_file_name=original_file_name,
            storage_key=storage_key,
            file_size_bytes=int(file_size_bytes),
            mime_type=mime_type,
            created_at=timestamp,
            updated_at=timestamp,
        )
        LOGGER.debug(
            "Inserting lesson '%s' for teacher_id=%s class_group=%s",
            storage_key,
            teacher_id,
            class_group,
        )
        with self._track_db_event(
            "insert_lesson",
            table="lesson_results",
            lesson_id=record.id,
            teacher_id=record.teacher_id,
            class_group=record.class_group,
        ):
            with self._connect() as connection:
                self._execute(
                    connection,
                    f"""
                    INSERT INTO lesson_results({_LESSON_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.teacher_id,
                        record.class_group,
                        record.title,
                        record.description,
                        record.original_file_name,
                        record.storage_key,
                        record.file_size_bytes,
                        record.mime_type,
                        record.created_at,
                        record.updated_at,
                    ),
                    action="lesson_results.insert",
                    table="lesson_results",
                )
        return record

    def get_lesson(self, lesson_id: str) -> Optional[LessonRecord]:
        LOGGER.debug("Fetching lesson id=%s", lesson_id)
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                f"SELECT {_LESSON_COLUMNS} FROM lesson_results WHERE id = ?",
                (lesson_id,),
                action="lesson_results.lookup",
                table="lesson_results",
            )
            row = cursor.fetchone()
            return LessonRecord(**row) if row else None

    def list_lessons(
        self,
        *,
        teacher_id: Optional[int] = None,
        class_group: Optional[int] = None,
    ) -> List[LessonRecord]:
        """Return lessons newest first, optionally filtered by owner and class."""

        clauses: List[str] = []
        params: List[Any] = []
        if teacher_id is not None:
            clauses.append("teacher_id = ?")
            params.append(int(teacher_id))
        if class_group is not None:
            clauses.append("class_group = ?")
            params.append(int(class_group))
        query = f"SELECT {_LESSON_COLUMNS} FROM lesson_results"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                query,
                params,
                action="lesson_results.list",
                table="lesson_results",
            )
            return [LessonRecord(**row) for row in cursor.fetchall()]

    def summarize_class_groups(
        self,
        *,
        teacher_id: Optional[int] = None,
        class_group: Optional[int] = None,
    ) -> List[ClassGroupSummary]:
        clauses: List[str] = []
        params: List[Any] = []
        if teacher_id is not None:
            clauses.append("teacher_id = ?")
            params.append(int(teacher_id))
        if class_group is not None:
            clauses.append("class_group = ?")
            params.append(int(class_group))
        query = (
            "SELECT class_group, COUNT(*) AS lesson_count, "
            "SUM(CASE WHEN mime_type LIKE 'video/%' THEN 1 ELSE 0 END) AS video_count "
            "FROM lesson_results"
        )
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " GROUP BY class_group ORDER BY class_group"
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                query,
                params,
                action="lesson_results.summarize",
                table="lesson_results",
            )
            return [
                ClassGroupSummary(
                    class_group=int(row["class_group"]),
                    lesson_count=int(row["lesson_count"]),
                    video_count=int(row["video_count"] or 0),
                )
                for row in cursor.fetchall()
            ]

    def delete_lesson(self, lesson_id: str) -> bool:
        LOGGER.debug("Removing lesson id=%s", lesson_id)
        with self._track_db_event("delete_lesson", table="lesson_results", lesson_id=lesson_id) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "DELETE FROM lesson_results WHERE id = ?",
                    (lesson_id,),
                    action="lesson_results.delete",
                    table="lesson_results",
                )
                removed = cursor.rowcount > 0
                event["removed"] = removed
                return removed

    # ---------------------------------------------------------------------
    # Audit log
    # ---------------------------------------------------------------------
    def insert_audit_event(
        self,
        action: str,
        *,
        severity: str = "low",
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[int] = None,
    ) -> int:
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                """
                INSERT INTO audit_log(user_id, action, severity, details, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    action,
                    severity,
                    json.dumps(details or {}, ensure_ascii=False, default=str),
                    utc_timestamp(),
                ),
                action="audit_log.insert",
                table="audit_log",
            )
            return int(cursor.lastrowid)

    def list_audit_events(self, limit: int = 100) -> List[AuditEventRecord]:
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                "SELECT id, user_id, action, severity, details, created_at "
                "FROM audit_log ORDER BY id DESC LIMIT ?",
                (int(limit),),
                action="audit_log.list",
                table="audit_log",
            )
            rows = cursor.fetchall()
        events: List[AuditEventRecord] = []
        for row in rows:
            try:
                details = json.loads(row["details"] or "{}")
            except json.JSONDecodeError:
                details = {"raw": row["details"]}
            events.append(
                AuditEventRecord(
                    id=int(row["id"]),
                    user_id=row["user_id"],
                    action=row["action"],
                    severity=row["severity"],
                    details=details,
                    created_at=row["created_at"],
                )
            )
        return events


__all__ = [
    "AuditEventRecord",
    "ClassGroupSummary",
    "LessonRecord",
    "LessonRepository",
    "utc_timestamp",
]
