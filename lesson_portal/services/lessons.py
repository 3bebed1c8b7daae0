"""Role-aware access to stored lessons."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from .accounts import Role, UserRecord
from .audit import AuditTrail
from .blobs import BlobStore
from .storage import ClassGroupSummary, LessonRecord, LessonRepository


LOGGER = logging.getLogger(__name__)


class LessonNotFoundError(LookupError):
    """Raised when a lesson does not exist or is hidden from the caller."""


class PermissionDeniedError(RuntimeError):
    """Raised when the caller's role does not allow the operation."""


def can_view(user: UserRecord, lesson: LessonRecord) -> bool:
    if user.role is Role.ADMIN:
        return True
    if user.role is Role.TEACHER:
        return lesson.teacher_id == user.id
    return user.class_group is not None and lesson.class_group == user.class_group


def can_delete(user: UserRecord, lesson: LessonRecord) -> bool:
    if user.role is Role.ADMIN:
        return True
    return user.role is Role.TEACHER and lesson.teacher_id == user.id


class LessonCatalog:
    """Read and delete lessons on behalf of an authenticated user."""

    def __init__(
        self,
        repository: LessonRepository,
        blob_store: BlobStore,
        *,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        self._repository = repository
        self._blob_store = blob_store
        self._audit = audit or AuditTrail(None)

    def _scope(self, user: UserRecord, class_group: Optional[int]) -> Tuple[Optional[int], Optional[int]]:
        """Return the ``(teacher_id, class_group)`` filter visible to *user*."""

        if user.role is Role.ADMIN:
            return None, class_group
        if user.role is Role.TEACHER:
            return user.id, class_group
        if user.class_group is None:
            raise PermissionDeniedError("Tài khoản chưa được gán lớp học")
        if class_group is not None and class_group != user.class_group:
            raise PermissionDeniedError("Bạn không có quyền xem lớp học này")
        return None, user.class_group

    def list_lessons(self, user: UserRecord, *, class_group: Optional[int] = None) -> List[LessonRecord]:
        try:
            teacher_id, group = self._scope(user, class_group)
        except PermissionDeniedError:
            self._audit.unauthorized_access(user.id, f"class_{class_group}", "list")
            raise
        return self._repository.list_lessons(teacher_id=teacher_id, class_group=group)

    def list_class_groups(self, user: UserRecord) -> List[ClassGroupSummary]:
        if user.role is Role.STUDENT and user.class_group is None:
            return []
        teacher_id, group = self._scope(user, None)
        return self._repository.summarize_class_groups(teacher_id=teacher_id, class_group=group)

    def get_lesson(self, user: UserRecord, lesson_id: str) -> LessonRecord:
        lesson = self._repository.get_lesson(lesson_id)
        if lesson is None:
            raise LessonNotFoundError(lesson_id)
        if not can_view(user, lesson):
            self._audit.unauthorized_access(user.id, f"lesson:{lesson_id}", "view")
            raise LessonNotFoundError(lesson_id)
        return lesson

    async def locate_lesson_file(self, user: UserRecord, lesson_id: str) -> Tuple[LessonRecord, Path]:
        """Return the lesson and the file to stream for it."""

        lesson = await asyncio.to_thread(self.get_lesson, user, lesson_id)
        path = await self._blob_store.locate(lesson.storage_key)
        return lesson, path

    async def delete_lesson(self, user: UserRecord, lesson_id: str) -> LessonRecord:
        """Remove the blob and then the row; a failed blob delete is only logged."""

        lesson = await asyncio.to_thread(self.get_lesson, user, lesson_id)
        if not can_delete(user, lesson):
            await asyncio.to_thread(
                self._audit.unauthorized_access, user.id, f"lesson:{lesson_id}", "delete"
            )
            raise PermissionDeniedError("Bạn không có quyền xóa bài học này")

        try:
            await self._blob_store.delete([lesson.storage_key])
        except Exception:  # noqa: BLE001 - the row is removed regardless
            LOGGER.error(
                "Error deleting file '%s' from storage", lesson.storage_key, exc_info=True
            )

        if not await asyncio.to_thread(self._repository.delete_lesson, lesson.id):
            raise LessonNotFoundError(lesson_id)
        await asyncio.to_thread(
            self._audit.record,
            "lesson_deleted",
            user_id=user.id,
            lesson_id=lesson.id,
            storage_key=lesson.storage_key,
        )
        return lesson


__all__ = [
    "LessonCatalog",
    "LessonNotFoundError",
    "PermissionDeniedError",
    "can_delete",
    "can_view",
]
