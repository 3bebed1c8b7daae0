"""Lesson upload pipeline: validate, store the blob, record the metadata.

``submit_lesson`` runs a two-step write. The blob goes to the object store
first because the metadata row embeds its key; when the row cannot be
written the blob is deleted again so storage never keeps a file that no
lesson points to.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from ..config import UploadPolicy
from .audit import AuditTrail
from .blobs import BlobData, BlobStore
from .naming import build_storage_key
from .storage import LessonRecord
from .validation import (
    RateLimiter,
    UploadMetadata,
    sanitize_text,
    validate_text,
    validate_upload,
)


LOGGER = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 1000

RATE_LIMITED_MESSAGE = "Bạn đã upload quá nhiều file. Vui lòng thử lại sau."
EMPTY_TITLE_MESSAGE = "Vui lòng nhập tiêu đề bài học"
STORAGE_WRITE_FAILED_MESSAGE = "Không thể lưu file bài học. Vui lòng thử lại."
METADATA_WRITE_FAILED_MESSAGE = "Không thể lưu thông tin bài học. Vui lòng thử lại."


class LessonUploadError(RuntimeError):
    """Base class for failures surfaced to the uploader.

    ``user_message`` is shown verbatim; ``cause`` is only ever logged.
    """

    kind = "upload_failed"

    def __init__(self, user_message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(user_message)
        self.user_message = user_message
        self.cause = cause


class RateLimitedError(LessonUploadError):
    kind = "rate_limited"

    def __init__(self, user_message: str = RATE_LIMITED_MESSAGE) -> None:
        super().__init__(user_message)


class ValidationFailedError(LessonUploadError):
    kind = "validation_failed"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class StorageWriteFailedError(LessonUploadError):
    kind = "storage_write_failed"

    def __init__(self, cause: BaseException, user_message: str = STORAGE_WRITE_FAILED_MESSAGE) -> None:
        super().__init__(user_message, cause=cause)


class MetadataWriteFailedError(LessonUploadError):
    kind = "metadata_write_failed"

    def __init__(
        self,
        cause: BaseException,
        user_message: str = METADATA_WRITE_FAILED_MESSAGE,
        *,
        compensation_error: Optional["CompensatingDeleteError"] = None,
    ) -> None:
        super().__init__(user_message, cause=cause)
        self.compensation_error = compensation_error


class CompensatingDeleteError(RuntimeError):
    """The blob of a failed upload could not be removed. Logged, never raised."""

    def __init__(self, storage_key: str, cause: BaseException) -> None:
        super().__init__(f"Could not remove orphaned blob '{storage_key}': {cause}")
        self.storage_key = storage_key
        self.cause = cause


@dataclass
class UploadCandidate:
    """A received file: display name, byte size, declared type and contents."""

    name: str
    size: int
    mime_type: str
    source: BlobData

    @property
    def metadata(self) -> UploadMetadata:
        return UploadMetadata(name=self.name, size=self.size, mime_type=self.mime_type)


class LessonStore(Protocol):
    """The subset of :class:`~lesson_portal.services.storage.LessonRepository` used here."""

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
        ...


class LessonUploadService:
    """Run lesson submissions against injected blob and metadata stores."""

    def __init__(
        self,
        blob_store: BlobStore,
        lesson_store: LessonStore,
        *,
        policy: Optional[UploadPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        audit: Optional[AuditTrail] = None,
        key_factory: Callable[[int, str], str] = build_storage_key,
    ) -> None:
        self._blob_store = blob_store
        self._lesson_store = lesson_store
        self._policy = policy or UploadPolicy()
        self._rate_limiter = rate_limiter or RateLimiter()
        self._audit = audit or AuditTrail(None)
        self._key_factory = key_factory

    @property
    def policy(self) -> UploadPolicy:
        return self._policy

    async def _run_blocking(self, func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _audit_event(self, action: str, **kwargs: Any) -> None:
        try:
            await self._run_blocking(self._audit.record, action, **kwargs)
        except Exception:  # noqa: BLE001 - auditing is a side channel
            LOGGER.warning("Audit event '%s' was dropped", action, exc_info=True)

    async def _compensate(self, storage_key: str) -> Optional[CompensatingDeleteError]:
        try:
            await self._blob_store.delete([storage_key])
        except Exception as error:  # noqa: BLE001 - must not mask the metadata failure
            failure = CompensatingDeleteError(storage_key, error)
            LOGGER.error("%s", failure, exc_info=True)
            return failure
        LOGGER.info("Removed blob '%s' after failed metadata write", storage_key)
        return None

    async def _record_metadata(
        self,
        file: UploadCandidate,
        *,
        storage_key: str,
        teacher_id: int,
        class_group: int,
        title: str,
        description: Optional[str],
    ) -> LessonRecord:
        try:
            return await self._run_blocking(
                self._lesson_store.insert_lesson,
                teacher_id=teacher_id,
                class_group=class_group,
                title=title,
                description=description,
                original_file_name=file.name,
                storage_key=storage_key,
                file_size_bytes=file.size,
                mime_type=file.mime_type,
            )
        except Exception as error:  # noqa: BLE001 - any store failure maps to one error kind
            LOGGER.error("Metadata insert for '%s' failed: %s", storage_key, error, exc_info=True)
            compensation = await self._compensate(storage_key)
            await self._audit_event(
                "lesson_upload_failed",
                user_id=teacher_id,
                severity="medium",
                stage="metadata",
                storage_key=storage_key,
                error=str(error),
                blob_removed=compensation is None,
            )
            raise MetadataWriteFailedError(error, compensation_error=compensation) from error

    def _prepare_text(self, title: str, description: Optional[str]) -> tuple[str, Optional[str]]:
        title_check = validate_text(title, TITLE_MAX_LENGTH)
        if not title_check.valid:
            raise ValidationFailedError(title_check.error or EMPTY_TITLE_MESSAGE)
        clean_title = sanitize_text(title, TITLE_MAX_LENGTH)
        if not clean_title:
            raise ValidationFailedError(EMPTY_TITLE_MESSAGE)

        clean_description: Optional[str] = None
        if description and description.strip():
            description_check = validate_text(description, DESCRIPTION_MAX_LENGTH)
            if not description_check.valid:
                raise ValidationFailedError(description_check.error or "")
            clean_description = sanitize_text(description, DESCRIPTION_MAX_LENGTH) or None
        return clean_title, clean_description

    async def submit_lesson(
        self,
        file: UploadCandidate,
        teacher_id: int,
        class_group: int,
        title: str,
        description: Optional[str] = None,
    ) -> LessonRecord:
        """Store *file* for *class_group* and return the new lesson record.

        Raises a :class:`LessonUploadError` subclass on every failure. Nothing
        is retried here.
        """

        LOGGER.info(
            "Lesson upload requested by teacher_id=%s for class_group=%s (%s, %s bytes, %s)",
            teacher_id,
            class_group,
            file.name,
            file.size,
            file.mime_type,
        )
        policy = self._policy

        allowed = self._rate_limiter.check(
            f"upload:{teacher_id}",
            policy.max_uploads_per_window,
            policy.window_millis,
        )
        if not allowed:
            LOGGER.warning("Upload rate limit hit for teacher_id=%s", teacher_id)
            await self._audit_event(
                "rate_limit_exceeded",
                user_id=teacher_id,
                severity="medium",
                operation="lesson_upload",
            )
            raise RateLimitedError()

        verdict = validate_upload(file.metadata, policy)
        if not verdict.valid:
            LOGGER.warning("Rejected upload '%s': %s", file.name, verdict.error)
            await self._audit_event(
                "suspicious_upload",
                user_id=teacher_id,
                severity="high",
                file_name=file.name,
                file_size=file.size,
                mime_type=file.mime_type,
                reason=verdict.error,
            )
            raise ValidationFailedError(verdict.error or "")

        clean_title, clean_description = self._prepare_text(title, description)

        storage_key = self._key_factory(class_group, file.name)
        LOGGER.debug("Derived storage key '%s' for '%s'", storage_key, file.name)

        try:
            await self._blob_store.put(storage_key, file.source, file.mime_type)
        except Exception as error:  # noqa: BLE001 - any store failure maps to one error kind
            LOGGER.error("Storage upload of '%s' failed: %s", storage_key, error, exc_info=True)
            await self._audit_event(
                "lesson_upload_failed",
                user_id=teacher_id,
                severity="medium",
                stage="storage",
                storage_key=storage_key,
                error=str(error),
            )
            raise StorageWriteFailedError(error) from error

        # Shielded: an abandoned request still finishes the insert or its cleanup.
        record = await asyncio.shield(
            self._record_metadata(
                file,
                storage_key=storage_key,
                teacher_id=teacher_id,
                class_group=class_group,
                title=clean_title,
                description=clean_description,
            )
        )

        await self._audit_event(
            "lesson_uploaded",
            user_id=teacher_id,
            lesson_id=record.id,
            class_group=class_group,
            storage_key=storage_key,
            file_size=file.size,
        )
        LOGGER.info("Lesson %s stored at '%s'", record.id, storage_key)
        return record


__all__ = [
    "CompensatingDeleteError",
    "DESCRIPTION_MAX_LENGTH",
    "LessonStore",
    "LessonUploadError",
    "LessonUploadService",
    "MetadataWriteFailedError",
    "RateLimitedError",
    "StorageWriteFailedError",
    "TITLE_MAX_LENGTH",
    "UploadCandidate",
    "ValidationFailedError",
]
