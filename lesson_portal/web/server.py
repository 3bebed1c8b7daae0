"""FastAPI application exposing the lesson portal API."""

from __future__ import annotations

import asyncio
import contextvars
import logging
import os
import sys
import uuid
from typing import Any, Dict, List, Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel
from starlette.types import ASGIApp, Receive, Scope, Send

from .. import __version__
from ..config import AppConfig
from ..services.accounts import UserRecord, verify_password
from ..services.audit import AuditTrail
from ..services.blobs import BlobNotFoundError, BlobStore, BlobStoreError, LocalBlobStore
from ..services.events import emit_event
from ..services.lessons import LessonCatalog, LessonNotFoundError, PermissionDeniedError
from ..services.storage import LessonRecord, LessonRepository
from ..services.uploads import (
    LessonUploadError,
    LessonUploadService,
    MetadataWriteFailedError,
    RateLimitedError,
    StorageWriteFailedError,
    UploadCandidate,
    ValidationFailedError,
)
from ..services.validation import RateLimiter


_DEFAULT_MAX_UPLOAD_BYTES = 600 * 1024 * 1024
try:
    _MAX_UPLOAD_BYTES = int(
        (os.environ.get("LESSON_PORTAL_MAX_UPLOAD_BYTES") or "").strip() or _DEFAULT_MAX_UPLOAD_BYTES
    )
except ValueError:
    _MAX_UPLOAD_BYTES = _DEFAULT_MAX_UPLOAD_BYTES


def get_max_upload_bytes() -> int:
    """Return the configured maximum upload size in bytes."""

    return int(_MAX_UPLOAD_BYTES)


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "lesson_portal_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "lesson_portal_actor",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra or {})
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in _collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("lesson_portal.events"), {})


class LargeUploadRequest(Request):
    """Request subclass that applies the configured multipart upload limit."""

    async def _get_form(
        self,
        *,
        max_files: int | float = 1000,
        max_fields: int | float = 1000,
        max_part_size: int = 1024 * 1024,
    ):
        configured_limit = get_max_upload_bytes()
        effective_limit = int(max_part_size)
        if configured_limit > 0:
            effective_limit = max(int(configured_limit), effective_limit)
        else:
            effective_limit = sys.maxsize
        return await super()._get_form(
            max_files=max_files,
            max_fields=max_fields,
            max_part_size=effective_limit,
        )


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope.setdefault("state", {})
        if isinstance(scope["state"], dict):
            scope["state"]["request_id"] = request_id

        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(f"request:{scope.get('method', '').upper()}")
        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class UserResponse(BaseModel):
    id: int
    user_no: str
    user_name: str
    role: str
    class_group: Optional[int] = None


class LessonResponse(BaseModel):
    id: str
    teacher_id: int
    class_group: int
    title: str
    description: Optional[str] = None
    original_file_name: str
    storage_key: str
    file_size_bytes: int
    mime_type: str
    is_video: bool
    created_at: str
    updated_at: str


class ClassGroupResponse(BaseModel):
    class_group: int
    lesson_count: int
    video_count: int


class AuditEventResponse(BaseModel):
    id: int
    user_id: Optional[int] = None
    action: str
    severity: str
    details: Dict[str, Any]
    created_at: str


def _serialize_lesson(lesson: LessonRecord) -> LessonResponse:
    return LessonResponse(is_video=lesson.is_video, **lesson.to_dict())


_UPLOAD_ERROR_STATUS = {
    RateLimitedError: status.HTTP_429_TOO_MANY_REQUESTS,
    ValidationFailedError: status.HTTP_400_BAD_REQUEST,
    StorageWriteFailedError: status.HTTP_502_BAD_GATEWAY,
    MetadataWriteFailedError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _status_for_upload_error(error: LessonUploadError) -> int:
    for error_type, code in _UPLOAD_ERROR_STATUS.items():
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _measure_upload(upload: UploadFile) -> int:
    size = getattr(upload, "size", None)
    if size is not None:
        return int(size)
    handle = upload.file
    handle.seek(0, os.SEEK_END)
    size = handle.tell()
    handle.seek(0)
    return int(size)


def create_app(
    repository: LessonRepository,
    *,
    config: AppConfig,
    blob_store: Optional[BlobStore] = None,
    rate_limiter: Optional[RateLimiter] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    app = FastAPI(
        title="Lesson Portal",
        description="Class lessons and lecture videos for teachers and students",
        version=__version__,
        root_path=root_path or "",
        request_class=LargeUploadRequest,
    )
    app.state.server = None

    def _repository_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
        emit_event(
            event_type,
            message,
            correlation=_collect_correlation_context(),
            logger=EVENT_LOGGER,
            **kwargs,
        )

    configure_emitter = getattr(repository, "configure_event_emitter", None)
    if callable(configure_emitter):
        configure_emitter(_repository_event_emitter)

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store: BlobStore = blob_store if blob_store is not None else LocalBlobStore(config.blob_root)
    audit = AuditTrail(repository)
    limiter = rate_limiter or RateLimiter()
    uploads = LessonUploadService(
        store,
        repository,
        policy=config.upload_policy,
        rate_limiter=limiter,
        audit=audit,
    )
    catalog = LessonCatalog(repository, store, audit=audit)
    app.state.repository = repository
    app.state.blob_store = store
    app.state.rate_limiter = limiter
    app.state.upload_service = uploads
    app.state.catalog = catalog

    security = HTTPBasic(realm="Lesson Portal")

    async def current_user(credentials: HTTPBasicCredentials = Depends(security)) -> UserRecord:
        # Async so the actor is set in the request task, not a threadpool copy.
        user = await asyncio.to_thread(repository.find_user_by_login, credentials.username)
        verified = False
        if user is not None and user.is_active:
            verified = await asyncio.to_thread(verify_password, credentials.password, user.password_hash)
        if not verified:
            await asyncio.to_thread(audit.login_attempt, credentials.username, success=False)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Mã người dùng hoặc mật khẩu không đúng",
                headers={"WWW-Authenticate": 'Basic realm="Lesson Portal"'},
            )
        _ACTOR_VAR.set(f"user:{user.id}")
        return user

    async def require_admin(user: UserRecord = Depends(current_user)) -> UserRecord:
        if not user.is_admin:
            await asyncio.to_thread(audit.unauthorized_access, user.id, "audit_log", "read")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Chỉ quản trị viên được phép")
        return user

    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/me", response_model=UserResponse)
    def get_me(user: UserRecord = Depends(current_user)) -> Dict[str, Any]:
        return user.to_public_dict()

    @app.get("/api/classes", response_model=List[ClassGroupResponse])
    def list_classes(user: UserRecord = Depends(current_user)) -> List[ClassGroupResponse]:
        return [
            ClassGroupResponse(
                class_group=summary.class_group,
                lesson_count=summary.lesson_count,
                video_count=summary.video_count,
            )
            for summary in catalog.list_class_groups(user)
        ]

    @app.get("/api/lessons", response_model=List[LessonResponse])
    def list_lessons(
        class_group: Optional[int] = Query(None, ge=0),
        user: UserRecord = Depends(current_user),
    ) -> List[LessonResponse]:
        try:
            lessons = catalog.list_lessons(user, class_group=class_group)
        except PermissionDeniedError as error:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error)) from error
        return [_serialize_lesson(lesson) for lesson in lessons]

    @app.post(
        "/api/lessons",
        response_model=LessonResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def upload_lesson(
        class_group: int = Form(..., ge=0),
        title: str = Form(...),
        description: str = Form(""),
        file: UploadFile = File(...),
        user: UserRecord = Depends(current_user),
    ) -> LessonResponse:
        if not user.can_upload:
            await file.close()
            await asyncio.to_thread(audit.unauthorized_access, user.id, "lesson_results", "upload")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Bạn không có quyền upload bài học",
            )

        try:
            candidate = UploadCandidate(
                name=file.filename or "",
                size=_measure_upload(file),
                mime_type=(file.content_type or "").lower(),
                source=file.file,
            )
            record = await uploads.submit_lesson(
                candidate,
                teacher_id=user.id,
                class_group=class_group,
                title=title,
                description=description,
            )
        except LessonUploadError as error:
            LOGGER.warning("Lesson upload failed (%s): %s", error.kind, error.user_message)
            raise HTTPException(
                status_code=_status_for_upload_error(error),
                detail=error.user_message,
            ) from error
        finally:
            await file.close()
        return _serialize_lesson(record)

    @app.get("/api/lessons/{lesson_id}", response_model=LessonResponse)
    def get_lesson(lesson_id: str, user: UserRecord = Depends(current_user)) -> LessonResponse:
        try:
            return _serialize_lesson(catalog.get_lesson(user, lesson_id))
        except LessonNotFoundError as error:
            raise HTTPException(status_code=404, detail="Không tìm thấy bài học") from error

    @app.get("/api/lessons/{lesson_id}/download")
    async def download_lesson(lesson_id: str, user: UserRecord = Depends(current_user)) -> FileResponse:
        try:
            lesson, path = await catalog.locate_lesson_file(user, lesson_id)
        except (LessonNotFoundError, BlobNotFoundError) as error:
            raise HTTPException(status_code=404, detail="Không tìm thấy bài học") from error
        except BlobStoreError as error:
            LOGGER.error("Could not read lesson %s from storage: %s", lesson_id, error)
            raise HTTPException(status_code=502, detail="Không thể tải file bài học") from error
        return FileResponse(path, media_type=lesson.mime_type, filename=lesson.original_file_name)

    @app.delete(
        "/api/lessons/{lesson_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_lesson(lesson_id: str, user: UserRecord = Depends(current_user)) -> Response:
        try:
            await catalog.delete_lesson(user, lesson_id)
        except LessonNotFoundError as error:
            raise HTTPException(status_code=404, detail="Không tìm thấy bài học") from error
        except PermissionDeniedError as error:
            raise HTTPException(status_code=403, detail=str(error)) from error
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/audit", response_model=List[AuditEventResponse])
    def list_audit_events(
        limit: int = Query(100, ge=1, le=1000),
        _: UserRecord = Depends(require_admin),
    ) -> List[AuditEventResponse]:
        return [
            AuditEventResponse(
                id=event.id,
                user_id=event.user_id,
                action=event.action,
                severity=event.severity,
                details=event.details,
                created_at=event.created_at,
            )
            for event in repository.list_audit_events(limit)
        ]

    return app


__all__ = ["ContextualLoggerAdapter", "create_app", "get_max_upload_bytes"]
