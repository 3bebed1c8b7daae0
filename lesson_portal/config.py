"""Configuration loading utilities for the Lesson Portal application."""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".lesson_portal_write_check"

MEGABYTE = 1024 * 1024

DOCUMENT_MIME_TYPES: FrozenSet[str] = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    }
)
VIDEO_MIME_TYPES: FrozenSet[str] = frozenset({"video/mp4", "video/webm", "video/ogg"})


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins and the flag reports whether a fallback
    was used. When nothing can be prepared ``preferred`` is returned so the
    bootstrapper can report the failure.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


@dataclass(frozen=True)
class UploadPolicy:
    """Limits applied to lesson uploads."""

    allowed_mime_types: FrozenSet[str] = field(
        default_factory=lambda: DOCUMENT_MIME_TYPES | VIDEO_MIME_TYPES
    )
    max_doc_bytes: int = 50 * MEGABYTE
    max_video_bytes: int = 500 * MEGABYTE
    max_uploads_per_window: int = 10
    window_millis: int = 60 * 60 * 1000

    def max_bytes_for(self, mime_type: str) -> int:
        """Return the size ceiling that applies to *mime_type*."""

        if (mime_type or "").startswith("video/"):
            return self.max_video_bytes
        return self.max_doc_bytes

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any] | None) -> "UploadPolicy":
        if not mapping:
            return cls()
        defaults = cls()
        allowed = mapping.get("allowed_mime_types")
        if allowed is None:
            allowed_types = defaults.allowed_mime_types
        else:
            allowed_types = frozenset(str(item).strip().lower() for item in allowed if item)
        policy = cls(
            allowed_mime_types=allowed_types,
            max_doc_bytes=int(mapping.get("max_doc_bytes", defaults.max_doc_bytes)),
            max_video_bytes=int(mapping.get("max_video_bytes", defaults.max_video_bytes)),
            max_uploads_per_window=int(
                mapping.get("max_uploads_per_window", defaults.max_uploads_per_window)
            ),
            window_millis=int(mapping.get("window_millis", defaults.window_millis)),
        )
        if policy.max_doc_bytes <= 0 or policy.max_video_bytes <= 0:
            raise ValueError("Upload size ceilings must be positive")
        if policy.max_uploads_per_window <= 0 or policy.window_millis <= 0:
            raise ValueError("Upload rate limit must allow at least one upload per window")
        return policy


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and upload limits for the application."""

    storage_root: Path
    database_file: Path
    blob_root: Path
    upload_policy: UploadPolicy = field(default_factory=UploadPolicy)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".lesson_portal" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()
        preferred_blobs = (base_path / mapping.get("blob_root", "storage/lesson-files")).resolve()

        if storage_fallback_used:
            for label, current in (("database", database_file), ("blob", preferred_blobs)):
                try:
                    relative = current.relative_to(preferred_storage)
                except ValueError:
                    continue
                relocated = (storage_root / relative).resolve()
                LOGGER.warning(
                    "Preferred %s location '%s' is not writable; using fallback '%s'.",
                    label,
                    current,
                    relocated,
                )
                if label == "database":
                    database_file = relocated
                else:
                    preferred_blobs = relocated

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database

        blob_root, _ = _select_writable_directory(
            preferred_blobs,
            label="blob",
            fallbacks=(storage_root / "lesson-files",),
        )

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            blob_root=blob_root,
            upload_policy=UploadPolicy.from_mapping(mapping.get("upload_policy")),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = [
    "AppConfig",
    "DOCUMENT_MIME_TYPES",
    "MEGABYTE",
    "UploadPolicy",
    "VIDEO_MIME_TYPES",
    "load_config",
]
