from pathlib import Path

import json

import pytest

import lesson_portal.config as config_module
from lesson_portal.config import AppConfig, MEGABYTE, UploadPolicy, load_config


def test_blob_root_falls_back_when_preferred_is_unusable(tmp_path: Path) -> None:
    storage = tmp_path / "storage"
    storage.mkdir()

    preferred_blobs = tmp_path / "blobs"
    preferred_blobs.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/lessons.db",
            "blob_root": "blobs",
        },
        base_path=tmp_path,
    )

    expected_fallback = (storage / "lesson-files").resolve()
    assert config.blob_root == expected_fallback
    assert expected_fallback.is_dir()


def test_storage_root_falls_back_when_preferred_is_unusable(
    tmp_path: Path, monkeypatch
) -> None:
    home_dir = tmp_path / "home"
    monkeypatch.setattr(config_module.Path, "home", lambda: home_dir)

    preferred_storage = tmp_path / "storage"
    preferred_storage.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/lessons.db",
            "blob_root": "storage/lesson-files",
        },
        base_path=tmp_path,
    )

    expected_storage = (home_dir / ".lesson_portal" / "storage").resolve()
    assert config.storage_root == expected_storage
    assert config.database_file == (expected_storage / "lessons.db").resolve()
    assert config.blob_root == (expected_storage / "lesson-files").resolve()
    assert config.blob_root.exists()


def test_upload_policy_defaults_and_overrides() -> None:
    defaults = UploadPolicy.from_mapping(None)
    assert defaults.max_doc_bytes == 50 * MEGABYTE
    assert defaults.max_video_bytes == 500 * MEGABYTE
    assert "video/mp4" in defaults.allowed_mime_types
    assert defaults.max_bytes_for("video/webm") == defaults.max_video_bytes
    assert defaults.max_bytes_for("application/pdf") == defaults.max_doc_bytes

    custom = UploadPolicy.from_mapping(
        {"allowed_mime_types": ["Application/PDF"], "max_doc_bytes": 1024}
    )
    assert custom.allowed_mime_types == frozenset({"application/pdf"})
    assert custom.max_doc_bytes == 1024
    assert custom.max_video_bytes == defaults.max_video_bytes


@pytest.mark.parametrize(
    "mapping",
    [
        {"max_doc_bytes": 0},
        {"max_video_bytes": -1},
        {"max_uploads_per_window": 0},
        {"window_millis": 0},
    ],
)
def test_upload_policy_rejects_non_positive_limits(mapping) -> None:
    with pytest.raises(ValueError):
        UploadPolicy.from_mapping(mapping)


def test_load_config_reads_explicit_file(tmp_path: Path) -> None:
    config_file = tmp_path / "custom.json"
    config_file.write_text(
        json.dumps(
            {
                "storage_root": str(tmp_path / "data"),
                "database_file": str(tmp_path / "data" / "portal.db"),
                "blob_root": str(tmp_path / "data" / "files"),
                "upload_policy": {"max_uploads_per_window": 2},
            }
        ),
        encoding="utf-8",
    )

    config = load_config(config_file)

    assert config.storage_root == (tmp_path / "data").resolve()
    assert config.database_file.name == "portal.db"
    assert config.blob_root == (tmp_path / "data" / "files").resolve()
    assert config.upload_policy.max_uploads_per_window == 2
