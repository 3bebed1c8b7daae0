from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lesson_portal.bootstrap import Bootstrapper
from lesson_portal.config import AppConfig
from lesson_portal.services.accounts import Role, hash_password
from lesson_portal.services.storage import LessonRepository


_CONFIG_MAPPING = {
    "storage_root": "storage",
    "database_file": "storage/lessons.db",
    "blob_root": "storage/lesson-files",
    "upload_policy": {
        "max_uploads_per_window": 3,
        "window_millis": 60000,
    },
}


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(json.dumps(_CONFIG_MAPPING, indent=2), encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(_CONFIG_MAPPING, base_path=tmp_path)

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> LessonRepository:
    return LessonRepository(temp_config)


@pytest.fixture()
def make_user(repository: LessonRepository):
    """Return a helper creating accounts with a cheap password hash."""

    def _make_user(
        user_no: str,
        role: Role,
        *,
        password: str = "Secret123",
        class_group: int | None = None,
        status: str = "active",
    ) -> int:
        return repository.add_user(
            user_no,
            user_no.title(),
            hash_password(password, method="pbkdf2:sha256:1000"),
            role,
            class_group=class_group,
            status=status,
        )

    return _make_user
