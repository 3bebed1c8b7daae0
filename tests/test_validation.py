from __future__ import annotations

import threading

import pytest

from lesson_portal.config import MEGABYTE, UploadPolicy
from lesson_portal.services.validation import (
    EMPTY_INPUT_MESSAGE,
    FORBIDDEN_CONTENT_MESSAGE,
    FORBIDDEN_EXTENSION_MESSAGE,
    INVALID_CHARACTER_MESSAGE,
    UNSUPPORTED_TYPE_MESSAGE,
    InMemoryRateLimitStore,
    RateLimiter,
    UploadMetadata,
    check_rate_limit,
    sanitize_text,
    validate_email,
    validate_password,
    validate_text,
    validate_upload,
)


PDF = "application/pdf"


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    "value",
    [
        "<b>Bài giảng</b>",
        "  'quoted' \"text\"  ",
        "javajavascript:script:alert(1)",
        "DATA:text/html,<p>hi</p>",
        "Phương trình bậc hai",
        "x" * 300 + " ",
        " " * 10,
    ],
)
def test_sanitize_text_is_idempotent(value: str) -> None:
    once = sanitize_text(value)
    assert sanitize_text(once) == once


def test_sanitize_text_strips_markup_and_schemes() -> None:
    cleaned = sanitize_text("<a href='javascript:alert(1)'>Bài 1</a>")
    assert "<" not in cleaned and ">" not in cleaned and "'" not in cleaned
    assert "javascript:" not in cleaned.lower()
    assert sanitize_text("javajavascript:script:go") == "go"
    assert sanitize_text("  Đề cương  ") == "Đề cương"


def test_sanitize_text_truncates_and_handles_non_strings() -> None:
    assert len(sanitize_text("a" * 300)) == 255
    assert len(sanitize_text("b" * 1200, 1000)) == 1000
    assert sanitize_text(None) == ""
    assert sanitize_text(42) == ""


def test_validate_upload_accepts_allowed_document() -> None:
    verdict = validate_upload(UploadMetadata("bai_giang.pdf", 2 * MEGABYTE, PDF))
    assert verdict.valid
    assert verdict.error is None
    assert verdict


def test_validate_upload_rejects_unsupported_type_first() -> None:
    verdict = validate_upload(UploadMetadata("virus.exe", 10 ** 12, "application/x-msdownload"))
    assert not verdict.valid
    assert verdict.error == UNSUPPORTED_TYPE_MESSAGE


def test_validate_upload_normalises_mime_case() -> None:
    assert validate_upload(UploadMetadata("notes.pdf", 10, "Application/PDF")).valid


def test_validate_upload_size_ceiling_is_inclusive() -> None:
    policy = UploadPolicy()
    exact = UploadMetadata("big.pdf", policy.max_doc_bytes, PDF)
    over = UploadMetadata("big.pdf", policy.max_doc_bytes + 1, PDF)

    assert validate_upload(exact, policy).valid
    verdict = validate_upload(over, policy)
    assert not verdict.valid
    assert verdict.error == "File quá lớn (tối đa 50MB)"


def test_validate_upload_uses_video_ceiling_for_videos() -> None:
    policy = UploadPolicy()
    assert validate_upload(UploadMetadata("lecture.mp4", 400 * MEGABYTE, "video/mp4"), policy).valid
    verdict = validate_upload(
        UploadMetadata("lecture.mp4", policy.max_video_bytes + 1, "video/mp4"), policy
    )
    assert verdict.error == "File quá lớn (tối đa 500MB)"


@pytest.mark.parametrize(
    "name",
    ["report.exe.pdf", "setup.MSI.docx", "notes.json.pdf", "run.bat"],
)
def test_validate_upload_rejects_dangerous_extension_anywhere(name: str) -> None:
    verdict = validate_upload(UploadMetadata(name, 100, PDF))
    assert verdict.error == FORBIDDEN_EXTENSION_MESSAGE


@pytest.mark.parametrize("name", ["bai\0.pdf", "../etc/passwd.pdf", "bai..pdf"])
def test_validate_upload_rejects_path_tricks(name: str) -> None:
    verdict = validate_upload(UploadMetadata(name, 100, PDF))
    assert verdict.error == INVALID_CHARACTER_MESSAGE


def test_validate_text_rules() -> None:
    assert validate_text("Bài giảng tuần 3").valid
    assert validate_text("").error == EMPTY_INPUT_MESSAGE
    assert validate_text("   ").error == EMPTY_INPUT_MESSAGE
    assert validate_text(None).error == EMPTY_INPUT_MESSAGE
    assert validate_text("a" * 256).error == "Không được vượt quá 255 ký tự"
    assert validate_text("a" * 300, 1000).valid
    assert validate_text("x'; DROP TABLE users;--").error == FORBIDDEN_CONTENT_MESSAGE
    assert validate_text("<script>alert(1)</script>").error == FORBIDDEN_CONTENT_MESSAGE
    assert validate_text("see data:text/html,hi").error == FORBIDDEN_CONTENT_MESSAGE


def test_validate_email_and_password() -> None:
    assert validate_email("teacher@school.edu.vn")
    assert not validate_email("teacher@school")
    assert not validate_email("no spaces@school.vn")

    assert validate_password("Secret123").valid
    assert not validate_password("short1A").valid
    assert not validate_password("alllowercase1").valid
    assert not validate_password("NoDigitsHere").valid


def test_rate_limiter_allows_max_then_denies() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)

    results = [limiter.check("upload:7", 5, 60_000) for _ in range(6)]

    assert results == [True, True, True, True, True, False]
    counter = limiter.store.get("upload:7")
    assert counter is not None and counter.count == 5


def test_rate_limiter_resets_after_window() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    for _ in range(5):
        assert limiter.check("upload:7", 5, 60_000)
    assert not limiter.check("upload:7", 5, 60_000)

    clock.now += 60_000
    assert not limiter.check("upload:7", 5, 60_000)

    clock.now += 1
    assert limiter.check("upload:7", 5, 60_000)
    assert limiter.store.get("upload:7").count == 1


def test_rate_limiter_keys_are_independent() -> None:
    limiter = RateLimiter(clock=FakeClock())
    assert check_rate_limit(limiter, "upload:1", 1, 1_000)
    assert not check_rate_limit(limiter, "upload:1", 1, 1_000)
    assert check_rate_limit(limiter, "upload:2", 1, 1_000)


def test_rate_limiter_counts_concurrent_calls_exactly() -> None:
    store = InMemoryRateLimitStore()
    limiter = RateLimiter(store, clock=FakeClock())
    outcomes = []
    lock = threading.Lock()

    def worker() -> None:
        allowed = limiter.check("upload:9", 10, 60_000)
        with lock:
            outcomes.append(allowed)

    threads = [threading.Thread(target=worker) for _ in range(25)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(True) == 10
    assert store.get("upload:9").count == 10
