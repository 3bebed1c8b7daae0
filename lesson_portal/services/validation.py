"""Input sanitisation, upload checks and rate limiting for lesson submissions.

Everything in this module is free of I/O. The only mutable state is the
counter table of a :class:`RateLimiter`, which lives in an injected
:class:`RateLimitStore` so tests and multi-worker deployments can supply
their own.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Pattern, Protocol, Tuple

from ..config import MEGABYTE, UploadPolicy

__all__ = [
    "DANGEROUS_EXTENSIONS",
    "DEFAULT_POLICY",
    "EMPTY_INPUT_MESSAGE",
    "FORBIDDEN_CONTENT_MESSAGE",
    "FORBIDDEN_EXTENSION_MESSAGE",
    "INVALID_CHARACTER_MESSAGE",
    "InMemoryRateLimitStore",
    "RateLimitCounter",
    "RateLimitStore",
    "RateLimiter",
    "UNSUPPORTED_TYPE_MESSAGE",
    "UploadMetadata",
    "ValidationResult",
    "check_rate_limit",
    "sanitize_text",
    "validate_email",
    "validate_password",
    "validate_text",
    "validate_upload",
]

DEFAULT_POLICY = UploadPolicy()

DEFAULT_TEXT_LIMIT = 255

UNSUPPORTED_TYPE_MESSAGE = (
    "Loại file không được phép. Chỉ chấp nhận PDF, DOC, DOCX, MP4, WEBM, OGG."
)
FORBIDDEN_EXTENSION_MESSAGE = "Tên file chứa phần mở rộng không được phép"
INVALID_CHARACTER_MESSAGE = "Tên file chứa ký tự không hợp lệ"
EMPTY_INPUT_MESSAGE = "Trường này không được để trống"
FORBIDDEN_CONTENT_MESSAGE = "Dữ liệu đầu vào chứa nội dung không được phép"

# Matched as substrings of the lowercased name, not only as the suffix.
DANGEROUS_EXTENSIONS: Tuple[str, ...] = (
    ".exe",
    ".bat",
    ".cmd",
    ".scr",
    ".vbs",
    ".js",
    ".jar",
    ".com",
    ".pif",
    ".application",
    ".gadget",
    ".msi",
    ".msp",
    ".hta",
)

_MARKUP_CHARACTERS = re.compile(r"[<>'\"]")
_DANGEROUS_SCHEMES = re.compile(r"javascript:|data:|vbscript:", re.IGNORECASE)
_SUSPICIOUS_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(
        r"(union|select|insert|update|delete|drop|exec|script|alert|eval|expression)",
        re.IGNORECASE,
    ),
    re.compile(r"<script[\s\S]*?>[\s\S]*?</script>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
)
_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(True)

    @classmethod
    def fail(cls, error: str) -> "ValidationResult":
        return cls(False, error)

    def __bool__(self) -> bool:
        return self.valid


@dataclass(frozen=True)
class UploadMetadata:
    """Name, size and declared type of a file awaiting validation."""

    name: str
    size: int
    mime_type: str


def sanitize_text(value: object, limit: int = DEFAULT_TEXT_LIMIT) -> str:
    """Strip markup characters and script URI schemes from *value*.

    The result never contains ``< > ' "`` or any of the ``javascript:``,
    ``data:`` and ``vbscript:`` schemes, has no surrounding whitespace and is
    at most *limit* characters long, so applying the function twice gives
    the same result as applying it once.
    """

    if not isinstance(value, str):
        return ""

    cleaned = _MARKUP_CHARACTERS.sub("", value)
    # Removing one scheme can splice another together ("javajavascript:script:").
    while True:
        stripped = _DANGEROUS_SCHEMES.sub("", cleaned)
        if stripped == cleaned:
            break
        cleaned = stripped
    cleaned = cleaned.strip()
    return cleaned[:limit].strip()


def validate_upload(
    file: UploadMetadata,
    policy: UploadPolicy = DEFAULT_POLICY,
) -> ValidationResult:
    """Check *file* against *policy*; the first failing rule decides the message."""

    mime_type = (file.mime_type or "").strip().lower()
    if mime_type not in policy.allowed_mime_types:
        return ValidationResult.fail(UNSUPPORTED_TYPE_MESSAGE)

    ceiling = policy.max_bytes_for(mime_type)
    if file.size > ceiling:
        return ValidationResult.fail(f"File quá lớn (tối đa {ceiling // MEGABYTE}MB)")

    name = (file.name or "").lower()
    for extension in DANGEROUS_EXTENSIONS:
        if extension in name:
            return ValidationResult.fail(FORBIDDEN_EXTENSION_MESSAGE)

    if "\0" in name or ".." in name:
        return ValidationResult.fail(INVALID_CHARACTER_MESSAGE)

    return ValidationResult.ok()


def validate_text(value: Optional[str], max_length: int = DEFAULT_TEXT_LIMIT) -> ValidationResult:
    """Heuristic screening of free text before it is stored.

    This is a second line of defence; the repository still binds every value
    as a query parameter.
    """

    if not value or not value.strip():
        return ValidationResult.fail(EMPTY_INPUT_MESSAGE)

    if len(value) > max_length:
        return ValidationResult.fail(f"Không được vượt quá {max_length} ký tự")

    for pattern in _SUSPICIOUS_PATTERNS:
        if pattern.search(value):
            return ValidationResult.fail(FORBIDDEN_CONTENT_MESSAGE)

    return ValidationResult.ok()


def validate_email(value: str) -> bool:
    return bool(_EMAIL_PATTERN.match(value or "")) and len(value) <= 254


def validate_password(value: str) -> ValidationResult:
    if len(value or "") < 8:
        return ValidationResult.fail("Mật khẩu phải có ít nhất 8 ký tự")
    if not (
        re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)
    ):
        return ValidationResult.fail(
            "Mật khẩu phải chứa ít nhất một chữ cái thường, một chữ cái hoa và một số"
        )
    return ValidationResult.ok()


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------
@dataclass
class RateLimitCounter:
    count: int
    window_reset_at: float


class RateLimitStore(Protocol):
    """Storage for rate-limit counters."""

    def update(
        self,
        key: str,
        operation: Callable[[Optional[RateLimitCounter]], Tuple[Optional[RateLimitCounter], bool]],
    ) -> bool:
        """Atomically replace the counter for *key* with ``operation(current)``.

        ``operation`` returns the new counter and the decision to report.
        """


class InMemoryRateLimitStore:
    """Process-local counter table guarded by a lock."""

    def __init__(self) -> None:
        self._counters: Dict[str, RateLimitCounter] = {}
        self._lock = threading.Lock()

    def update(
        self,
        key: str,
        operation: Callable[[Optional[RateLimitCounter]], Tuple[Optional[RateLimitCounter], bool]],
    ) -> bool:
        with self._lock:
            counter, allowed = operation(self._counters.get(key))
            if counter is None:
                self._counters.pop(key, None)
            else:
                self._counters[key] = counter
            return allowed

    def get(self, key: str) -> Optional[RateLimitCounter]:
        with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                return None
            return RateLimitCounter(counter.count, counter.window_reset_at)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()


def _monotonic_millis() -> float:
    return time.monotonic() * 1000.0


class RateLimiter:
    """Fixed-window counter per key.

    Only correct within the process that owns the store; it dampens abuse
    rather than enforcing hard quotas.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        *,
        clock: Callable[[], float] = _monotonic_millis,
    ) -> None:
        self._store: RateLimitStore = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def check(self, key: str, max_requests: int = 5, window_millis: int = 900_000) -> bool:
        now = self._clock()

        def _advance(
            counter: Optional[RateLimitCounter],
        ) -> Tuple[Optional[RateLimitCounter], bool]:
            if counter is None or now > counter.window_reset_at:
                return RateLimitCounter(1, now + window_millis), True
            if counter.count >= max_requests:
                return counter, False
            return RateLimitCounter(counter.count + 1, counter.window_reset_at), True

        return self._store.update(key, _advance)


def check_rate_limit(
    limiter: RateLimiter,
    key: str,
    max_requests: int = 5,
    window_millis: int = 900_000,
) -> bool:
    """Return ``True`` when *key* may perform another request."""

    return limiter.check(key, max_requests, window_millis)
