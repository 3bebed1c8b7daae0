"""Utility helpers for consistent storage key naming."""

from __future__ import annotations

import re
import secrets
import string
import time
import unicodedata
from typing import Optional

__all__ = [
    "MAX_SAFE_NAME_LENGTH",
    "build_storage_key",
    "create_safe_file_name",
    "random_token",
]

MAX_SAFE_NAME_LENGTH = 100
TOKEN_ALPHABET = string.ascii_lowercase + string.digits
TOKEN_LENGTH = 6

# Letters that carry a stroke rather than a combining mark survive NFD.
_STROKED_LETTERS = str.maketrans({"đ": "d", "Đ": "D"})


def create_safe_file_name(original_name: str) -> str:
    """Return *original_name* reduced to ``[a-zA-Z0-9._-]``.

    Diacritics are dropped, everything else outside the allowed set becomes
    an underscore, runs of underscores collapse and the result is capped at
    :data:`MAX_SAFE_NAME_LENGTH` characters with the extension preserved.
    """

    value = unicodedata.normalize("NFD", original_name or "").translate(_STROKED_LETTERS)
    value = "".join(char for char in value if not unicodedata.combining(char))
    value = re.sub(r"[^a-zA-Z0-9._-]", "_", value)
    value = re.sub(r"_+", "_", value).strip("_")
    if not value:
        return "file"
    if len(value) <= MAX_SAFE_NAME_LENGTH:
        return value

    stem, dot, extension = value.rpartition(".")
    if not dot or not stem or len(extension) >= MAX_SAFE_NAME_LENGTH // 2:
        return value[:MAX_SAFE_NAME_LENGTH].rstrip("_") or "file"
    keep = MAX_SAFE_NAME_LENGTH - len(extension) - 1
    return f"{stem[:keep].rstrip('_')}.{extension}"


def random_token(length: int = TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def build_storage_key(
    class_group: int,
    original_name: str,
    *,
    timestamp_ms: Optional[int] = None,
    token: Optional[str] = None,
) -> str:
    """Return ``class_<group>/<millis>_<token>_<safe name>`` for a new upload."""

    stamp = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    suffix = token or random_token()
    return f"class_{int(class_group)}/{stamp}_{suffix}_{create_safe_file_name(original_name)}"
