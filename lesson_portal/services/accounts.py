"""User accounts, roles and password hashing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from werkzeug.security import check_password_hash, generate_password_hash


LOGGER = logging.getLogger(__name__)

DEFAULT_HASH_METHOD = "scrypt"


class Role(IntEnum):
    """User groups; the numbering matches the stored ``user_group`` column."""

    ADMIN = 0
    TEACHER = 1
    STUDENT = 2

    @classmethod
    def parse(cls, value: "str | int | Role") -> "Role":
        if isinstance(value, Role):
            return value
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        try:
            return cls[text.upper()]
        except KeyError as error:
            raise ValueError(f"Unknown role '{value}'") from error


@dataclass
class UserRecord:
    id: int
    user_no: str
    user_name: str
    role: Role
    class_group: Optional[int]
    password_hash: str
    status: str
    created_at: str

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @property
    def is_teacher(self) -> bool:
        return self.role is Role.TEACHER

    @property
    def is_student(self) -> bool:
        return self.role is Role.STUDENT

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def can_upload(self) -> bool:
        return self.role in (Role.ADMIN, Role.TEACHER)

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "user_no": self.user_no,
            "user_name": self.user_name,
            "role": self.role.name.lower(),
            "class_group": self.class_group,
        }


def hash_password(password: str, *, method: str = DEFAULT_HASH_METHOD) -> str:
    """Return the werkzeug-encoded hash of *password*.

    The method and its parameters are stored in the hash itself, so changing
    *method* only affects accounts hashed afterwards.
    """

    return generate_password_hash(password, method=method)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return check_password_hash(password_hash, password)
    except ValueError:
        LOGGER.warning("Stored password hash has an unsupported format")
        return False


__all__ = ["DEFAULT_HASH_METHOD", "Role", "UserRecord", "hash_password", "verify_password"]
