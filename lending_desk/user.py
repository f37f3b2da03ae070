from __future__ import annotations

import hashlib
import hmac
import os
from datetime import datetime, timezone
from enum import Enum

from .book import generate_id

_PBKDF2_ROUNDS = 100_000


class Role(str, Enum):
    ADMIN = "Admin"
    STUDENT = "Student"


def hash_password(password: str, salt: str | None = None) -> str:
    """Hash a password as ``<salt>$<pbkdf2 hex digest>``."""
    salt = salt or os.urandom(16).hex()
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), _PBKDF2_ROUNDS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    salt, _, _ = password_hash.partition("$")
    return hmac.compare_digest(hash_password(password, salt), password_hash)


class User:
    """A library account. The password hash never leaves the server."""

    def __init__(self, username: str, password_hash: str, role: Role | str = Role.STUDENT,
                 email: str | None = None, created_at: str | None = None,
                 id: str | None = None) -> None:
        self.id = id or generate_id()
        self.username = username.strip()
        self.password_hash = password_hash
        self.role = Role(role)
        self.email = email
        self.created_at = created_at or datetime.now(timezone.utc).isoformat()

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.username} ({self.role.value})"

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role.value,
            "email": self.email,
            "createdAt": self.created_at,
        }

    def to_dict(self) -> dict:
        data = self.to_public_dict()
        data["passwordHash"] = self.password_hash
        return data

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data["id"],
            username=data["username"],
            password_hash=data.get("passwordHash", ""),
            role=data.get("role", Role.STUDENT.value),
            email=data.get("email"),
            created_at=data.get("createdAt"),
        )
