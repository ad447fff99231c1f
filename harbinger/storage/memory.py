from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, Optional

from harbinger.logging import get_logger
from harbinger.storage.errors import ConstraintViolation
from harbinger.storage.models import User


class MemoryStore:
    """In-process user store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self._next_id = 1
        # Reads counted so cache-aside behaviour can be asserted in tests
        self.read_count = 0
        self._data_lock = threading.RLock()

    def create_user(self, username: str, email: str, password_hash: str) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            now = datetime.now(timezone.utc)
            user = User(
                id=self._next_id,
                username=username,
                email=email,
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._next_id += 1
            self.logger.info("user_created", user_id=user.id)
            return user

    def add_user(self, user: User) -> User:
        """Insert a user with a caller-chosen id (fixtures and imports)."""
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = user
            self._next_id = max(self._next_id, user.id + 1)
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            self.read_count += 1
            return self.users.get(user_id)

    def get_user_by_username_or_email(self, value: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.username == value or u.email == value
                ),
                None,
            )

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
