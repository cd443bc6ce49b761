from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional

from authkeep.logging import get_logger
from authkeep.storage.errors import ConstraintViolation
from authkeep.storage.models import User


class MemoryStore:
    """In-memory credential store for tests and local development.

    State is scoped to the instance. Callers receive copies of the stored
    records so mutation outside the lock cannot leak back in.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._ids_by_email: Dict[str, str] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def create_user(self, email: str, password_hash: str, name: str) -> User:
        with self._data_lock:
            if email in self._ids_by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = datetime.now(timezone.utc)
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                name=name,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._ids_by_email[email] = user.id
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._ids_by_email.get(email)
            if user_id is None:
                return None
            return replace(self.users[user_id])

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def mark_email_verified(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._ids_by_email.get(email)
            if user_id is None:
                return None
            user = self.users[user_id]
            if not user.email_verified:
                user.email_verified = True
                user.updated_at = datetime.now(timezone.utc)
            return replace(user)

    def update_password_by_email(self, email: str, password_hash: str) -> bool:
        with self._data_lock:
            user_id = self._ids_by_email.get(email)
            if user_id is None:
                return False
            user = self.users[user_id]
            user.password_hash = password_hash
            user.updated_at = datetime.now(timezone.utc)
            return True

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
