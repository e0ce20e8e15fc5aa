"""User accounts: bcrypt-hashed secrets in the ``users`` collection."""
from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, Iterable, List, Optional

import bcrypt

from .errors import AlreadyExists, InvalidInput, NotFound
from .models import User
from .store import RecordStore

logger = logging.getLogger(__name__)


def hash_secret(secret: str, rounds: int = 12) -> str:
    """Hash a secret with bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(secret.encode("utf-8"), salt).decode("utf-8")


def verify_secret(secret: str, secret_hash: str) -> bool:
    """Verify a secret against its hash."""
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), secret_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def _find(users: List[Dict[str, Any]], user_id: str) -> Optional[Dict[str, Any]]:
    return next((u for u in users if u.get("id") == user_id), None)


class UserService:
    def __init__(self, store: RecordStore, *, bcrypt_rounds: int = 12) -> None:
        self.store = store
        self.bcrypt_rounds = bcrypt_rounds
        # unknown ids are checked against this so they cost a full bcrypt check too
        self._dummy_hash = hash_secret(secrets.token_hex(16), bcrypt_rounds)

    def list(self) -> List[Dict[str, str]]:
        """Public listing: ids only, never secrets."""
        return [{"id": u["id"]} for u in self.store.load("users") if u.get("id")]

    def exists(self, user_id: str) -> bool:
        return _find(self.store.load("users"), user_id) is not None

    def ids(self) -> set:
        return {u["id"] for u in self.store.load("users") if u.get("id")}

    def authenticate(self, user_id: str, secret: str) -> bool:
        record = _find(self.store.load("users"), user_id)
        if record is None:
            verify_secret(secret, self._dummy_hash)
            return False
        return verify_secret(secret, record.get("secretHash", ""))

    def create(self, user_id: str, secret: str) -> User:
        user_id = (user_id or "").strip()
        if not user_id or not secret:
            raise InvalidInput("id and secret are required")
        user = User(id=user_id, secret_hash=hash_secret(secret, self.bcrypt_rounds))
        with self.store.transaction("users") as users:
            if _find(users, user_id) is not None:
                raise AlreadyExists(f"User already exists: {user_id}")
            users.append(user.dump())
        logger.info("Created user %s", user_id)
        return user

    def update(self, user_id: str, secret: Optional[str] = None) -> None:
        new_hash = hash_secret(secret, self.bcrypt_rounds) if secret else None
        with self.store.transaction("users") as users:
            record = _find(users, user_id)
            if record is None:
                raise NotFound(f"User not found: {user_id}")
            if new_hash:
                record["secretHash"] = new_hash
        logger.info("Updated user %s", user_id)

    def delete(self, user_id: str) -> None:
        with self.store.transaction("users") as users:
            record = _find(users, user_id)
            if record is None:
                raise NotFound(f"User not found: {user_id}")
            users.remove(record)
        logger.info("Deleted user %s", user_id)

    def seed(self, entries: Iterable[Dict[str, Any]]) -> int:
        """Create bootstrap users if the collection has never been written."""
        entries = list(entries)
        if not entries or self.store.exists("users"):
            return 0
        created = 0
        with self.store.transaction("users") as users:
            for entry in entries:
                user_id = str(entry.get("id") or "").strip()
                secret = str(entry.get("secret") or "")
                if not user_id or not secret or _find(users, user_id) is not None:
                    logger.warning("Skipping invalid bootstrap user entry %r", user_id)
                    continue
                users.append(User(id=user_id, secret_hash=hash_secret(secret, self.bcrypt_rounds)).dump())
                created += 1
        logger.info("Seeded %d bootstrap users", created)
        return created
