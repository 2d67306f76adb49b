"""
Login attempt counting

Failed logins are counted per identity in a store shared by every worker,
so lockouts survive restarts and apply across processes. The Mongo backend
keeps one document per identity and lets a TTL index purge expired windows.
"""

from abc import ABC, abstractmethod
from datetime import timedelta

import structlog
from pymongo import ReturnDocument

from database import utcnow
from settings import LOCKOUT_MINUTES, MAX_LOGIN_ATTEMPTS

log = structlog.get_logger().bind(component="attempts")


class AttemptCounter(ABC):
    @abstractmethod
    def hit(self, key: str) -> int:
        """Record a failed attempt and return the count inside the current window."""

    @abstractmethod
    def count(self, key: str) -> int:
        ...

    @abstractmethod
    def reset(self, key: str) -> None:
        ...

    def is_locked(self, key: str) -> bool:
        return self.count(key) >= self.max_attempts


class MongoAttemptCounter(AttemptCounter):
    def __init__(self, collection, max_attempts: int = MAX_LOGIN_ATTEMPTS, window_minutes: int = LOCKOUT_MINUTES):
        self.collection = collection
        self.max_attempts = max_attempts
        self.window = timedelta(minutes=window_minutes)

    def _expire(self, key: str) -> None:
        # the TTL monitor only runs once a minute; drop stale windows eagerly
        self.collection.delete_one({"_id": key, "expires_at": {"$lte": utcnow()}})

    def hit(self, key: str) -> int:
        self._expire(key)
        doc = self.collection.find_one_and_update(
            {"_id": key},
            {"$inc": {"attempts": 1}, "$setOnInsert": {"expires_at": utcnow() + self.window}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        if doc["attempts"] >= self.max_attempts:
            log.warning("login_locked", attempts=doc["attempts"])
        return doc["attempts"]

    def count(self, key: str) -> int:
        self._expire(key)
        doc = self.collection.find_one({"_id": key})
        return doc["attempts"] if doc else 0

    def reset(self, key: str) -> None:
        self.collection.delete_one({"_id": key})
