"""One-time code storage used by the newsletter and password reset flows."""

import logging
import secrets
import threading
import time
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from pymongo import ReturnDocument

from .utils import utcnow

logger = logging.getLogger(__name__)

OTP_CODE_LENGTH = 6
MAX_FAILED_OTP_ATTEMPTS = 5


def generate_otp_code(length: int = OTP_CODE_LENGTH) -> str:
    upper_bound = 10**length
    return f"{secrets.randbelow(upper_bound):0{length}d}"


class OtpStore:
    """Key/value store whose entries disappear after a time-to-live."""

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        raise NotImplementedError

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def consume(
        self, key: str, candidate: str, max_failed_attempts: int = MAX_FAILED_OTP_ATTEMPTS
    ) -> bool:
        """Atomically remove the code if ``candidate`` matches it.

        A mismatch counts as a failed attempt; the code is discarded once
        ``max_failed_attempts`` is reached.
        """
        raise NotImplementedError


class InMemoryOtpStore(OtpStore):
    """Process-local store. Codes are lost on restart and not shared
    between workers, so only use it for single-process deployments."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, List] = {}
        self._lock = threading.Lock()

    def _live_entry(self, key: str) -> Optional[List]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry[1]:
            del self._entries[key]
            return None
        return entry

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            # value, expires_at, failed_attempts
            self._entries[key] = [value, self._clock() + ttl_seconds, 0]

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live_entry(key)
            return entry[0] if entry else None

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def consume(
        self, key: str, candidate: str, max_failed_attempts: int = MAX_FAILED_OTP_ATTEMPTS
    ) -> bool:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return False
            if secrets.compare_digest(str(entry[0]), str(candidate)):
                del self._entries[key]
                return True
            entry[2] += 1
            if entry[2] >= max_failed_attempts:
                del self._entries[key]
                logger.warning("Discarded one-time code %s after %d failed attempts", key, entry[2])
            return False


class MongoOtpStore(OtpStore):
    """Stores codes in a collection with a TTL index on ``expires_at``."""

    def __init__(self, collection):
        self._collection = collection
        try:
            self._collection.create_index("expires_at", expireAfterSeconds=0)
        except Exception as exc:
            logger.warning("Unable to ensure TTL index for one-time codes: %s", exc)

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        now = utcnow()
        self._collection.update_one(
            {"key": key},
            {
                "$set": {
                    "key": key,
                    "value": value,
                    "failed_attempts": 0,
                    "created_at": now,
                    "expires_at": now + timedelta(seconds=ttl_seconds),
                }
            },
            upsert=True,
        )

    def get(self, key: str) -> Optional[str]:
        record = self._collection.find_one({"key": key})
        if not record:
            return None
        # The TTL monitor only runs once a minute.
        expires_at = record.get("expires_at")
        if not expires_at or expires_at <= utcnow():
            self._collection.delete_one({"_id": record["_id"]})
            return None
        return record.get("value")

    def delete(self, key: str) -> None:
        self._collection.delete_one({"key": key})

    def consume(
        self, key: str, candidate: str, max_failed_attempts: int = MAX_FAILED_OTP_ATTEMPTS
    ) -> bool:
        now = utcnow()
        matched = self._collection.find_one_and_delete(
            {"key": key, "value": str(candidate), "expires_at": {"$gt": now}}
        )
        if matched:
            return True

        record = self._collection.find_one_and_update(
            {"key": key, "expires_at": {"$gt": now}},
            {"$inc": {"failed_attempts": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if record and int(record.get("failed_attempts", 0) or 0) >= max_failed_attempts:
            self._collection.delete_one({"_id": record["_id"]})
            logger.warning(
                "Discarded one-time code %s after %d failed attempts",
                key,
                record["failed_attempts"],
            )
        return False
