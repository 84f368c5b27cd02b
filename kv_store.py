"""Key-value persistence backends for progression state.

Provides a string get/set/delete API. The engine serialises its own JSON;
backends only move strings. Any `set` may fail with StoreCapacityError when
the underlying storage is full.

Usage:
    from kv_store import init_store
    store = init_store(config)        # picks memory / file / redis
    store.set("1:unified-progress", "{...}")
    raw = store.get("1:unified-progress")
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Protocol
from urllib.parse import quote

import redis
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

logger = logging.getLogger(__name__)


class StoreCapacityError(Exception):
    """The backing store refused a write because it is full."""
    pass


# ── Protocol ───────────────────────────────────────────────

class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...


# ── In-Memory Implementation ──────────────────────────────

class MemoryStore:
    """Dict-backed store with an optional byte quota.

    With `quota_bytes` set, a write that would push the total size of all
    values past the quota raises StoreCapacityError, like a browser's local
    storage does when it runs out of room.
    """

    def __init__(self, quota_bytes: int = 0) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()
        self.quota_bytes = quota_bytes

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self.quota_bytes:
                used = sum(len(v.encode()) for k, v in self._data.items() if k != key)
                if used + len(value.encode()) > self.quota_bytes:
                    raise StoreCapacityError(
                        f"quota of {self.quota_bytes} bytes exceeded writing {key}"
                    )
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


# ── JSON File Implementation ──────────────────────────────

class JsonFileStore:
    """One file per key under a data directory."""

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("File store read error (key=%s): %s", key, e)
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(value, encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            # Any failed write (ENOSPC, EDQUOT, EACCES) means the value did not land.
            raise StoreCapacityError(f"write failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


# ── Redis Implementation ──────────────────────────────────

class RedisStore:
    """Wraps redis.Redis; out-of-memory replies become StoreCapacityError."""

    def __init__(self, redis_client, prefix: str = "") -> None:
        self._redis = redis_client
        self.prefix = prefix

    def get(self, key: str) -> str | None:
        try:
            raw = self._redis.get(self.prefix + key)
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
        except Exception as e:
            logger.warning("Redis GET error (key=%s): %s", key, e)
            return None
        return raw

    def set(self, key: str, value: str) -> None:
        try:
            self._redis.set(self.prefix + key, value)
        except Exception as e:
            raise StoreCapacityError(f"Redis SET failed (key={key}): {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._redis.delete(self.prefix + key)
        except Exception as e:
            logger.warning("Redis DELETE error (key=%s): %s", key, e)


# ── Factory ───────────────────────────────────────────────

def init_store(config) -> KeyValueStore:
    """Build the store named by config.STORE_BACKEND.

    A Redis backend that cannot be reached falls back to memory so the engine
    stays available; durability is then limited to the process lifetime.
    """
    backend = getattr(config, "STORE_BACKEND", "memory")

    if backend == "redis":
        redis_url = getattr(config, "REDIS_URL", "")
        try:
            client = redis.Redis.from_url(redis_url, decode_responses=False)
            client.ping()
            logger.info("Progress store: Redis (%s)", redis_url)
            return RedisStore(client, prefix=getattr(config, "STORE_KEY_PREFIX", ""))
        except Exception as e:
            logger.warning("Redis connection failed (%s), falling back to in-memory store.", e)

    elif backend == "file":
        data_dir = getattr(config, "DATA_DIR")
        logger.info("Progress store: JSON files (%s)", data_dir)
        return JsonFileStore(data_dir)

    logger.info("Progress store: in-memory")
    return MemoryStore(quota_bytes=getattr(config, "STORE_QUOTA_BYTES", 0))


# ── Write with cleanup + single retry ─────────────────────

def write_with_cleanup(
    store: KeyValueStore,
    key: str,
    value: str,
    cleanup: Callable[[], None] | None = None,
) -> bool:
    """Write `value`, running `cleanup` and retrying once on StoreCapacityError.

    Returns False when the retry also fails; the caller decides how to
    surface the lost durability. Other exceptions propagate.
    """
    def _before_retry(retry_state) -> None:
        logger.warning(
            "Store write failed (key=%s): %s; cleaning up and retrying",
            key, retry_state.outcome.exception(),
        )
        if cleanup is not None:
            cleanup()

    retryer = Retrying(
        retry=retry_if_exception_type(StoreCapacityError),
        stop=stop_after_attempt(2),
        before_sleep=_before_retry,
        reraise=True,
    )
    try:
        retryer(store.set, key, value)
    except StoreCapacityError as e:
        logger.warning("Store write still failing after cleanup (key=%s): %s", key, e)
        return False
    return True
