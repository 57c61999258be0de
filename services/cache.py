"""
Lookup cache for resolved configuration values.

Demo / development  →  in-process dict with TTL eviction
Production          →  Redis hash per setting key (when CACHE_BACKEND=redis)

Entries are stored per (setting key, scope) where the scope is a persona
name or ``*`` for the global lookup.  A cached ``None`` is a real answer
("not configured") and is told apart from a miss by ``lookup``::

    from services.cache import cache

    cache.remember("demo.workflow.config", "rachel", {...})
    found, value = cache.lookup("demo.workflow.config", "rachel")
    cache.forget("demo.workflow.config")      # every scope of the key
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "*"

Lookup = Tuple[bool, Any]


# =====================================
# Abstract interface
# =====================================

class ConfigCache(ABC):
    """Contract shared by every config cache backend."""

    @abstractmethod
    def lookup(self, key: str, scope: Optional[str]) -> Lookup:
        """``(True, value)`` on a hit, ``(False, None)`` on a miss or expiry."""

    @abstractmethod
    def remember(self, key: str, scope: Optional[str], value: Any, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def forget(self, key: str) -> int:
        """Drop the cached answers for ``key`` in every scope; return how many were dropped."""

    @abstractmethod
    def clear(self) -> None:
        ...

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        ...


# =====================================
# In-memory implementation (demo)
# =====================================

class MemoryConfigCache(ConfigCache):
    """Thread-safe in-process cache; ttl <= 0 means no expiry.

    Values are handed out as deep copies, so callers can never mutate the
    cached answer.
    """

    def __init__(self, default_ttl: int = 300) -> None:
        # setting key → scope → (value, expires_at)
        self._entries: Dict[str, Dict[str, Tuple[Any, float]]] = {}
        self._default_ttl = default_ttl
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    def lookup(self, key: str, scope: Optional[str]) -> Lookup:
        scope = scope or GLOBAL_SCOPE
        with self._lock:
            scopes = self._entries.get(key)
            entry = scopes.get(scope) if scopes else None
            if entry is not None and entry[1] and time.monotonic() > entry[1]:
                del scopes[scope]
                entry = None
            if entry is None:
                self._misses += 1
                return False, None
            self._hits += 1
            value = entry[0]
        return True, copy.deepcopy(value)

    def remember(self, key: str, scope: Optional[str], value: Any, ttl: Optional[int] = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        expires_at = time.monotonic() + ttl if ttl > 0 else 0.0
        with self._lock:
            self._entries.setdefault(key, {})[scope or GLOBAL_SCOPE] = (copy.deepcopy(value), expires_at)

    def forget(self, key: str) -> int:
        with self._lock:
            dropped = len(self._entries.pop(key, {}))
            self._invalidations += 1
            return dropped

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = self._misses = self._invalidations = 0

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "backend": "memory",
                "settings": len(self._entries),
                "entries": sum(len(s) for s in self._entries.values()),
                "hits": self._hits,
                "misses": self._misses,
                "invalidations": self._invalidations,
            }


# =====================================
# Redis implementation (production)
# =====================================

class RedisConfigCache(ConfigCache):
    """
    Redis-backed cache shared by every service instance.

    Each setting key maps to one hash (``<namespace><key>``) whose fields are
    scopes, so a write invalidates all scopes with a single ``DEL``.  The TTL
    applies to the whole hash.  Requires the ``redis`` package; in demo mode
    this class is never instantiated.
    """

    def __init__(self, url: str, default_ttl: int = 300, namespace: str = "config:") -> None:
        try:
            import redis
        except ImportError as exc:
            raise RuntimeError(
                "CACHE_BACKEND=redis requires the 'redis' package "
                "(pip install 'underwriting-control-tower[redis]')"
            ) from exc
        self._client = redis.Redis.from_url(url, decode_responses=True)
        self._default_ttl = default_ttl
        self._namespace = namespace
        logger.info(f"Redis config cache connected: {url.split('@')[-1]}")

    def _hash(self, key: str) -> str:
        return f"{self._namespace}{key}"

    def lookup(self, key: str, scope: Optional[str]) -> Lookup:
        raw = self._client.hget(self._hash(key), scope or GLOBAL_SCOPE)
        if raw is None:
            return False, None
        return True, json.loads(raw)

    def remember(self, key: str, scope: Optional[str], value: Any, ttl: Optional[int] = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        name = self._hash(key)
        pipe = self._client.pipeline()
        pipe.hset(name, scope or GLOBAL_SCOPE, json.dumps(value, default=str))
        if ttl > 0:
            pipe.expire(name, ttl)
        pipe.execute()

    def forget(self, key: str) -> int:
        name = self._hash(key)
        dropped = self._client.hlen(name)
        self._client.delete(name)
        return dropped

    def clear(self) -> None:
        names = list(self._client.scan_iter(match=f"{self._namespace}*"))
        if names:
            self._client.delete(*names)

    def stats(self) -> Dict[str, Any]:
        settings_cached = sum(1 for _ in self._client.scan_iter(match=f"{self._namespace}*"))
        return {"backend": "redis", "settings": settings_cached}


# =====================================
# Factory
# =====================================

def build_cache() -> ConfigCache:
    from config import settings

    if settings.cache_backend == "redis":
        return RedisConfigCache(url=settings.redis_url, default_ttl=settings.cache_default_ttl)

    return MemoryConfigCache(default_ttl=settings.cache_default_ttl)


cache: ConfigCache = build_cache()
logger.info(f"Config cache initialised: {cache.stats()['backend']}")
