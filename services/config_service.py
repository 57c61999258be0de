"""
Configuration service.

Key / scope → JSON value store backing every piece of workflow
configuration.  Lookups resolve with scope precedence (persona-scoped value
first, then the global value) and are cached; writes are versioned and
invalidate the cache for the written key.

Usage::

    config = ConfigService()
    config.set_setting("demo.workflow.default_persona", "rachel")
    config.get_setting("demo.scenarios.marsh_retail_complex", persona="rachel")
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import or_

from models.config_values import ConfigValue
from models.database import SessionFactory, SessionLocal, session_scope
from services.cache import ConfigCache, cache as default_cache

logger = logging.getLogger(__name__)


class ConfigService:
    """Persona-scoped, versioned settings store with a lookup cache."""

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        cache_backend: Optional[ConfigCache] = None,
        ttl: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache_backend if cache_backend is not None else default_cache
        self._ttl = ttl

    # ---------------------------------
    # Reads
    # ---------------------------------

    def get_setting(self, key: str, persona: Optional[str] = None) -> Any:
        """Return the active value for ``key`` or ``None`` if it is not configured."""
        found, cached = self._cache.lookup(key, persona)
        if found:
            return cached

        value = None
        with session_scope(self._session_factory) as db:
            for scope in self._scopes(persona):
                row = self._active_row(db, key, scope)
                if row is not None:
                    value = row.value
                    break

        self._cache.remember(key, persona, value, ttl=self._ttl)
        return value

    def get_record(self, key: str, persona: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Resolved row (key, persona, value, version) without going through the cache."""
        with session_scope(self._session_factory) as db:
            for scope in self._scopes(persona):
                row = self._active_row(db, key, scope)
                if row is not None:
                    return row.to_dict()
        return None

    def list_settings(self, prefix: str, persona: Optional[str] = None) -> Dict[str, Any]:
        """All active values whose key starts with ``prefix``; persona rows override global ones."""
        with session_scope(self._session_factory) as db:
            query = db.query(ConfigValue).filter(
                ConfigValue.config_key.startswith(prefix, autoescape=True),
                ConfigValue.is_active.is_(True),
            )
            if persona:
                query = query.filter(or_(ConfigValue.persona == persona, ConfigValue.persona.is_(None)))
            else:
                query = query.filter(ConfigValue.persona.is_(None))
            rows: List[ConfigValue] = query.all()

        resolved: Dict[str, Any] = {}
        # Global rows first so persona rows overwrite them.
        for row in sorted(rows, key=lambda r: r.persona is not None):
            resolved[row.config_key] = row.value
        return dict(sorted(resolved.items()))

    # ---------------------------------
    # Writes
    # ---------------------------------

    def set_setting(
        self,
        key: str,
        value: Any,
        persona: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> int:
        """Store a new version of ``key`` for the given scope and return its version number."""
        with session_scope(self._session_factory) as db:
            current = self._active_row(db, key, persona)
            version = 1
            if current is not None:
                current.is_active = False
                version = current.version + 1
                db.flush()
            db.add(ConfigValue(
                config_key=key,
                persona=persona,
                value=value,
                version=version,
                is_active=True,
                updated_by=updated_by,
            ))

        self._cache.forget(key)
        logger.debug(f"Config set: {key} (persona={persona}, v{version})")
        return version

    def delete_setting(self, key: str, persona: Optional[str] = None) -> bool:
        """Deactivate the active value for ``key`` in exactly this scope."""
        with session_scope(self._session_factory) as db:
            current = self._active_row(db, key, persona)
            if current is None:
                return False
            current.is_active = False

        self._cache.forget(key)
        return True

    # ---------------------------------
    # Helpers
    # ---------------------------------

    @staticmethod
    def _scopes(persona: Optional[str]) -> List[Optional[str]]:
        return [persona, None] if persona else [None]

    @staticmethod
    def _active_row(db, key: str, persona: Optional[str]) -> Optional[ConfigValue]:
        query = db.query(ConfigValue).filter(
            ConfigValue.config_key == key,
            ConfigValue.is_active.is_(True),
        )
        if persona:
            query = query.filter(ConfigValue.persona == persona)
        else:
            query = query.filter(ConfigValue.persona.is_(None))
        return query.order_by(ConfigValue.version.desc()).first()
