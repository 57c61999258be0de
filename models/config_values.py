"""
SQLAlchemy ORM model for configuration values.

Every piece of workflow configuration (step definitions, scenarios, output
templates, business rules, timing overrides) is stored as a JSON value under
a dotted key, optionally scoped to a persona.  Writes are versioned: the
previous active row for the same (key, persona) scope is deactivated.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Index, UniqueConstraint
from sqlalchemy.orm import validates

from models.database import Base


class ConfigValue(Base):
    """
    Versioned configuration entry.

    Example rows::

        key="demo.workflow.config", persona=None,
            value={"strategy": "sequential", "workflow_type": "8-step-underwriting"}
        key="demo.scenarios.marsh_retail_complex", persona="rachel",
            value={"insured_name": "Downtown Plaza Retail Complex", ...}
    """

    __tablename__ = "config_values"

    id = Column(Integer, primary_key=True, index=True)

    config_key = Column(String(255), nullable=False, index=True)
    persona = Column(String(50), nullable=True, index=True)

    value = Column(JSON, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    updated_by = Column(String(100), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("config_key", "persona", "version", name="uq_config_values_key_scope_version"),
        Index("idx_config_values_current_scope", "config_key", "persona", "is_active"),
    )

    @validates("config_key")
    def validate_config_key(self, key, value):
        if not value or not value.strip():
            raise ValueError("Config key cannot be empty")
        if len(value) > 255:
            raise ValueError("Config key must be 255 characters or less")
        if value != value.strip() or " " in value:
            raise ValueError("Config key cannot contain whitespace")
        return value

    def __repr__(self):
        return f"<ConfigValue(key='{self.config_key}', persona={self.persona!r}, v{self.version})>"

    def to_dict(self):
        return {
            "key": self.config_key,
            "persona": self.persona,
            "value": self.value,
            "version": self.version,
            "is_active": self.is_active,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
