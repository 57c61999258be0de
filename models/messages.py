"""
SQLAlchemy ORM model for inbound broker messages.

An inbound message is the entity a workflow run is triggered for.  Demo
messages carry the scenario key they were seeded from.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Text, DateTime

from models.database import Base


class InboundMessage(Base):
    __tablename__ = "inbound_messages"

    id = Column(Integer, primary_key=True, index=True)
    subject = Column(String(300), nullable=False)
    sender = Column(String(200), nullable=False)
    body = Column(Text, nullable=False, default="")
    persona = Column(String(50), nullable=True)
    demo_scenario = Column(String(120), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    def to_context(self):
        """Flat snapshot used as step input and template context."""
        return {
            "message_id": self.id,
            "subject": self.subject,
            "sender": self.sender,
            "body": self.body,
            "persona": self.persona,
        }

    def __repr__(self):
        return f"<InboundMessage(id={self.id}, subject='{self.subject[:30]}')>"
