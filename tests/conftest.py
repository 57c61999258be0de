"""
Shared test fixtures for the control tower.

Provides isolated SQLite databases, a config store with its own cache, a
zero-delay three-step workflow configuration, an orchestrator wired to both,
and a FastAPI test client that uses them.
"""

from __future__ import annotations

import os
from dataclasses import replace

# Force demo mode for all tests
os.environ["ENVIRONMENT"] = "demo"
os.environ["AUTO_SEED"] = "false"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["DATABASE_URL"] = "sqlite:///./test_control_tower.db"

import pytest
from fastapi.testclient import TestClient

from config import settings
from models.database import build_engine, build_session_factory, get_db, init_db
from models.messages import InboundMessage
from services.cache import MemoryConfigCache
from services.config_service import ConfigService
from services.orchestrator import WorkflowOrchestrator


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def db_engine(tmp_path):
    """Create a fresh SQLite engine per test."""
    engine = build_engine(f"sqlite:///{tmp_path}/test.db")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture()
def db_session(session_factory):
    """Provide an isolated database session that rolls back after each test."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ---------------------------------------------------------------------------
# Configuration fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def config_service(session_factory):
    return ConfigService(session_factory=session_factory, cache_backend=MemoryConfigCache(default_ttl=60))


@pytest.fixture()
def test_settings():
    """Settings with every built-in delay set to zero."""
    return replace(
        settings,
        default_processing_min_ms=0,
        default_processing_max_ms=0,
        default_inter_step_delay_ms=0,
        subscriber_wait_timeout_s=2.0,
    )


THREE_STEPS = {
    "intake": {
        "step_name": "Intake",
        "step_order": 1,
        "agent_type": "Email Processing Agent",
        "layer": "Interface",
        "inputs": ["email_content"],
        "outputs": ["categorized_email"],
    },
    "assess": {
        "step_name": "Assess",
        "step_order": 2,
        "agent_type": "Risk Analytics Agent",
        "layer": "Process",
        "inputs": ["categorized_email"],
        "outputs": ["risk_score"],
    },
    "notify": {
        "step_name": "Notify",
        "step_order": 3,
        "agent_type": "System Integration Agent",
        "layer": "Interface",
        "inputs": ["risk_score"],
        "outputs": ["notification_events"],
    },
}

THREE_TEMPLATES = {
    "intake": {"categorized_email": {"insured": "{{insured_name}}", "subject": "{{subject}}"}},
    "assess": {"risk_score": "{{tiv}}", "summary": "Assessed {{insured_name}} at step {{step_order}}"},
    "notify": {"notification_events": ["Broker notified for {{execution_id}}"]},
}

DEMO_SCENARIO = {
    "insured_name": "Apex Manufacturing Ltd",
    "tiv": 15000000,
    "default_processing_time_ms": 0,
    "inter_step_delay_ms": 0,
}


@pytest.fixture()
def three_step_config(config_service):
    """A complete zero-delay ``intake → assess → notify`` workflow under scenario ``demo-scenario``."""
    config_service.set_setting("demo.workflow.config", {"strategy": "sequential", "workflow_type": "test"})
    config_service.set_setting("demo.workflow.default_persona", "rachel")
    for key, step in THREE_STEPS.items():
        config_service.set_setting(f"demo.workflow.steps.{key}", step)
    for key, template in THREE_TEMPLATES.items():
        config_service.set_setting(f"demo.workflow.output-templates.{key}", template)
    config_service.set_setting("demo.workflow.rules.intake_rules", {
        "conditions": {"field": "insured_name", "op": "exists"},
        "actions": ["log_activity"],
    })
    config_service.set_setting("demo.scenarios.demo-scenario", DEMO_SCENARIO)
    return config_service


@pytest.fixture()
def make_message(session_factory):
    """Factory fixture to store an inbound message and return its id."""

    def _factory(subject="Submission - Apex Manufacturing", sender="broker@example.com", persona="rachel"):
        db = session_factory()
        try:
            message = InboundMessage(subject=subject, sender=sender, body="Please quote.", persona=persona)
            db.add(message)
            db.commit()
            return message.id
        finally:
            db.close()

    return _factory


@pytest.fixture()
def orchestrator(config_service, session_factory, test_settings):
    return WorkflowOrchestrator(config_service, session_factory=session_factory, app_settings=test_settings)


class EventRecorder:
    """Subscriber handler that keeps every message it receives."""

    def __init__(self):
        self.messages = []

    def __call__(self, message):
        self.messages.append(message)

    @property
    def types(self):
        return [m["type"] for m in self.messages]

    def of_type(self, event_type):
        return [m for m in self.messages if m["type"] == event_type]


@pytest.fixture()
def recorder():
    return EventRecorder()


# ---------------------------------------------------------------------------
# FastAPI test client
# ---------------------------------------------------------------------------

@pytest.fixture()
def client(session_factory, config_service, orchestrator):
    """FastAPI TestClient wired to a throwaway database and config store."""
    from main import app

    previous = (app.state.session_factory, app.state.config_service, app.state.orchestrator)
    app.state.session_factory = session_factory
    app.state.config_service = config_service
    app.state.orchestrator = orchestrator

    def _override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.session_factory, app.state.config_service, app.state.orchestrator = previous
