"""
FastAPI application exposing the underwriting workflow control tower API.

HTTP endpoints start, inspect and cancel workflow executions and manage the
configuration they run from; a WebSocket endpoint streams execution events.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Path, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import settings
from models.database import SessionLocal, check_database_health, get_db, init_db
from models.schemas import (
    ConfigSettingIn,
    ConfigSettingRead,
    ExecutionContextRead,
    ExecutionRead,
    ExecutionStatus,
    InboundMessageCreate,
    InboundMessageRead,
    StartWorkflowRequest,
    StartWorkflowResponse,
)
from services import records
from services.cache import cache
from services.config_service import ConfigService
from services.errors import ConfigurationMissing, TriggerNotFound, UnknownScenario
from services.orchestrator import WorkflowOrchestrator
from services.seed import seed_demo_configuration

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

# Auto-create tables in demo and development modes
if settings.auto_create_tables:
    try:
        init_db()
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")

app = FastAPI(title="Underwriting Workflow Control Tower")

app.state.session_factory = SessionLocal
app.state.config_service = ConfigService()
app.state.orchestrator = WorkflowOrchestrator(app.state.config_service, session_factory=SessionLocal)

# Environment-based CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    return request.app.state.orchestrator


def get_config_service(request: Request) -> ConfigService:
    return request.app.state.config_service


# =============================
# Error mapping
# =============================

@app.exception_handler(ConfigurationMissing)
async def _configuration_missing(request: Request, exc: ConfigurationMissing) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "missing_keys": exc.missing_keys},
    )


@app.exception_handler(UnknownScenario)
async def _unknown_scenario(request: Request, exc: UnknownScenario) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(TriggerNotFound)
async def _trigger_not_found(request: Request, exc: TriggerNotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


# =============================
# Health / settings
# =============================

@app.get("/health")
def health(request: Request) -> dict:
    return {
        "status": "ok",
        "mode": settings.mode.value,
        "database": "ok" if check_database_health() else "unavailable",
        "cache": cache.stats(),
        "active_executions": len(request.app.state.orchestrator.store),
    }


@app.get("/api/settings")
def api_settings() -> dict:
    """Expose non-sensitive runtime settings so the UI can adapt."""
    return {
        "mode": settings.mode.value,
        "cache_backend": settings.cache_backend,
        "auto_seed": settings.auto_seed,
        "default_processing_ms": [settings.default_processing_min_ms, settings.default_processing_max_ms],
        "default_inter_step_delay_ms": settings.default_inter_step_delay_ms,
        "stop_actions": settings.stop_actions,
    }


# =============================
# Config API
# =============================

@app.get("/api/config")
def api_list_config(
    prefix: str = Query("demo.", min_length=1),
    persona: Optional[str] = Query(None, max_length=50),
    config: ConfigService = Depends(get_config_service),
) -> Dict[str, Any]:
    return config.list_settings(prefix, persona=persona)


@app.get("/api/config/{key}", response_model=ConfigSettingRead)
def api_get_config(
    key: str = Path(..., min_length=1, max_length=255),
    persona: Optional[str] = Query(None, max_length=50),
    config: ConfigService = Depends(get_config_service),
):
    row = config.get_record(key, persona=persona)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Setting not found: {key}")
    return ConfigSettingRead(key=row["key"], persona=row["persona"], value=row["value"], version=row["version"])


@app.put("/api/config/{key}", response_model=ConfigSettingRead)
def api_put_config(
    key: str = Path(..., min_length=1, max_length=255),
    setting_in: ConfigSettingIn = Body(...),
    config: ConfigService = Depends(get_config_service),
):
    try:
        version = config.set_setting(key, setting_in.value, persona=setting_in.persona, updated_by=setting_in.updated_by)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ConfigSettingRead(key=key, persona=setting_in.persona, value=setting_in.value, version=version)


# =============================
# Inbound messages (workflow triggers)
# =============================

@app.post("/api/messages", response_model=InboundMessageRead, status_code=status.HTTP_201_CREATED)
def api_create_message(message_in: InboundMessageCreate, db: Session = Depends(get_db)):
    return records.create_message(db, message_in)


@app.get("/api/messages", response_model=List[InboundMessageRead])
def api_list_messages(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    return records.list_messages(db, limit=limit)


@app.get("/api/messages/{message_id}", response_model=InboundMessageRead)
def api_get_message(message_id: int = Path(..., gt=0), db: Session = Depends(get_db)):
    message = records.get_message(db, message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return message


# =============================
# Workflow execution API
# =============================

@app.post(
    "/api/workflows/start",
    response_model=StartWorkflowResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def api_start_workflow(
    request_in: StartWorkflowRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    execution_id = await orchestrator.start_workflow(
        trigger_id=request_in.trigger_id,
        user_id=request_in.user_id,
        scenario_key=request_in.scenario_key,
        wait_for_subscriber=request_in.wait_for_subscriber,
    )
    return StartWorkflowResponse(execution_id=execution_id, status=ExecutionStatus.RUNNING)


@app.get("/api/workflows/active", response_model=List[ExecutionContextRead])
async def api_active_workflows(orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.active_workflows()


@app.get("/api/workflows/{execution_id}/status", response_model=ExecutionContextRead)
async def api_workflow_status(
    execution_id: str = Path(..., min_length=1, max_length=64),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    snapshot = orchestrator.get_workflow_status(execution_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Execution is not running")
    return snapshot


@app.post("/api/workflows/{execution_id}/cancel")
async def api_cancel_workflow(
    execution_id: str = Path(..., min_length=1, max_length=64),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    if not orchestrator.cancel_workflow(execution_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Execution is not running")
    return {"execution_id": execution_id, "cancel_requested": True}


@app.get("/api/executions", response_model=List[ExecutionRead])
def api_list_executions(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    return records.list_executions(db, limit=limit)


@app.get("/api/executions/{execution_id}", response_model=ExecutionRead)
def api_get_execution(execution_id: str = Path(..., min_length=1, max_length=64), db: Session = Depends(get_db)):
    record = records.get_execution(db, execution_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Execution not found")
    return record


@app.get("/api/activities")
def api_list_activities(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)) -> List[dict]:
    return [a.to_dict() for a in records.list_activities(db, limit=limit)]


# =============================
# Demo
# =============================

@app.post("/api/demo/seed")
def api_seed_demo(
    request: Request,
    overwrite: bool = Query(False),
    config: ConfigService = Depends(get_config_service),
) -> dict:
    return seed_demo_configuration(config, request.app.state.session_factory, overwrite=overwrite)


# =============================
# Execution event stream
# =============================

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.websocket("/api/agent-executions/ws")
async def agent_executions_ws(websocket: WebSocket) -> None:
    """
    Client protocol:
        -> {"type": "subscribe-execution", "executionId": "..."}
        -> {"type": "unsubscribe-execution", "executionId": "..."}
    Server sends ``connection-established`` on accept, ``subscription-confirmed``
    per subscription, then the execution events themselves.
    """
    orchestrator: WorkflowOrchestrator = websocket.app.state.orchestrator
    await websocket.accept()

    client_id = f"client-{uuid.uuid4().hex[:12]}"
    subscriptions: List[str] = []

    async def forward(message: Dict[str, Any]) -> None:
        await websocket.send_json(message)

    await websocket.send_json({"type": "connection-established", "clientId": client_id, "timestamp": _now()})
    logger.info(f"WebSocket {client_id} connected")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON", "timestamp": _now()})
                continue
            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "message": "Expected a JSON object", "timestamp": _now()})
                continue

            kind = data.get("type")
            execution_id = data.get("executionId")

            if kind == "subscribe-execution" and execution_id:
                execution_id = str(execution_id)
                if execution_id in subscriptions:
                    continue
                subscriptions.append(execution_id)
                await websocket.send_json({
                    "type": "subscription-confirmed",
                    "executionId": execution_id,
                    "live": execution_id in orchestrator.store,
                    "timestamp": _now(),
                })
                orchestrator.attach(execution_id, forward)
            elif kind == "unsubscribe-execution" and execution_id:
                execution_id = str(execution_id)
                if execution_id in subscriptions:
                    subscriptions.remove(execution_id)
                    orchestrator.detach(execution_id, forward)
            else:
                await websocket.send_json({
                    "type": "error",
                    "message": f"Unsupported message type: {kind}",
                    "timestamp": _now(),
                })
    except WebSocketDisconnect:
        logger.info(f"WebSocket {client_id} disconnected")
    finally:
        for execution_id in subscriptions:
            orchestrator.detach(execution_id, forward)


# =============================
# Startup / shutdown
# =============================

@app.on_event("startup")
async def _on_startup() -> None:
    logger.info(f"Control tower starting in {settings.mode.value} mode")
    if settings.is_demo and settings.auto_seed:
        try:
            result = seed_demo_configuration(app.state.config_service, app.state.session_factory)
            logger.info(f"Auto-seeded demo configuration on startup: {result['config_keys_written']} keys")
        except Exception as e:
            logger.error(f"Demo auto-seed failed: {e}", exc_info=True)


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    await app.state.orchestrator.shutdown()
