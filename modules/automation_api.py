"""
Automation API - FastAPI routes for rules, variables, history and devices.

Collections are read and replaced whole; the scheduler picks up changes on
its next fast tick.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from error_handler import GatewayError

from .automation_models import HistoryItem
from .storage import StoreError

logger = logging.getLogger(__name__)


# ============================================================================
# MODELS
# ============================================================================

class DeviceControlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    command: str
    parameter: Optional[str] = "default"
    command_type: Optional[str] = Field("command", alias="commandType")
    device_name: Optional[str] = Field(None, alias="deviceName")
    source: Optional[str] = None


# ============================================================================
# HELPERS
# ============================================================================

def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


def _check_ids(items: List[Any], kind: str) -> Optional[str]:
    for i, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("id"):
            return f"{kind} #{i} has no id"
    return None


# ============================================================================
# REGISTRATION
# ============================================================================

def register_automation_routes(app: FastAPI,
                               scheduler_getter: Union[Any, Callable[[], Any]]):
    def get_scheduler():
        s = scheduler_getter() if callable(scheduler_getter) else scheduler_getter
        if not s:
            raise HTTPException(503, "Automation service not initialised")
        return s

    # --- automations ---

    @app.get("/api/automations", tags=["automations"])
    async def list_automations():
        s = get_scheduler()
        try:
            return await s.rule_store.read_all()
        except StoreError as e:
            logger.error(f"Failed to read automations: {e}")
            return _error(500, "Failed to read automations")

    @app.post("/api/automations", tags=["automations"])
    async def save_automations(rules: List[Dict[str, Any]] = Body(...)):
        s = get_scheduler()
        problem = _check_ids(rules, "Automation")
        if problem:
            return _error(400, problem)
        try:
            await s.rule_store.replace_all(rules)
        except StoreError as e:
            logger.error(f"Failed to save automations: {e}")
            return _error(500, "Failed to save automations")
        return {"success": True}

    @app.get("/api/automations/stats", tags=["automations"])
    async def get_stats():
        return get_scheduler().get_stats()

    @app.get("/api/automations/trace", tags=["automations"])
    async def get_trace(rule_id: Optional[str] = None):
        return get_scheduler().get_trace_log(rule_id=rule_id)

    # --- variables ---

    @app.get("/api/variables", tags=["variables"])
    async def list_variables():
        s = get_scheduler()
        try:
            variables = await s.variable_store.read_all()
        except StoreError as e:
            logger.error(f"Failed to read variables: {e}")
            return _error(500, "Failed to read variables")
        return {"variables": variables, "quota": s.gateway.quota_remaining()}

    @app.post("/api/variables", tags=["variables"])
    async def save_variables(variables: List[Dict[str, Any]] = Body(...),
                             source: Optional[str] = None):
        s = get_scheduler()
        problem = _check_ids(variables, "Variable")
        if problem:
            return _error(400, problem)
        try:
            await s.variable_store.replace_all(variables, source=source)
        except StoreError as e:
            logger.error(f"Failed to save variables: {e}")
            return _error(500, "Failed to save variables")
        return {"success": True}

    # --- history ---

    @app.get("/api/history", tags=["history"])
    async def list_history():
        return await get_scheduler().history.read_all()

    @app.post("/api/history", tags=["history"])
    async def add_history(item: Dict[str, Any] = Body(...)):
        s = get_scheduler()
        if not item.get("type") or not item.get("message"):
            return _error(400, "Missing required fields")
        try:
            entry = HistoryItem.model_validate(item)
        except ValidationError as e:
            return _error(400, f"Invalid history entry: {e.error_count()} error(s)")
        try:
            return await s.history.append(entry)
        except StoreError as e:
            logger.error(f"Failed to save history: {e}")
            return _error(500, "Failed to save history")

    # --- devices / scenes ---

    @app.get("/api/devices", tags=["devices"])
    async def list_devices():
        s = get_scheduler()
        try:
            body = await s.gateway.get_devices()
        except GatewayError as e:
            logger.error(f"Error fetching devices: {e}")
            return _error(500, str(e))
        return {"statusCode": 100, "body": body}

    @app.get("/api/devices/{device_id}/status", tags=["devices"])
    async def device_status(device_id: str):
        s = get_scheduler()
        try:
            body = await s.gateway.get_status(device_id)
        except GatewayError as e:
            logger.error(f"Error fetching device status for {device_id}: {e}")
            return _error(500, str(e))
        return {"statusCode": 100, "body": body, "rateLimitRemaining": s.gateway.quota_remaining()}

    @app.post("/api/devices/{device_id}/control", tags=["devices"])
    async def control_device(device_id: str, request: DeviceControlRequest):
        s = get_scheduler()
        if request.source == "UI":
            logger.info(f"📝 [User Action] Device Control: {request.device_name or device_id} -> {request.command}")
        try:
            success = await s.gateway.send_command(
                device_id, request.command,
                request.parameter or "default", request.command_type or "command")
        except GatewayError as e:
            logger.error(f"❌ Error controlling {device_id}: {e}")
            return _error(500, str(e))

        try:
            await s.history.record_command(
                device_id, request.device_name, request.command,
                request.parameter, request.source)
        except StoreError as e:
            logger.error(f"❌ History write error for {device_id}: {e}")
        return {"success": bool(success), "rateLimitRemaining": s.gateway.quota_remaining()}

    @app.post("/api/scenes/{scene_id}/execute", tags=["scenes"])
    async def execute_scene(scene_id: str):
        s = get_scheduler()
        try:
            return await s.gateway.execute_scene(scene_id)
        except GatewayError as e:
            logger.error(f"Error executing scene {scene_id}: {e}")
            return _error(500, str(e))
