from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from gaply.config_manager import ConfigManager, config_path_from_env
from gaply.errors import ValidationError
from gaply.events import EventBus
from gaply.models import Task, parse_iso_date
from gaply.scheduler import SyncScheduler
from gaply.state_store import StateStore, state_path_from_env
from gaply.sync_engine import SyncEngine

SECRET_PLACEHOLDERS = {"", "***"}


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class PreferencesUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class TaskUpsertRequest(BaseModel):
    id: str = Field(min_length=1, max_length=200)
    title: str = ""
    due_date: str | None = None
    due_time: str | None = None
    duration: int | str | None = None
    status: str = "pending"
    deleted: bool = False
    updated_at: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.bus = EventBus()
        self.sync_engine = SyncEngine(self.config_manager, self.state_store, self.bus)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop masked or blank secrets so they never overwrite stored ones."""
    sanitized = dict(payload)
    for section, key in (("caldav", "password"), ("remote", "api_token")):
        block = sanitized.get(section)
        if not isinstance(block, dict) or key not in block:
            continue
        block = dict(block)
        if str(block.get(key) or "").strip() in SECRET_PLACEHOLDERS:
            if str(current.get(section, {}).get(key, "")):
                block.pop(key)
            else:
                block[key] = ""
        if block:
            sanitized[section] = block
        else:
            sanitized.pop(section)
    return sanitized


def _parse_path_date(value: str) -> date:
    try:
        parsed = parse_iso_date(value)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if parsed is None:
        raise HTTPException(status_code=400, detail="date is required")
    return parsed


def create_app() -> FastAPI:
    context = AppContext(config_path=config_path_from_env(), state_path=state_path_from_env())

    app = FastAPI(title="Gaply", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()
        app.state.context.sync_engine.shutdown()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        app.state.context.config_manager.update(_sanitize_config_payload(request.payload, current))
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.get("/api/preferences")
    def get_preferences() -> dict[str, Any]:
        return {"preferences": app.state.context.sync_engine.preferences().to_dict()}

    @app.put("/api/preferences")
    def put_preferences(request: PreferencesUpdateRequest) -> dict[str, Any]:
        result = app.state.context.sync_engine.update_preferences(request.payload)
        scheduled = app.state.context.scheduler.notify_preference_change(result)
        return {
            "preferences": app.state.context.sync_engine.preferences().to_dict(),
            "change": result.to_dict(),
            "recompute_scheduled": scheduled,
        }

    @app.get("/api/gaps/{day}")
    def get_gaps(day: str) -> dict[str, Any]:
        target = _parse_path_date(day)
        engine = app.state.context.sync_engine
        session = engine.session()
        gaps = engine.gaps_for(target)
        return {
            "date": target.isoformat(),
            "in_window": session.window.contains(target),
            "gaps": [gap.to_dict() for gap in gaps],
        }

    @app.post("/api/gaps/{day}/recompute")
    def recompute_gaps(day: str) -> dict[str, Any]:
        target = _parse_path_date(day)
        outcome = app.state.context.sync_engine.recompute_date(target)
        return {
            "date": target.isoformat(),
            "gaps": [gap.to_dict() for gap in outcome.gaps],
            "calendar_available": outcome.calendar_available,
        }

    @app.get("/api/tasks")
    def list_tasks() -> dict[str, Any]:
        return {"tasks": [task.to_dict() for task in app.state.context.state_store.list_tasks()]}

    @app.put("/api/tasks")
    def put_task(request: TaskUpsertRequest) -> dict[str, Any]:
        try:
            task = Task.from_dict(request.model_dump())
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        outcome = app.state.context.sync_engine.upsert_task(task)
        return {
            "task": task.to_dict(),
            "gaps": [gap.to_dict() for gap in outcome.gaps] if outcome else None,
        }

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    @app.get("/api/storage/health")
    def storage_health() -> dict[str, Any]:
        return app.state.context.sync_engine.storage_health()

    return app
