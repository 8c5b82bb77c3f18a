from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calmirror.config_manager import MASK, ConfigManager
from calmirror.state_store import StateStore
from calmirror.sync_engine import BUSY_MESSAGE, SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CredentialsRequest(BaseModel):
    token: str | None = None
    refresh_token: str | None = None
    token_uri: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scopes: list[str] = Field(default_factory=list)
    expiry: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_secret = str(current.get("google", {}).get("client_secret", ""))

    google = sanitized.get("google")
    if isinstance(google, dict):
        google = dict(google)
        secret = google.get("client_secret")
        if secret is not None:
            secret_text = str(secret).strip()
            if secret_text in {"", MASK}:
                if current_secret:
                    google.pop("client_secret", None)
                else:
                    google["client_secret"] = ""
        if google:
            sanitized["google"] = google
        else:
            sanitized.pop("google", None)

    return sanitized


def create_app(config_path: str | None = None, state_path: str | None = None) -> FastAPI:
    config_path = config_path or os.getenv("CALMIRROR_CONFIG_PATH", "config.yaml")
    state_path = state_path or os.getenv("CALMIRROR_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Calmirror", version="0.1.0")
    app.state.context = context

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.sync_engine.cancel()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.put("/api/credentials")
    def put_credentials(request: CredentialsRequest) -> dict[str, Any]:
        if not (request.token or request.refresh_token):
            raise HTTPException(status_code=400, detail="token or refresh_token is required")
        app.state.context.sync_engine.credential_store.save_token_set(request.model_dump())
        return {"message": "credentials stored"}

    @app.post("/api/sync")
    def trigger_sync() -> dict[str, Any]:
        engine = app.state.context.sync_engine
        if engine.is_running():
            raise HTTPException(status_code=409, detail="a sync run is already in progress")
        result = engine.run_once(trigger="manual")
        if result.status == "skipped" and result.message == BUSY_MESSAGE:
            raise HTTPException(status_code=409, detail="a sync run is already in progress")
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        store = app.state.context.state_store
        return {
            "running": app.state.context.sync_engine.is_running(),
            "runs": store.recent_sync_runs(limit=limit),
            "mappings": store.count_mappings(),
            "has_credentials": app.state.context.sync_engine.credential_store.has_credentials(),
        }

    return app
