"""
FastAPI Application — webhook and admin surface for the bot platform.

Provides:
- Normalized event endpoint (any channel, used by tests and custom frontends)
- LINE webhook endpoint per tenant
- Admin session listing / deletion per tenant
- Health with per-tenant channel diagnostics
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from bots.factory import build_registry, close_runtime
from config.settings import Settings, get_settings
from core.errors import UnknownTenantError
from core.orchestrator import SessionOrchestrator
from database import SessionSweeper, create_store, reset_store
from models.schemas import ChannelType, DialogEvent, InboundEnvelope, TurnResult
from utils.logging import configure_logging

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class EventRequest(BaseModel):
    user_id: str
    event: DialogEvent
    display_name_hint: Optional[str] = None
    channel: Optional[ChannelType] = None


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        configure_logging(cfg.logging.level, json_logs=cfg.logging.json)

        store = create_store(cfg.store, debug=cfg.debug)
        if hasattr(store, "init"):
            await store.init()
        registry = build_registry(cfg)
        orchestrator = SessionOrchestrator(registry, store)

        sweeper = None
        if SessionSweeper.supports(store):
            sweeper = SessionSweeper(store, interval_s=cfg.store.sweep_interval_s)
            await sweeper.start()

        app.state.settings = cfg
        app.state.store = store
        app.state.registry = registry
        app.state.orchestrator = orchestrator

        logger.info("botflow_started",
                    app=cfg.app_name,
                    store_backend=type(store).__name__,
                    tenants=registry.ids())
        yield

        if sweeper is not None:
            await sweeper.stop()
        for runtime in registry.runtimes():
            await close_runtime(runtime)
        await store.close()
        reset_store()
        logger.info("botflow_stopped")

    app = FastAPI(
        title="BotFlow API",
        description="Multi-tenant dialog bots with session state and live-agent handoff",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(UnknownTenantError)
    async def unknown_tenant(request: Request, exc: UnknownTenantError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        registry = request.app.state.registry
        channels = {}
        for runtime in registry.runtimes():
            if runtime.adapter is not None:
                channels[runtime.tenant_id] = await runtime.adapter.health_check()
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tenants": registry.ids(),
            "channels": channels,
            "store": await request.app.state.store.stats(),
        }

    @app.get("/api/v1/tenants")
    async def list_tenants(request: Request):
        return [r.describe() for r in request.app.state.registry.runtimes()]

    # ══════════════════════════════════════════════════════════
    #  INBOUND EVENTS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/tenants/{tenant_id}/events", response_model=TurnResult)
    async def receive_event(tenant_id: str, req: EventRequest, request: Request):
        runtime = request.app.state.registry.get(tenant_id)
        envelope = InboundEnvelope(
            tenant_id=tenant_id,
            user_id=req.user_id,
            channel=req.channel or runtime.channel,
            event=req.event,
            display_name_hint=req.display_name_hint,
        )
        return await request.app.state.orchestrator.handle_event(envelope)

    @app.post("/webhook/line/{tenant_id}")
    async def line_webhook(tenant_id: str, request: Request):
        runtime = request.app.state.registry.get(tenant_id)
        if runtime.channel != ChannelType.LINE or runtime.adapter is None:
            raise HTTPException(400, f"Tenant '{tenant_id}' is not a LINE bot")

        body: dict[str, Any] = await request.json()
        envelopes = runtime.adapter.normalize(body)
        orchestrator: SessionOrchestrator = request.app.state.orchestrator
        for envelope in envelopes:
            try:
                await orchestrator.handle_event(envelope)
            except Exception as e:
                # LINE redelivers the whole batch on a non-2xx reply
                logger.exception("line_event_failed", tenant_id=tenant_id,
                                 user_id=envelope.user_id, error=str(e))
        return {"status": "ok", "processed": len(envelopes)}

    # ══════════════════════════════════════════════════════════
    #  ADMIN: sessions
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/tenants/{tenant_id}/sessions")
    async def list_sessions(tenant_id: str, request: Request):
        sessions = await request.app.state.orchestrator.list_sessions(tenant_id)
        return [s.to_record() for s in sessions]

    @app.delete("/api/v1/tenants/{tenant_id}/sessions/{user_id}")
    async def delete_session(tenant_id: str, user_id: str, request: Request):
        deleted = await request.app.state.orchestrator.end_session(tenant_id, user_id)
        return {"tenant_id": tenant_id, "user_id": user_id, "deleted": deleted}

    @app.delete("/api/v1/tenants/{tenant_id}/sessions")
    async def clear_sessions(tenant_id: str, request: Request):
        cleared = await request.app.state.orchestrator.clear_tenant(tenant_id)
        return {"status": "cleared", "tenant_id": tenant_id, "count": cleared}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
