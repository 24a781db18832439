from __future__ import annotations
from typing import Any
from fastapi import FastAPI, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from groupcast.channels.base import GatewayClient
from groupcast.config import Settings
from groupcast.persistence.db import make_engine, make_session_factory
from groupcast.persistence.migrations import init_db
from groupcast.core.broadcaster import Broadcaster
from groupcast.server.router import ActionRouter
from groupcast.security.auth import verify_client_key, verify_webhook_token
from groupcast.observability.logging import configure_logging, get_logger

log = get_logger("app")

def create_app(settings: Settings, client: GatewayClient | None = None) -> FastAPI:
    configure_logging(settings.log_level, settings.json_logs, settings.instance_id)
    app = FastAPI(title="groupcast", version="0.1.0")

    engine = make_engine(settings)
    session_factory = make_session_factory(engine)
    broadcaster = Broadcaster(settings, engine, session_factory, client=client)
    app.state.broadcaster = broadcaster

    @app.on_event("startup")
    async def _startup():
        await init_db(engine)
        await broadcaster.start()
        log.info("groupcast_started", host=settings.host, port=settings.port)

    @app.on_event("shutdown")
    async def _shutdown():
        await broadcaster.stop()
        await engine.dispose()

    async def _auth(x_api_key: str | None = Header(default=None)):
        if not verify_client_key(settings, x_api_key):
            raise HTTPException(status_code=401, detail="unauthorized")
        return True

    # health/metrics
    @app.get(settings.health_path)
    async def healthz():
        return {"ok": True, "service": "groupcast", "version": "0.1.0"}

    @app.get(settings.metrics_path)
    async def metrics_endpoint():
        return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    router = ActionRouter(handler_map=broadcaster.handler_map())

    @app.post(settings.actions_path)
    async def actions(request: Request, _=Depends(_auth)):
        try:
            body: Any = await request.json()
        except ValueError:
            body = None
        return await router.handle(body)

    # gateway push; 2xx for anything well-formed so the gateway does not redeliver
    @app.post(settings.webhook_path)
    async def webhook(request: Request, token: str | None = Query(default=None)):
        if not verify_webhook_token(settings, token):
            raise HTTPException(status_code=401, detail="unauthorized")
        try:
            body: Any = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid json")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="expected a JSON object")
        applied = await broadcaster.webhooks.receive(body)
        return {"received": True, "applied": applied}

    return app
