"""
FastAPI Application — per-instance webhooks, OAuth endpoints, client bootstrap.

Provides, for every configured bot ({botId} substituted):
- GET  /instances/{botId}      instance descriptor + webchat token for clients
- POST /api/messages/{botId}   conversational webhook (one Activity per request,
                               authenticated by the instance adapter)
- GET  /{botId}/auth           redirect to the OAuth authorize endpoint
- GET  /{botId}/token          OAuth callback (code + state)
- GET  /health                 online / offline instances
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from botbuilder.schema import Activity
from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from msrest.exceptions import DeserializationError

from auth.oauth import OAuthBroker
from backend.connector import create_token_connectors
from capabilities.base import load_factories
from config.settings import Settings, get_settings
from core.errors import (
    CSRFStateMismatch, InstanceNotFound, OAuthProviderError,
    TurnProcessingError, UpstreamServiceError,
)
from core.instances import InstanceRegistry
from core.orchestrator import Orchestrator
from core.runtime import RuntimeBuilder
from database.store_factory import create_storage
from database.token_store import TokenStore

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def build_orchestrator(settings: Settings) -> Orchestrator:
    storage = create_storage({
        "store_backend": settings.database.store_backend,
        "store_file_dir": settings.database.store_file_dir,
        "url": settings.database.url,
        "debug": settings.debug,
    })
    tokens = TokenStore(storage)
    registry = InstanceRegistry.from_config(settings.instances, settings.default_bot_id)
    directline, speech = create_token_connectors(settings.services)
    oauth = OAuthBroker(
        tokens,
        resource=settings.services.oauth_resource,
        timeout=settings.services.http_timeout_s,
    )
    builder = RuntimeBuilder(
        storage,
        system_factories=load_factories(settings.packages.system),
        app_factories=load_factories(settings.packages.apps),
        tokens=tokens,
        oauth=oauth,
    )
    return Orchestrator(
        registry, builder, oauth, directline, speech,
        default_locale=settings.default_locale,
        storage=storage,
    )


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


router = APIRouter()


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    orchestrator = _orchestrator(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "online": orchestrator.online,
        "offline": sorted(orchestrator.failed),
    }


# ══════════════════════════════════════════════════════════════
#  CLIENT BOOTSTRAP
# ══════════════════════════════════════════════════════════════

@router.get("/instances/{bot_id}")
async def get_instance(request: Request, bot_id: str):
    try:
        descriptor = await _orchestrator(request).instance_descriptor(bot_id)
    except InstanceNotFound as e:
        raise HTTPException(404, str(e))
    except UpstreamServiceError as e:
        raise HTTPException(502, str(e))
    return descriptor.model_dump(by_alias=True)


# ══════════════════════════════════════════════════════════════
#  CONVERSATIONAL WEBHOOK
# ══════════════════════════════════════════════════════════════

@router.post("/api/messages/{bot_id}")
async def receive_activity(request: Request, bot_id: str):
    try:
        body = await request.json()
    except ValueError as e:
        logger.warning("activity_invalid", bot_id=bot_id, error=str(e))
        raise HTTPException(400, "Invalid activity")
    if not isinstance(body, dict) or not isinstance(body.get("type"), str):
        logger.warning("activity_invalid", bot_id=bot_id, error="missing activity type")
        raise HTTPException(400, "Invalid activity")
    try:
        activity = Activity.deserialize(body)
    except DeserializationError as e:
        logger.warning("activity_invalid", bot_id=bot_id, error=str(e))
        raise HTTPException(400, "Invalid activity")

    auth_header = request.headers.get("Authorization", "")
    try:
        response = await _orchestrator(request).process_activity(bot_id, activity, auth_header)
    except InstanceNotFound as e:
        raise HTTPException(404, str(e))
    except PermissionError as e:
        logger.warning("activity_unauthorized", bot_id=bot_id, error=str(e))
        raise HTTPException(401, "Unauthorized")
    except TurnProcessingError as e:
        logger.error("turn_processing_error", bot_id=bot_id, error=str(e))
        raise HTTPException(500, "Turn could not be processed")
    if response is not None:
        return JSONResponse(response.body, status_code=response.status)
    return Response(status_code=201)


# ══════════════════════════════════════════════════════════════
#  OAUTH
# ══════════════════════════════════════════════════════════════

@router.get("/{bot_id}/auth")
async def oauth_authorize(request: Request, bot_id: str):
    try:
        url = await _orchestrator(request).begin_authorization(bot_id)
    except InstanceNotFound as e:
        raise HTTPException(404, str(e))
    return RedirectResponse(url, status_code=302)


@router.get("/{bot_id}/token")
async def oauth_callback(
    request: Request,
    bot_id: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
):
    try:
        instance, _ = await _orchestrator(request).complete_authorization(bot_id, state, code)
    except InstanceNotFound as e:
        raise HTTPException(404, str(e))
    except CSRFStateMismatch as e:
        return PlainTextResponse(f"WARNING: {e}", status_code=403)
    except OAuthProviderError as e:
        return PlainTextResponse(str(e), status_code=400)
    return RedirectResponse(instance.bot_endpoint, status_code=302)


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(settings: Settings = None, orchestrator: Orchestrator = None) -> FastAPI:
    settings = settings or get_settings()
    orchestrator = orchestrator or build_orchestrator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orchestrator.start()
        logger.info("bot_host_api_started", app_name=settings.app_name)
        yield
        await orchestrator.stop()

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Multi-instance conversational bot host",
        version="2.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000)
