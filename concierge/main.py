from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .errors import build_error_envelope, new_request_id
from .routers import agent_configs as agent_configs_router
from .routers import chat as chat_router
from .routers import usage as usage_router
from .services import Services, build_services


logger = logging.getLogger("tenant-concierge")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services (unless injected), create tables, and release clients on shutdown."""
    owned = app.state.services is None
    if owned:
        app.state.services = build_services()
    app.state.services.init_schema()
    logger.info("tenant-concierge ready db=%s", app.state.services.db.dialect)
    yield
    if owned:
        app.state.services.close()
        app.state.services = None


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="Tenant Concierge", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    # CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
    cors_origins = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(chat_router.router)
    app.include_router(agent_configs_router.router)
    app.include_router(usage_router.router)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        status_code, body = build_error_envelope(
            request_id=new_request_id(),
            status_code=400,
            code="MALFORMED_REQUEST",
            message="Request body failed validation",
            details=[{"path": list(err.get("loc", ())), "message": err.get("msg")} for err in exc.errors()],
        )
        return JSONResponse(status_code=status_code, content=body)

    @app.get("/health")
    async def health() -> JSONResponse:
        """Simple health check."""
        return JSONResponse(status_code=200, content={"status": "ok", "service": get_settings().service_name})

    return app


app = create_app()


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
