"""
FastAPI Main Application
========================

Entry point for the auto-mode server. Builds one AutoModeService for the
process in the lifespan handler and stops every loop on shutdown.

Environment:
    AUTOMODE_LOG_LEVEL         Logging level (default INFO)
    AUTOMODE_ALLOW_REMOTE      Accept non-localhost clients when "1"/"true"/"yes"
    AUTOMODE_*                 Engine settings, see automode.config
"""

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Fix for Windows subprocess support in asyncio
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from automode.auto_mode_service import AutoModeService
from automode.config import AutoModeConfig
from automode.settings import JsonNotificationSource, JsonSettingsProvider

from .exceptions import register_exception_handlers
from .routers import auto_mode_router, features_router, projects_router

logging.basicConfig(
    level=os.environ.get("AUTOMODE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
_logger = logging.getLogger(__name__)


def build_service(config: AutoModeConfig) -> AutoModeService:
    return AutoModeService(config=config, settings=JsonSettingsProvider(config.data_dir))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    # Tests may install their own service before startup
    if getattr(app.state, "auto_mode_service", None) is None:
        config = AutoModeConfig.from_env(load_env_file=False)
        _logger.info("Starting auto-mode server with %s", config.to_dict())
        app.state.auto_mode_service = build_service(config)
        app.state.notification_source = JsonNotificationSource()

    service: AutoModeService = app.state.auto_mode_service

    # Features left running by a previous process can never finish
    settings = await service.settings.get_global_settings()
    for ref in settings.projects:
        if not Path(ref.path).is_dir():
            continue
        try:
            result = await service.recover_orphaned_features(ref.path)
            if result.cleaned_count > 0:
                _logger.info("Recovered %d orphaned features in %s", result.cleaned_count, ref.path)
        except Exception as e:
            _logger.error("Failed to recover orphaned features in %s: %s", ref.path, e)

    yield

    await service.shutdown()


app = FastAPI(
    title="Auto-Mode Orchestration Engine",
    description="Runs features through coding agents in per-branch git worktrees",
    version="0.1.0",
    lifespan=lifespan,
)

register_exception_handlers(app)

ALLOW_REMOTE = os.environ.get("AUTOMODE_ALLOW_REMOTE", "").lower() in ("1", "true", "yes")

if ALLOW_REMOTE:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",      # Vite dev server
            "http://127.0.0.1:5173",
            "http://localhost:8888",
            "http://127.0.0.1:8888",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def require_localhost(request: Request, call_next):
        """Only allow requests from localhost (disabled when AUTOMODE_ALLOW_REMOTE=1)."""
        client_host = request.client.host if request.client else None
        if client_host not in ("127.0.0.1", "::1", "localhost", "testclient", None):
            return JSONResponse(
                status_code=403,
                content={"error_code": "FORBIDDEN", "message": "Localhost access only"},
            )
        return await call_next(request)


app.include_router(auto_mode_router)
app.include_router(projects_router)
app.include_router(features_router)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server.main:app",
        host="127.0.0.1",  # Localhost only for security
        port=8888,
    )
