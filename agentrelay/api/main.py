"""
FastAPI application for the agentrelay server.

Main entry point that configures the FastAPI app with:
- Logging (console + optional rotating file)
- Session manager lifecycle (created at startup, all sessions torn down at shutdown)
- Route registration
- Exception handlers mapping engine errors to HTTP status codes
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import EngineConfig, get_engine_config
from ..core.exceptions import ConfigurationError, SessionNotFoundError, SessionStateError
from ..core.logging_config import setup_logging
from ..services.session_manager import SessionManager
from .routes import health_router, sessions_router, tools_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup: create the session manager unless one was injected.
    Shutdown: terminate every live session.
    """
    logger.info("Starting agentrelay API...")
    if getattr(app.state, "session_manager", None) is None:
        app.state.session_manager = SessionManager(app.state.config)
    manager: SessionManager = app.state.session_manager
    servers = manager.registry.servers()
    logger.info(f"External tool servers configured: {[s.name for s in servers] or 'none'}")

    yield

    logger.info("Shutting down agentrelay API...")
    await manager.shutdown()


def create_app(
    config: Optional[EngineConfig] = None,
    session_manager: Optional[SessionManager] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Engine config; loaded from config/agentrelay.yaml when omitted.
        session_manager: Pre-built manager (tests inject one with fake backends).
    """
    config = config or get_engine_config()
    setup_logging(config.logging.level, config.logging.file)

    app = FastAPI(
        title="agentrelay",
        description="Agent session and tool-orchestration engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.session_manager = session_manager

    app.include_router(health_router)
    app.include_router(sessions_router)
    app.include_router(tools_router)

    @app.exception_handler(SessionNotFoundError)
    async def session_not_found_handler(request: Request, exc: SessionNotFoundError) -> JSONResponse:
        """Convert SessionNotFoundError to 404 response."""
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(SessionStateError)
    async def session_state_handler(request: Request, exc: SessionStateError) -> JSONResponse:
        """Convert SessionStateError to 409 response."""
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.warning(f"Configuration error during {request.method} {request.url}: {exc}")
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app


def main() -> None:
    """Console entry point: run the API under uvicorn."""
    import uvicorn

    config = get_engine_config()
    uvicorn.run(
        "agentrelay.api.main:create_app",
        factory=True,
        host=config.api.host,
        port=config.api.port,
        reload=config.api.reload,
    )


if __name__ == "__main__":
    main()
