"""
FastAPI server exposing persisted sessions.

Usage:
    # Run standalone
    python -m stepgate.api.server --port 5002

    # Or via factory
    from stepgate.api import create_app
    app = create_app(sessions_dir=Path(".stepgate/sessions"))
    uvicorn.run(app, port=5002)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from stepgate import __version__
from stepgate.config.runtime_config import get_sessions_dir

from .routes import sessions_router

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    version: str
    sessions_dir: str


def create_app(sessions_dir: Optional[Path] = None, enable_cors: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        sessions_dir: Session storage directory. Defaults to runtime config.
        enable_cors: Whether to enable CORS middleware.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="stepgate",
        description="Read-only view of step-flow sessions",
        version=__version__,
    )
    app.state.sessions_dir = Path(sessions_dir) if sessions_dir is not None else get_sessions_dir()

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET"],
            allow_headers=["*"],
        )

    app.include_router(sessions_router, prefix="/api")

    @app.get("/api/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(status="ok", version=__version__, sessions_dir=str(app.state.sessions_dir))

    logger.debug("API serving sessions from %s", app.state.sessions_dir)
    return app


def main():
    """Run the API server."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="stepgate session API")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5002, help="Port to bind to")
    parser.add_argument("--sessions-dir", type=Path, default=None, help="Session storage directory")
    parser.add_argument("--no-cors", action="store_true", help="Disable CORS")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    app = create_app(sessions_dir=args.sessions_dir, enable_cors=not args.no_cors)
    print(f"Starting stepgate API at http://{args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
