"""FastAPI entry point for the workflow orchestration service."""

from typing import Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import OrchestratorSettings, get_settings
from .routers import providers, workflows


def create_app(settings: Optional[OrchestratorSettings] = None) -> FastAPI:
    """Create a FastAPI application exposing workflow runs and provider health."""

    resolved_settings = settings or get_settings()

    app = FastAPI(title=resolved_settings.app_name, version=__version__)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=resolved_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(workflows.router)
    app.include_router(providers.router)

    @app.get("/health", tags=["health"])
    def health_check() -> Dict[str, Optional[str]]:
        """Report service status and which run state backend is configured."""

        return {
            "status": "ok",
            "service": resolved_settings.app_name,
            "state_backend": "redis" if resolved_settings.redis_url else "memory",
        }

    @app.get("/ready", tags=["health"])
    def readiness_check() -> Dict[str, object]:
        """Readiness check endpoint for Kubernetes."""

        return {
            "status": "ready",
            "service": resolved_settings.app_name,
            "orchestration_ready": True,
            "redis_configured": bool(resolved_settings.redis_url),
            "model_registry_configured": bool(resolved_settings.model_registry_path),
        }

    return app


app = create_app()
