"""Generation workflow orchestration service exposing the FastAPI application factory."""

__version__ = "0.1.0"

from .main import create_app  # noqa: E402

__all__ = ["create_app", "__version__"]
