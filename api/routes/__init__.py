"""API Routes."""

from api.routes.sessions import router as sessions_router
from api.routes.health import router as health_router
from api.routes.rag import router as rag_router

__all__ = ["sessions_router", "health_router", "rag_router"]
