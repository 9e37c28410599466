from .challenges import router as challenges_router
from .health import router as health_router
from .media import router as media_router
from .videos import router as videos_router

__all__ = ["videos_router", "challenges_router", "media_router", "health_router"]
