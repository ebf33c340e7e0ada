# backend/app/routes/__init__.py
from .gift import router as gift_router
from .display import router as display_router

__all__ = [
    "gift_router", "display_router"
]
