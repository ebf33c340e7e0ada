"""
Middleware de sécurité : rate limiting global (slowapi) + headers de sécurité
"""
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address
import logging

from app.config import settings

logger = logging.getLogger(__name__)

# Rate limiter GLOBAL, partagé par les routes (désactivable via RATE_LIMIT_ENABLED)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    enabled=settings.RATE_LIMIT_ENABLED,
)

# Endpoints qui modifient l'état des cadeaux : jamais mis en cache
SENSITIVE_PATHS = [
    f"{settings.API_V1_PREFIX}/gifts",
]


async def security_headers_middleware(request: Request, call_next):
    """Ajouter des headers de sécurité"""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"

    path = request.url.path
    if request.method != "GET" and any(path.startswith(p) for p in SENSITIVE_PATHS):
        response.headers["Cache-Control"] = "no-store, max-age=0"

    return response
