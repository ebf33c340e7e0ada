"""
SERVEUR PRINCIPAL - CAFÉ POS / CHAÎNE DE CADEAUX
API REST des cadeaux + canal temps-réel des écrans clients
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import asyncio
import logging

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.config import settings
from app.database import SessionLocal, init_db
from app.exceptions import GiftInvalidStateError, GiftNotFoundError, GiftValidationError
from app.middleware.security import limiter, security_headers_middleware
from app.routes import gift_router, display_router
from app.services.gift_service import GiftService
from app.websockets import gift_chain_hub

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def hydrate_gift_chain_hub():
    """Recharger l'instantané des écrans depuis la base (redémarrage du serveur)."""
    db = SessionLocal()
    try:
        snapshot = GiftService(db).get_display_snapshot()
        gift_chain_hub.replace_state(snapshot["activeChains"], snapshot["recentGifts"])
    except Exception as e:
        logger.error(f"⚠️ Hydratation du hub impossible, démarrage à vide: {e}")
    finally:
        db.close()


# ==================== LIFESPAN MANAGEMENT ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Démarrage
    logger.info("🚀 Démarrage de l'API Café POS (chaîne de cadeaux)...")
    init_db()
    hydrate_gift_chain_hub()
    gift_chain_hub.bind_loop(asyncio.get_running_loop())

    yield
    # Arrêt
    logger.info("🛑 Arrêt du serveur")


# ==================== APPLICATION FASTAPI ====================
app = FastAPI(
    title="Café POS - Gift Chain API",
    description="Cadeaux 'payer pour le suivant' et synchronisation des écrans clients",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan
)

# ⬅️ CONFIGURATION GLOBALE DU RATE LIMITING
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.middleware("http")(security_headers_middleware)


# ==================== GESTION DES ERREURS ====================
@app.exception_handler(GiftNotFoundError)
async def gift_not_found_handler(request: Request, exc: GiftNotFoundError):
    return JSONResponse(status_code=404, content={"status": "error", "detail": str(exc)})


@app.exception_handler(GiftInvalidStateError)
async def gift_invalid_state_handler(request: Request, exc: GiftInvalidStateError):
    return JSONResponse(status_code=409, content={"status": "error", "detail": str(exc)})


@app.exception_handler(GiftValidationError)
async def gift_validation_handler(request: Request, exc: GiftValidationError):
    return JSONResponse(status_code=422, content={"status": "error", "detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Gestionnaire d'erreurs global : log complet, réponse JSON sans détail interne
    """
    logger.critical(f"❌ ERREUR CRITIQUE - Path: {request.method} {request.url.path}")
    logger.critical(f"   Type: {type(exc).__name__}")
    logger.critical(f"   Message: {str(exc)}", exc_info=settings.DEBUG)

    if settings.DEBUG:
        error_message = f"{type(exc).__name__}: {str(exc)}"
    else:
        error_message = "Une erreur interne est survenue"

    return JSONResponse(
        status_code=500,
        content={
            "status": "error",
            "detail": error_message,
            "error_id": f"ERR_{datetime.now().strftime('%Y%m%d_%H%M%S')}",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


# ==================== ROUTES ====================
API_PREFIX = settings.API_V1_PREFIX

app.include_router(gift_router, prefix=API_PREFIX, tags=["Gifts"])
app.include_router(display_router, prefix=API_PREFIX, tags=["Display"])


@app.get("/")
def read_root():
    return {
        "message": "Bienvenue sur l'API Café POS - chaîne de cadeaux ☕🎁",
        "version": "1.0.0",
        "docs": "/api/docs",
        "websocket": f"{API_PREFIX}/ws/gift-chain",
        "endpoints": {
            "gifts": f"{API_PREFIX}/gifts",
            "display_status": f"{API_PREFIX}/display/status"
        }
    }


@app.get("/health")
def health_check():
    status = gift_chain_hub.get_status()
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "environment": settings.ENVIRONMENT,
        "displays_connected": status["connected"],
        "active_chains": status["active_chains"],
        "recent_gifts": status["recent_gifts"]
    }


if __name__ == "__main__":
    import uvicorn
    logger.info(f"🌍 Serveur démarré sur http://{settings.HOST}:{settings.PORT}")
    logger.info(f"📚 Documentation: http://{settings.HOST}:{settings.PORT}/api/docs")
    logger.info(f"🔌 Écrans: ws://{settings.HOST}:{settings.PORT}{API_PREFIX}/ws/gift-chain")
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
