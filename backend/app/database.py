from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from app.config import settings
import logging

logger = logging.getLogger(__name__)

# Configuration de la base de données
if settings.is_sqlite:
    engine_kwargs = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in settings.DATABASE_URL:
        # Une seule connexion partagée, sinon chaque session voit une base vide
        engine_kwargs["poolclass"] = StaticPool
else:
    engine_kwargs = {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
    }

engine = create_engine(settings.DATABASE_URL, **engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_db():
    """Créer les tables manquantes (les tables existantes sont conservées)."""
    from app.models import gift_models  # noqa: F401 - enregistre les modèles sur Base

    Base.metadata.create_all(bind=engine)
    logger.info(f"✅ Tables disponibles: {', '.join(Base.metadata.tables.keys())}")
