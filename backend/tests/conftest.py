"""
Configuration pytest centrale pour la chaîne de cadeaux.

La base de test est une SQLite en mémoire partagée (StaticPool) : les
variables d'environnement doivent être posées AVANT tout import de `app`.
"""

import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENVIRONMENT"] = "testing"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["GIFT_RECENT_LIMIT"] = "10"

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from fastapi import WebSocketDisconnect

from app.database import Base, SessionLocal, engine
from app.models.gift_models import GiftUnit, GiftUnitStatus
from app.services.gift_service import GiftService
from app.websockets.gift_chain_hub import GiftChainHub


@pytest.fixture(autouse=True)
def reset_database():
    """Base vierge pour chaque test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def hub() -> GiftChainHub:
    """Hub isolé : les tests unitaires ne touchent pas l'instance globale."""
    return GiftChainHub(recent_limit=10)


@pytest.fixture
def gift_service(db_session, hub) -> GiftService:
    return GiftService(db_session, hub=hub)


@pytest.fixture
def make_gift(db_session):
    """Insérer directement un cadeau (dates et statut contrôlés)."""

    def _make_gift(**overrides) -> GiftUnit:
        values = {
            "product_id": "P1",
            "product_name": "Cappuccino",
            "product_type": "coffee",
            "quantity": 1,
            "original_order_id": "O-seed",
            "status": GiftUnitStatus.AVAILABLE,
            "created_at": datetime.utcnow(),
            "chain_position": 1,
            "continued_by_gift_unit_ids": [],
        }
        values.update(overrides)
        gift = GiftUnit(**values)
        db_session.add(gift)
        db_session.commit()
        return gift

    return _make_gift


@pytest.fixture
def minutes_ago():
    def _minutes_ago(minutes: int) -> datetime:
        return datetime.utcnow() - timedelta(minutes=minutes)

    return _minutes_ago


class FakeWebSocket:
    """Écran factice : enregistre ce qu'il reçoit, rejoue des trames entrantes."""

    def __init__(self, incoming: Optional[List[str]] = None, fail_on_send: bool = False):
        self.incoming = list(incoming or [])
        self.sent: List[Dict[str, Any]] = []
        self.sent_text: List[str] = []
        self.accepted = False
        self.fail_on_send = fail_on_send

    async def accept(self):
        self.accepted = True

    async def send_json(self, message: Dict[str, Any]):
        if self.fail_on_send:
            raise RuntimeError("socket fermé")
        self.sent.append(message)

    async def send_text(self, data: str):
        self.sent_text.append(data)

    async def receive_text(self) -> str:
        if not self.incoming:
            raise WebSocketDisconnect(code=1000)
        return self.incoming.pop(0)

    def types(self) -> List[str]:
        return [m.get("type") for m in self.sent]


@pytest.fixture
def fake_websocket_factory():
    return FakeWebSocket
