from sqlalchemy import Column, Integer, String, DateTime, Enum, JSON, Index
from sqlalchemy.ext.mutable import MutableList
from datetime import datetime
from app.database import Base
import enum
import uuid


def generate_gift_unit_id() -> str:
    """Identifiant opaque attribué par le store (32 caractères hex)."""
    return uuid.uuid4().hex


class GiftUnitStatus(enum.Enum):
    AVAILABLE = "AVAILABLE"  # En attente du prochain client
    CLAIMED = "CLAIMED"      # Consommé par une commande (terminal)
    EXPIRED = "EXPIRED"      # Expiré par un balayage externe (terminal)


# Transitions autorisées : à sens unique, jamais de retour à AVAILABLE
GIFT_UNIT_TRANSITIONS = {
    GiftUnitStatus.AVAILABLE: [GiftUnitStatus.CLAIMED, GiftUnitStatus.EXPIRED],
    GiftUnitStatus.CLAIMED: [],
    GiftUnitStatus.EXPIRED: [],
}


class GiftUnit(Base):
    __tablename__ = "gift_units"

    # ============ IDENTITÉ ============
    id = Column(String(32), primary_key=True, default=generate_gift_unit_id)

    # ============ PRODUIT OFFERT ============
    product_id = Column(String(64), nullable=False, index=True)
    product_name = Column(String(255), nullable=False)
    product_type = Column(String(64), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)

    # ============ PROVENANCE ============
    original_order_id = Column(String(64), nullable=False, index=True)
    gifted_by_customer_id = Column(String(64), nullable=True)
    gifted_by_name = Column(String(100), nullable=True)

    # ============ CYCLE DE VIE ============
    status = Column(Enum(GiftUnitStatus), nullable=False, default=GiftUnitStatus.AVAILABLE)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    claimed_at = Column(DateTime, nullable=True)
    claimed_by_order_id = Column(String(64), nullable=True, index=True)
    claimed_by_customer_id = Column(String(64), nullable=True)
    expires_at = Column(DateTime, nullable=True)

    # ============ CHAÎNAGE ============
    # Références faibles : de simples ids, jamais de relationship() ni de FK
    continued_from_gift_unit_id = Column(String(32), nullable=True, index=True)
    continued_by_gift_unit_ids = Column(MutableList.as_mutable(JSON), nullable=False, default=list)
    continued_at = Column(DateTime, nullable=True)
    chain_position = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_gift_units_status_created_at", "status", "created_at"),
    )

    # ============ MÉTHODES UTILITAIRES ============
    @property
    def is_chain_root(self):
        """Vrai si ce cadeau démarre une chaîne"""
        return self.continued_from_gift_unit_id is None

    def is_expired_at(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_available(self, now: datetime = None) -> bool:
        """Disponible = statut AVAILABLE et pas encore expiré"""
        now = now or datetime.utcnow()
        return self.status == GiftUnitStatus.AVAILABLE and not self.is_expired_at(now)

    def validate_status_transition(self, new_status: GiftUnitStatus) -> bool:
        return new_status in GIFT_UNIT_TRANSITIONS.get(self.status, [])

    def to_audit_dict(self):
        """Format pour logs d'audit"""
        return {
            "gift_unit_id": self.id,
            "product_id": self.product_id,
            "status": self.status.value if self.status else None,
            "original_order_id": self.original_order_id,
            "claimed_by_order_id": self.claimed_by_order_id,
            "chain": {
                "position": self.chain_position,
                "continued_from": self.continued_from_gift_unit_id,
                "continued_by": list(self.continued_by_gift_unit_ids or []),
            },
            "timestamps": {
                "created": self.created_at.isoformat() if self.created_at else None,
                "claimed": self.claimed_at.isoformat() if self.claimed_at else None,
                "continued": self.continued_at.isoformat() if self.continued_at else None,
                "expires": self.expires_at.isoformat() if self.expires_at else None,
            }
        }

    def __repr__(self):
        return f"<GiftUnit {self.id} {self.product_name} #{self.chain_position} {self.status.value if self.status else '?'}>"
