"""
SERVICE DE CHAÎNE DE CADEAUX - "PAYER POUR LE SUIVANT"
Cycle de vie des unités cadeau (création, réclamation, requêtes) et
chaînage entre cadeaux. Chaque mutation est diffusée aux écrans via le hub.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import GiftInvalidStateError, GiftNotFoundError, GiftValidationError
from app.models.gift_models import GiftUnit, GiftUnitStatus
from app.schemas.gift_schemas import GiftUnitCreate
from app.websockets.gift_chain_hub import GiftChainHub, gift_chain_hub
from app.websockets.gift_chain_messages import to_gift_unit_event

logger = logging.getLogger(__name__)


class GiftService:
    def __init__(self, db: Session, hub: Optional[GiftChainHub] = None):
        self.db = db
        self.hub = hub if hub is not None else gift_chain_hub

    # ==================== LECTURES ====================

    @staticmethod
    def _available_clause(now: datetime):
        """AVAILABLE et (pas d'expiration ou expiration dans le futur)"""
        return and_(
            GiftUnit.status == GiftUnitStatus.AVAILABLE,
            or_(GiftUnit.expires_at.is_(None), GiftUnit.expires_at > now)
        )

    def find_available(self) -> List[GiftUnit]:
        """Tous les cadeaux disponibles, les plus récents d'abord."""
        return (
            self.db.query(GiftUnit)
            .filter(self._available_clause(datetime.utcnow()))
            .order_by(GiftUnit.created_at.desc())
            .all()
        )

    def find_available_by_product(self, product_id: str) -> List[GiftUnit]:
        """Cadeaux disponibles d'un produit, FIFO : le plus ancien est servi en premier."""
        return (
            self.db.query(GiftUnit)
            .filter(
                GiftUnit.product_id == product_id,
                self._available_clause(datetime.utcnow())
            )
            .order_by(GiftUnit.created_at.asc())
            .all()
        )

    def find_by_id(self, gift_unit_id: str) -> GiftUnit:
        gift_unit = self.db.query(GiftUnit).filter(GiftUnit.id == gift_unit_id).first()
        if not gift_unit:
            raise GiftNotFoundError(gift_unit_id)
        return gift_unit

    def find_by_original_order(self, order_id: str) -> List[GiftUnit]:
        return (
            self.db.query(GiftUnit)
            .filter(GiftUnit.original_order_id == order_id)
            .order_by(GiftUnit.created_at.asc())
            .all()
        )

    def get_available_count(self) -> int:
        return (
            self.db.query(GiftUnit)
            .filter(self._available_clause(datetime.utcnow()))
            .count()
        )

    # ==================== CRÉATION ====================

    @staticmethod
    def _validate_create_data(gift_data: Union[GiftUnitCreate, Dict[str, Any]]) -> GiftUnitCreate:
        if isinstance(gift_data, GiftUnitCreate):
            return gift_data
        try:
            return GiftUnitCreate.model_validate(gift_data)
        except ValidationError as e:
            raise GiftValidationError(f"Données cadeau invalides: {e}") from e

    def _insert_gift_unit(self, data: GiftUnitCreate, now: datetime) -> Tuple[GiftUnit, Optional[GiftUnit]]:
        """
        Insère le cadeau et met à jour son parent dans la transaction courante.
        Pas de commit ici : l'appelant valide l'ensemble en une fois.
        """
        parent = None
        chain_position = 1

        if data.continued_from_gift_unit_id:
            # 🔒 LOCK du parent (ignoré par SQLite)
            parent = (
                self.db.query(GiftUnit)
                .filter(GiftUnit.id == data.continued_from_gift_unit_id)
                .with_for_update()
                .first()
            )
            if not parent:
                raise GiftNotFoundError(data.continued_from_gift_unit_id)

            chain_position = parent.chain_position + 1
            parent.continued_at = now

        expires_at = data.expires_at
        if expires_at is None and settings.GIFT_DEFAULT_EXPIRY_HOURS:
            expires_at = now + timedelta(hours=settings.GIFT_DEFAULT_EXPIRY_HOURS)

        gift_unit = GiftUnit(
            product_id=data.product_id,
            product_name=data.product_name,
            product_type=data.product_type,
            quantity=data.quantity,
            original_order_id=data.original_order_id,
            gifted_by_customer_id=data.gifted_by_customer_id,
            gifted_by_name=data.gifted_by_name,
            status=GiftUnitStatus.AVAILABLE,
            created_at=now,
            expires_at=expires_at,
            continued_from_gift_unit_id=data.continued_from_gift_unit_id,
            continued_by_gift_unit_ids=[],
            chain_position=chain_position,
        )
        self.db.add(gift_unit)
        self.db.flush()

        if parent is not None:
            parent.continued_by_gift_unit_ids.append(gift_unit.id)

        return gift_unit, parent

    def _commit_or_rollback(self, event: str, context: Dict[str, Any]):
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(json.dumps({
                "event": event,
                **context,
                "error": str(e),
                "timestamp": datetime.utcnow().isoformat()
            }))
            raise

    def _notify_created(self, created: Iterable[Tuple[GiftUnit, Optional[GiftUnit]]]):
        """Diffusion après commit : un échec d'écran ne défait jamais une écriture."""
        for gift_unit, parent in created:
            try:
                gift_event = to_gift_unit_event(gift_unit)
                if parent is not None:
                    continued_at = parent.continued_at or datetime.utcnow()
                    self.hub.broadcast_gift_chain_continued(parent.id, continued_at.isoformat(), gift_event)
                self.hub.broadcast_gift_created(gift_event)
            except Exception as notify_error:
                logger.error(f"⚠️ Erreur diffusion cadeau {gift_unit.id}: {notify_error}")

    def create_gift_unit(self, gift_data: Union[GiftUnitCreate, Dict[str, Any]]) -> GiftUnit:
        """
        Créer une unité cadeau (racine, ou continuation si un parent est fourni).
        Parent + enfant sont écrits dans la même transaction : pas de référence
        avant pendante en cas d'échec.
        """
        data = self._validate_create_data(gift_data)
        now = datetime.utcnow()

        try:
            gift_unit, parent = self._insert_gift_unit(data, now)
        except Exception:
            self.db.rollback()
            raise

        self._commit_or_rollback("gift_create_failed", {
            "product_id": data.product_id,
            "original_order_id": data.original_order_id,
            "continued_from": data.continued_from_gift_unit_id,
        })

        self._notify_created([(gift_unit, parent)])

        logger.info(
            f"🎁 Cadeau créé {gift_unit.id} - {gift_unit.product_name} "
            f"(position dans la chaîne: {gift_unit.chain_position})"
        )
        return gift_unit

    def create_gifts_from_order(
        self,
        order_id: str,
        items: List[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]] = None
    ) -> List[GiftUnit]:
        """
        Un cadeau unitaire par unité achetée. Si la commande a consommé un
        cadeau, tous les nouveaux cadeaux le continuent en parallèle (même parent).
        """
        metadata = metadata or {}
        now = datetime.utcnow()

        payloads = []
        for item in items:
            for _ in range(int(item.get("quantity") or 0)):
                payloads.append(self._validate_create_data({
                    "product_id": item.get("product_id"),
                    "product_name": item.get("product_name"),
                    "product_type": item.get("product_type"),
                    "quantity": 1,
                    "original_order_id": order_id,
                    "gifted_by_customer_id": metadata.get("gifted_by_customer_id"),
                    "gifted_by_name": metadata.get("gifted_by_name"),
                    "continued_from_gift_unit_id": metadata.get("claimed_gift_unit_id"),
                }))

        if not payloads:
            return []

        created = []
        try:
            for data in payloads:
                created.append(self._insert_gift_unit(data, now))
        except Exception:
            self.db.rollback()
            raise

        self._commit_or_rollback("gift_bulk_create_failed", {
            "original_order_id": order_id,
            "count": len(payloads),
        })

        self._notify_created(created)

        logger.info(f"🎁 {len(created)} cadeau(x) créé(s) pour la commande {order_id}")
        return [gift_unit for gift_unit, _ in created]

    # ==================== RÉCLAMATION ====================

    def claim_gift_unit(
        self,
        gift_unit_id: str,
        claimed_by_order_id: str,
        claimed_by_customer_id: Optional[str] = None
    ) -> GiftUnit:
        """
        Réclamer un cadeau : UPDATE conditionnel atomique (statut vérifié dans le
        WHERE), donc deux réclamations simultanées ne peuvent pas réussir toutes
        les deux. Ne touche ni au stock ni aux prix.
        """
        if not claimed_by_order_id:
            raise GiftValidationError("claimed_by_order_id est requis")

        now = datetime.utcnow()
        logger.info(f"✅ CLAIM GIFT - Gift:{gift_unit_id}, Order:{claimed_by_order_id}")

        try:
            updated = (
                self.db.query(GiftUnit)
                .filter(GiftUnit.id == gift_unit_id, self._available_clause(now))
                .update(
                    {
                        GiftUnit.status: GiftUnitStatus.CLAIMED,
                        GiftUnit.claimed_at: now,
                        GiftUnit.claimed_by_order_id: claimed_by_order_id,
                        GiftUnit.claimed_by_customer_id: claimed_by_customer_id,
                    },
                    synchronize_session=False
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if updated == 0:
            gift_unit = self.db.query(GiftUnit).filter(GiftUnit.id == gift_unit_id).first()
            if not gift_unit:
                raise GiftNotFoundError(gift_unit_id)
            status = gift_unit.status.value
            # Encore réclamable selon la table des transitions : seule l'échéance bloque
            if gift_unit.validate_status_transition(GiftUnitStatus.CLAIMED) and gift_unit.is_expired_at(now):
                status = GiftUnitStatus.EXPIRED.value
            logger.warning(json.dumps({
                "event": "gift_claim_rejected",
                "requested_by_order_id": claimed_by_order_id,
                "reported_status": status,
                **gift_unit.to_audit_dict()
            }))
            raise GiftInvalidStateError(gift_unit_id, status)

        # Les instances ont expiré au commit : relecture fraîche
        gift_unit = self.find_by_id(gift_unit_id)

        try:
            self.hub.broadcast_gift_claimed(gift_unit.id, gift_unit.claimed_at.isoformat())
        except Exception as notify_error:
            logger.error(f"⚠️ Erreur diffusion réclamation {gift_unit_id}: {notify_error}")

        logger.info(f"✅ Cadeau {gift_unit_id} réclamé par la commande {claimed_by_order_id}")
        logger.info(json.dumps({"event": "gift_claimed", **gift_unit.to_audit_dict()}))
        return gift_unit

    # ==================== CHAÎNES ====================

    def _walk_ancestors(self, gift_unit: GiftUnit) -> List[GiftUnit]:
        """Ancêtres de la racine jusqu'au parent direct (exclu : le cadeau lui-même)."""
        ancestors = []
        seen = {gift_unit.id}
        current = gift_unit

        while current.continued_from_gift_unit_id:
            parent_id = current.continued_from_gift_unit_id
            if parent_id in seen:
                logger.error(f"❌ Cycle détecté dans la chaîne du cadeau {gift_unit.id} ({parent_id})")
                break
            parent = self.db.query(GiftUnit).filter(GiftUnit.id == parent_id).first()
            if not parent:
                logger.warning(f"⚠️ Parent {parent_id} introuvable (chaîne de {gift_unit.id})")
                break
            seen.add(parent.id)
            ancestors.insert(0, parent)
            current = parent

        return ancestors

    def _load_many(self, gift_unit_ids: List[str]) -> List[GiftUnit]:
        """Charger des cadeaux par id en conservant l'ordre ; ids pendants ignorés."""
        ids = [i for i in gift_unit_ids if i]
        if not ids:
            return []
        found = {g.id: g for g in self.db.query(GiftUnit).filter(GiftUnit.id.in_(ids)).all()}
        for missing in (i for i in ids if i not in found):
            logger.warning(f"⚠️ Continuation {missing} référencée mais introuvable")
        return [found[i] for i in ids if i in found]

    def get_chain_history(self, gift_unit_id: str) -> Dict[str, Any]:
        """
        Chaîne complète autour d'un cadeau : ancêtres jusqu'à la racine, le
        cadeau, puis ses continuations directes (un seul niveau). Plusieurs
        continuations = chaîne ramifiée (même chain_position).
        """
        gift_unit = self.find_by_id(gift_unit_id)
        ancestors = self._walk_ancestors(gift_unit)
        continuations = self._load_many(list(gift_unit.continued_by_gift_unit_ids or []))

        chain = ancestors + [gift_unit] + continuations
        return {
            "gift_unit_id": gift_unit.id,
            "chain": chain,
            "is_branching": len(continuations) > 1,
            "length": len(chain),
        }

    def _collect_chain(self, root: GiftUnit) -> List[GiftUnit]:
        """Tous les cadeaux atteignables depuis la racine, par position puis date."""
        collected = [root]
        seen = {root.id}
        frontier = [root]

        while frontier:
            next_ids = [
                child_id
                for gift in frontier
                for child_id in (gift.continued_by_gift_unit_ids or [])
                if child_id and child_id not in seen
            ]
            frontier = self._load_many(next_ids)
            frontier = [g for g in frontier if g.id not in seen]
            seen.update(g.id for g in frontier)
            collected.extend(frontier)

        return sorted(collected, key=lambda g: (g.chain_position, g.created_at))

    def get_display_snapshot(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Instantané reconstruit depuis le store (hydratation du hub au démarrage) :
        les cadeaux les plus récents et les chaînes auxquelles ils appartiennent.
        """
        limit = limit or settings.GIFT_RECENT_LIMIT
        recent = (
            self.db.query(GiftUnit)
            .order_by(GiftUnit.created_at.desc())
            .limit(limit)
            .all()
        )

        active_chains = []
        seen_roots = set()
        for gift_unit in reversed(recent):
            ancestors = self._walk_ancestors(gift_unit)
            root = ancestors[0] if ancestors else gift_unit
            if root.id in seen_roots:
                continue
            seen_roots.add(root.id)
            active_chains.append([to_gift_unit_event(g) for g in self._collect_chain(root)])

        return {
            "activeChains": active_chains,
            "recentGifts": [to_gift_unit_event(g) for g in recent],
        }
