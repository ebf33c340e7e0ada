"""
HANDLER POST-PAIEMENT DES CADEAUX
Appelé par le checkout APRÈS l'enregistrement de la vente, en tâche de fond.

CRITIQUE : ce handler ne doit jamais faire échouer ni annuler une vente.
Toute erreur est journalisée et reportée dans le GiftProcessingResult,
jamais levée vers l'appelant.
"""
import logging
from typing import Callable, List, Optional, Union

from app.exceptions import GiftError, GiftInvalidStateError
from app.models.gift_models import GiftUnitStatus
from app.schemas.gift_schemas import (
    FailedGiftClaim,
    GiftDiscountItem,
    GiftProcessingResult,
    PostPaymentGiftContext,
    PostPaymentItem,
)
from app.services.gift_service import GiftService

logger = logging.getLogger(__name__)

# Contrat attendu du catalogue : prix unitaire d'un produit (None si inconnu)
PriceLookup = Callable[[str], Optional[float]]


def _order_id_of(context) -> str:
    if isinstance(context, PostPaymentGiftContext):
        return context.order_id
    if isinstance(context, dict):
        return str(context.get("orderId") or context.get("order_id") or "inconnu")
    return "inconnu"


class PostPaymentGiftHandler:
    def __init__(self, gift_service: GiftService):
        self.gift_service = gift_service

    def process_post_payment_gifts(
        self,
        context: Union[PostPaymentGiftContext, dict]
    ) -> GiftProcessingResult:
        """
        1. Réclamer les cadeaux sélectionnés (chaque échec isolé)
        2. Si buyForNext : créer les cadeaux pour les suivants, chaînés au
           premier cadeau effectivement réclamé

        Rejouable : une réclamation déjà faite échoue sans effet, et les
        cadeaux déjà créés pour cette commande ne sont pas recréés.
        """
        order_id = _order_id_of(context)
        result = GiftProcessingResult(order_id=order_id)

        try:
            if not isinstance(context, PostPaymentGiftContext):
                context = PostPaymentGiftContext.model_validate(context)

            metadata = context.gift_metadata
            if not metadata:
                logger.debug(f"🎁 Pas de métadonnées cadeau pour la commande {order_id}, ignoré")
                result.skipped = True
                return result

            if metadata.claimed_gift_ids:
                self._claim_gifts(context, metadata.claimed_gift_ids, result)

            if metadata.buy_for_next:
                continued_from = result.claimed_gift_ids[0] if result.claimed_gift_ids else None
                self._create_gifts_for_next(context, metadata.gifter_name, continued_from, result)

            if result.failed_claims:
                logger.warning(
                    f"⚠️ Cadeaux traités partiellement pour la commande {order_id}: "
                    f"{len(result.failed_claims)} réclamation(s) en échec"
                )
            else:
                logger.info(f"✅ Cadeaux traités pour la commande {order_id}")

        except Exception as e:
            # Ne jamais bloquer la finalisation de la commande
            logger.error(f"❌ Échec traitement cadeaux commande {order_id}: {e}", exc_info=True)
            result.error = str(e)

        return result

    def _claim_gifts(self, context: PostPaymentGiftContext, gift_ids: List[str], result: GiftProcessingResult):
        # Un id sélectionné deux fois n'est réclamé (et reporté) qu'une fois
        unique_ids = list(dict.fromkeys(gift_ids))
        logger.debug(f"🎁 Réclamation de {len(unique_ids)} cadeau(x) pour la commande {context.order_id}")

        for gift_id in unique_ids:
            try:
                self.gift_service.claim_gift_unit(gift_id, context.order_id, context.customer_id)
                result.claimed_gift_ids.append(gift_id)
            except GiftInvalidStateError as e:
                if self._claimed_by_same_order(gift_id, context.order_id):
                    # Rejeu : déjà réclamé par cette même commande, garde le chaînage
                    logger.info(f"🔁 Cadeau {gift_id} déjà réclamé par la commande {context.order_id}")
                    result.claimed_gift_ids.append(gift_id)
                    continue
                logger.error(f"❌ Réclamation cadeau {gift_id} échouée: {e}")
                result.failed_claims.append(FailedGiftClaim(gift_unit_id=gift_id, reason=str(e)))
            except Exception as e:
                # Côté caisse : "ce cadeau n'est plus disponible, on continue sans"
                reason = str(e) if isinstance(e, GiftError) else f"{type(e).__name__}: {e}"
                logger.error(f"❌ Réclamation cadeau {gift_id} échouée: {reason}")
                result.failed_claims.append(FailedGiftClaim(gift_unit_id=gift_id, reason=reason))

    def _claimed_by_same_order(self, gift_id: str, order_id: str) -> bool:
        try:
            return self.gift_service.find_by_id(gift_id).claimed_by_order_id == order_id
        except GiftError:
            return False

    def _create_gifts_for_next(
        self,
        context: PostPaymentGiftContext,
        gifter_name: Optional[str],
        continued_from: Optional[str],
        result: GiftProcessingResult
    ):
        giftable_items: List[PostPaymentItem] = [item for item in context.items if item.price > 0]

        if not giftable_items:
            logger.warning(f"⚠️ Aucun article offrable dans la commande {context.order_id}")
            return

        existing = self.gift_service.find_by_original_order(context.order_id)
        if existing:
            logger.warning(
                f"⚠️ {len(existing)} cadeau(x) déjà créé(s) pour la commande {context.order_id}, rejeu ignoré"
            )
            result.duplicate_order = True
            return

        try:
            created = self.gift_service.create_gifts_from_order(
                context.order_id,
                [
                    {
                        "product_id": item.product_id,
                        "product_name": item.product_name,
                        "product_type": item.product_type,
                        "quantity": item.quantity,
                    }
                    for item in giftable_items
                ],
                {
                    "gifted_by_customer_id": context.customer_id,
                    "gifted_by_name": gifter_name,
                    "claimed_gift_unit_id": continued_from,
                }
            )
            result.created_gift_ids.extend(gift.id for gift in created)
        except Exception as e:
            logger.error(f"❌ Création des cadeaux de la commande {context.order_id} échouée: {e}")
            result.error = str(e)

    def get_gift_discount_items(
        self,
        gift_ids: List[str],
        price_lookup: Optional[PriceLookup] = None
    ) -> List[GiftDiscountItem]:
        """
        Lignes de remise 100% à appliquer au panier AVANT paiement, une par
        cadeau sélectionné encore disponible. Le prix vient du catalogue
        (price_lookup) ; sans lui, montant 0 à compléter par le checkout.
        """
        discount_items = []

        for gift_id in gift_ids:
            try:
                gift = self.gift_service.find_by_id(gift_id)

                if gift.status != GiftUnitStatus.AVAILABLE or not gift.is_available():
                    logger.warning(f"⚠️ Cadeau {gift_id} non disponible, ignoré")
                    continue

                amount = 0.0
                if price_lookup is not None:
                    amount = float(price_lookup(gift.product_id) or 0.0)

                discount_items.append(GiftDiscountItem(
                    gift_id=gift.id,
                    product_id=gift.product_id,
                    product_name=gift.product_name,
                    discount_amount=amount,
                ))
            except Exception as e:
                logger.error(f"❌ Lecture cadeau {gift_id} échouée: {e}")

        return discount_items


def run_post_payment_gifts(context: PostPaymentGiftContext) -> GiftProcessingResult:
    """
    Point d'entrée tâche de fond : session DB dédiée, le checkout n'attend pas.
    """
    from app.database import SessionLocal

    db = SessionLocal()
    try:
        handler = PostPaymentGiftHandler(GiftService(db))
        return handler.process_post_payment_gifts(context)
    finally:
        db.close()
