from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from typing import List, Optional

from app.database import get_db
from app.exceptions import GiftInvalidStateError, GiftNotFoundError, GiftValidationError
from app.middleware.security import limiter
from app.schemas.gift_schemas import (
    GiftChainHistoryResponse,
    GiftCountResponse,
    GiftDiscountItem,
    GiftDiscountRequest,
    GiftUnitClaimRequest,
    GiftUnitCreate,
    GiftUnitResponse,
    PostPaymentGiftContext,
)
from app.services.gift_service import GiftService
from app.services.post_payment_gift_handler import PostPaymentGiftHandler, run_post_payment_gifts

router = APIRouter(prefix="/gifts", tags=["gifts"])


@router.get("/available", response_model=List[GiftUnitResponse])
def get_available_gifts_endpoint(
    product_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """
    Cadeaux disponibles. Avec product_id : FIFO (le plus ancien d'abord),
    sinon les plus récents d'abord.
    """
    gift_service = GiftService(db)
    if product_id:
        return gift_service.find_available_by_product(product_id)
    return gift_service.find_available()


@router.get("/available/count", response_model=GiftCountResponse)
def get_available_count_endpoint(db: Session = Depends(get_db)):
    return {"count": GiftService(db).get_available_count()}


@router.get("/{gift_unit_id}", response_model=GiftUnitResponse)
def get_gift_endpoint(gift_unit_id: str, db: Session = Depends(get_db)):
    try:
        return GiftService(db).find_by_id(gift_unit_id)
    except GiftNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{gift_unit_id}/chain", response_model=GiftChainHistoryResponse)
def get_gift_chain_endpoint(gift_unit_id: str, db: Session = Depends(get_db)):
    """Historique complet de la chaîne contenant ce cadeau"""
    try:
        return GiftService(db).get_chain_history(gift_unit_id)
    except GiftNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("", response_model=GiftUnitResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_gift_endpoint(
    request: Request,
    gift_data: GiftUnitCreate,
    db: Session = Depends(get_db)
):
    """
    Créer une unité cadeau (test / administration).
    En production, les cadeaux naissent du handler post-paiement.
    """
    try:
        return GiftService(db).create_gift_unit(gift_data)
    except GiftNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GiftValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/{gift_unit_id}/claim", response_model=GiftUnitResponse)
@limiter.limit("30/minute")
def claim_gift_endpoint(
    request: Request,
    gift_unit_id: str,
    claim: GiftUnitClaimRequest,
    db: Session = Depends(get_db)
):
    """Réclamer un cadeau pour une commande (sans effet sur le stock)"""
    try:
        return GiftService(db).claim_gift_unit(
            gift_unit_id,
            claim.claimed_by_order_id,
            claim.claimed_by_customer_id
        )
    except GiftNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GiftInvalidStateError as e:
        raise HTTPException(
            status_code=409,
            detail=f"Ce cadeau n'est plus disponible ({e.status})"
        )
    except GiftValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/checkout/discounts", response_model=List[GiftDiscountItem])
def get_gift_discounts_endpoint(
    discount_request: GiftDiscountRequest,
    db: Session = Depends(get_db)
):
    """
    Lignes de remise cadeau à appliquer AVANT paiement.
    Le montant reste à 0 : le prix est fourni par le catalogue côté checkout.
    """
    handler = PostPaymentGiftHandler(GiftService(db))
    return handler.get_gift_discount_items(discount_request.gift_ids)


@router.post("/checkout/post-payment", status_code=status.HTTP_202_ACCEPTED)
def post_payment_gifts_endpoint(
    context: PostPaymentGiftContext,
    background_tasks: BackgroundTasks
):
    """
    Hook appelé par le checkout une fois la vente enregistrée.
    Le traitement part en tâche de fond : la vente n'attend jamais les cadeaux.
    """
    if not context.gift_metadata:
        return {"accepted": False, "order_id": context.order_id, "message": "Aucune métadonnée cadeau"}

    background_tasks.add_task(run_post_payment_gifts, context)
    return {"accepted": True, "order_id": context.order_id}
