from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import datetime

from app.models.gift_models import GiftUnitStatus

# Le front (caisse + écrans) parle camelCase ; côté Python on reste en snake_case
CAMEL_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _require_text(v: Optional[str], field: str) -> str:
    if v is None or not v.strip():
        raise ValueError(f"{field} est requis")
    return v.strip()


class GiftUnitCreate(BaseModel):
    product_id: str
    product_name: str
    product_type: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    original_order_id: str
    gifted_by_customer_id: Optional[str] = None
    gifted_by_name: Optional[str] = Field(default=None, max_length=100)
    continued_from_gift_unit_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    model_config = CAMEL_CONFIG

    @field_validator('product_id', 'product_name', 'original_order_id')
    @classmethod
    def validate_required(cls, v, info):
        return _require_text(v, info.field_name)


class GiftUnitClaimRequest(BaseModel):
    claimed_by_order_id: str
    claimed_by_customer_id: Optional[str] = None

    model_config = CAMEL_CONFIG

    @field_validator('claimed_by_order_id')
    @classmethod
    def validate_order_id(cls, v):
        return _require_text(v, 'claimed_by_order_id')


class GiftUnitResponse(BaseModel):
    id: str
    product_id: str
    product_name: str
    product_type: Optional[str]
    quantity: int
    original_order_id: str
    gifted_by_customer_id: Optional[str]
    gifted_by_name: Optional[str]
    status: GiftUnitStatus
    created_at: datetime
    claimed_at: Optional[datetime]
    claimed_by_order_id: Optional[str]
    claimed_by_customer_id: Optional[str]
    expires_at: Optional[datetime]
    continued_from_gift_unit_id: Optional[str]
    continued_by_gift_unit_ids: List[str] = Field(default_factory=list)
    continued_at: Optional[datetime]
    chain_position: int

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True,
        from_attributes=True, use_enum_values=True,
    )


class GiftCountResponse(BaseModel):
    count: int


class GiftChainHistoryResponse(BaseModel):
    """
    Historique d'une chaîne. Les continuations d'un même parent partagent la
    même chain_position : la liste n'est linéaire que si is_branching est faux.
    """
    gift_unit_id: str
    is_branching: bool
    length: int
    chain: List[GiftUnitResponse]

    model_config = CAMEL_CONFIG


# ============ CONTRAT CHECKOUT → HANDLER POST-PAIEMENT ============

class PostPaymentItem(BaseModel):
    product_id: str
    product_name: str
    product_type: Optional[str] = None
    quantity: int = Field(default=1, ge=0)
    price: float

    model_config = CAMEL_CONFIG


class PostPaymentGiftMetadata(BaseModel):
    claimed_gift_ids: List[str] = Field(default_factory=list)
    buy_for_next: bool = False
    gifter_name: Optional[str] = Field(default=None, max_length=100)

    model_config = CAMEL_CONFIG


class PostPaymentGiftContext(BaseModel):
    order_id: str
    customer_id: Optional[str] = None
    items: List[PostPaymentItem] = Field(default_factory=list)
    gift_metadata: Optional[PostPaymentGiftMetadata] = None

    model_config = CAMEL_CONFIG

    @field_validator('order_id')
    @classmethod
    def validate_order_id(cls, v):
        return _require_text(v, 'order_id')


class FailedGiftClaim(BaseModel):
    gift_unit_id: str
    reason: str

    model_config = CAMEL_CONFIG


class GiftProcessingResult(BaseModel):
    """Compte rendu du handler post-paiement (jamais levé, toujours retourné)."""
    order_id: str
    skipped: bool = False
    claimed_gift_ids: List[str] = Field(default_factory=list)
    failed_claims: List[FailedGiftClaim] = Field(default_factory=list)
    created_gift_ids: List[str] = Field(default_factory=list)
    duplicate_order: bool = False
    error: Optional[str] = None

    model_config = CAMEL_CONFIG

    @property
    def success(self) -> bool:
        return self.error is None and not self.failed_claims

    @property
    def partial_failure(self) -> bool:
        return self.error is None and bool(self.failed_claims)


# ============ REMISES CADEAU AVANT PAIEMENT ============

class GiftDiscountRequest(BaseModel):
    gift_ids: List[str] = Field(default_factory=list)

    model_config = CAMEL_CONFIG


class GiftDiscountItem(BaseModel):
    gift_id: str
    product_id: str
    product_name: str
    discount_amount: float = 0.0  # 100% du prix produit, fourni par le catalogue
    discount_type: str = "GIFT"

    model_config = CAMEL_CONFIG
