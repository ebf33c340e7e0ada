from .gift_schemas import (
    GiftUnitCreate,
    GiftUnitClaimRequest,
    GiftUnitResponse,
    GiftCountResponse,
    GiftChainHistoryResponse,
    PostPaymentItem,
    PostPaymentGiftMetadata,
    PostPaymentGiftContext,
    FailedGiftClaim,
    GiftProcessingResult,
    GiftDiscountRequest,
    GiftDiscountItem,
)

__all__ = [
    # ============ CADEAUX ============
    "GiftUnitCreate", "GiftUnitClaimRequest", "GiftUnitResponse",
    "GiftCountResponse", "GiftChainHistoryResponse",

    # ============ CHECKOUT ============
    "PostPaymentItem", "PostPaymentGiftMetadata", "PostPaymentGiftContext",
    "FailedGiftClaim", "GiftProcessingResult",
    "GiftDiscountRequest", "GiftDiscountItem",
]
