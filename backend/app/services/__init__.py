from .gift_service import GiftService
from .post_payment_gift_handler import PostPaymentGiftHandler, run_post_payment_gifts

__all__ = [
    "GiftService",
    "PostPaymentGiftHandler", "run_post_payment_gifts"
]
