from .gift_models import GiftUnit, GiftUnitStatus, GIFT_UNIT_TRANSITIONS

__all__ = [
    "GiftUnit", "GiftUnitStatus", "GIFT_UNIT_TRANSITIONS"
]
