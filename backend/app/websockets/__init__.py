# backend/app/websockets/__init__.py
from .gift_chain_hub import GiftChainHub, gift_chain_hub
from .gift_chain_messages import (
    GiftChainMessageType,
    REQUEST_GIFT_STATE,
    to_gift_unit_event,
    gift_unit_created_message,
    gift_unit_claimed_message,
    gift_chain_continued_message,
    gift_state_update_message
)

__all__ = [
    "GiftChainHub",
    "gift_chain_hub",
    "GiftChainMessageType",
    "REQUEST_GIFT_STATE",
    "to_gift_unit_event",
    "gift_unit_created_message",
    "gift_unit_claimed_message",
    "gift_chain_continued_message",
    "gift_state_update_message"
]
