"""
Messages du canal temps-réel des écrans clients.
Enveloppe commune : {"type": ..., "payload": ...}, clés camelCase côté fil.
"""
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime


class GiftChainMessageType(str, Enum):
    GIFT_UNIT_CREATED = "GIFT_UNIT_CREATED"
    GIFT_UNIT_CLAIMED = "GIFT_UNIT_CLAIMED"
    GIFT_CHAIN_CONTINUED = "GIFT_CHAIN_CONTINUED"
    GIFT_STATE_UPDATE = "GIFT_STATE_UPDATE"


# Demande de resynchronisation envoyée par un écran (réponse au seul demandeur)
REQUEST_GIFT_STATE = "REQUEST_GIFT_STATE"

ANONYMOUS_GIFTER = "Anonyme"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def to_gift_unit_event(gift_unit) -> Dict[str, Any]:
    """Projection d'un GiftUnit pour les écrans (pas d'ids client ni de commande)."""
    return {
        "id": gift_unit.id,
        "giftedByName": gift_unit.gifted_by_name or ANONYMOUS_GIFTER,
        "productName": gift_unit.product_name,
        "productType": gift_unit.product_type,
        "createdAt": _iso(gift_unit.created_at),
        "claimedAt": _iso(gift_unit.claimed_at),
        "continuedAt": _iso(gift_unit.continued_at),
        "chainPosition": gift_unit.chain_position,
    }


def gift_unit_created_message(gift_event: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": GiftChainMessageType.GIFT_UNIT_CREATED.value,
        "payload": gift_event,
    }


def gift_unit_claimed_message(gift_unit_id: str, claimed_at: str) -> Dict[str, Any]:
    return {
        "type": GiftChainMessageType.GIFT_UNIT_CLAIMED.value,
        "payload": {"giftUnitId": gift_unit_id, "claimedAt": claimed_at},
    }


def gift_chain_continued_message(
    gift_unit_id: str,
    continued_at: str,
    new_gift_event: Dict[str, Any]
) -> Dict[str, Any]:
    return {
        "type": GiftChainMessageType.GIFT_CHAIN_CONTINUED.value,
        "payload": {
            "giftUnitId": gift_unit_id,
            "continuedAt": continued_at,
            "newGiftUnit": new_gift_event,
        },
    }


def gift_state_update_message(
    active_chains: List[List[Dict[str, Any]]],
    recent_gifts: List[Dict[str, Any]]
) -> Dict[str, Any]:
    return {
        "type": GiftChainMessageType.GIFT_STATE_UPDATE.value,
        "payload": {
            "activeChains": active_chains,
            "recentGifts": recent_gifts,
        },
    }
