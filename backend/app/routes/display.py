from fastapi import APIRouter, WebSocket
from typing import Any, Dict

from app.websockets import gift_chain_hub

router = APIRouter(tags=["display"])


@router.get("/display/status", response_model=Dict[str, Any])
def get_display_status():
    """Écrans connectés et taille de l'instantané de la chaîne de cadeaux"""
    return gift_chain_hub.get_status()


@router.websocket("/ws/gift-chain")
async def gift_chain_websocket(websocket: WebSocket):
    """
    Canal des écrans clients : GIFT_STATE_UPDATE à la connexion, puis chaque
    événement de la chaîne. Réseau local de confiance, pas d'authentification.
    """
    await gift_chain_hub.handle_connection(websocket)
