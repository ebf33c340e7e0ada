"""
HUB TEMPS-RÉEL DE LA CHAÎNE DE CADEAUX
Garde une projection en mémoire (cadeaux récents + chaînes actives) et la
diffuse à tous les écrans clients connectés. Aucun écran ne possède l'état :
un écran qui (re)arrive reçoit simplement l'instantané courant.

Limite connue : l'état est propre au process, il n'est pas partagé entre
plusieurs instances derrière un load balancer.
"""

import asyncio
import copy
import json
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect

from app.config import settings
from app.websockets.gift_chain_messages import (
    GiftChainMessageType,
    REQUEST_GIFT_STATE,
    gift_chain_continued_message,
    gift_state_update_message,
    gift_unit_claimed_message,
    gift_unit_created_message,
)

logger = logging.getLogger(__name__)

GIFT_CHAIN_TYPES = {t.value for t in GiftChainMessageType}


class GiftChainHub:
    """
    Gestionnaire des écrans connectés + réducteur d'état de la chaîne.
    Les routes synchrones tournent dans un threadpool : l'état est protégé par
    un verrou et les diffusions sont planifiées sur la boucle de l'application.
    """

    def __init__(self, recent_limit: Optional[int] = None):
        self.active_connections: Set[WebSocket] = set()
        self.connection_ids: Dict[WebSocket, str] = {}
        self.recent_limit = recent_limit or settings.GIFT_RECENT_LIMIT
        self.recent_gifts: List[Dict[str, Any]] = []
        self.active_chains: List[List[Dict[str, Any]]] = []
        self._lock = threading.RLock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending_broadcasts: Set[asyncio.Task] = set()
        self.stats = {
            "total_connections": 0,
            "messages_sent": 0,
            "messages_received": 0,
            "errors": 0,
            "started_at": datetime.utcnow().isoformat()
        }

    # ==================== CONNEXIONS ====================

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Mémoriser la boucle de l'application pour les diffusions depuis un thread."""
        self._loop = loop or asyncio.get_running_loop()

    async def connect(self, websocket: WebSocket) -> str:
        """
        Accepter un écran et lui envoyer l'instantané complet, à lui seul.
        """
        await websocket.accept()
        connection_id = str(uuid4())

        if self._loop is None:
            self.bind_loop()

        self.active_connections.add(websocket)
        self.connection_ids[websocket] = connection_id
        self.stats["total_connections"] += 1

        logger.info(f"🔌 Écran connecté (ID: {connection_id}) | Total: {len(self.active_connections)}")

        await self.send_snapshot(websocket)
        return connection_id

    def disconnect(self, websocket: WebSocket):
        connection_id = self.connection_ids.pop(websocket, "inconnu")
        self.active_connections.discard(websocket)
        logger.info(f"🔌 Écran déconnecté (ID: {connection_id}) | Restants: {len(self.active_connections)}")

    async def send_snapshot(self, websocket: WebSocket):
        snapshot = self.get_snapshot()
        message = gift_state_update_message(snapshot["activeChains"], snapshot["recentGifts"])
        await websocket.send_json(message)
        self.stats["messages_sent"] += 1

    async def broadcast_to_all(self, message: Dict) -> Dict[str, int]:
        """
        Diffuser un message à TOUS les écrans (best-effort, au plus une fois).
        """
        disconnected = []
        sent_count = 0

        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
                sent_count += 1
                self.stats["messages_sent"] += 1
            except Exception as e:
                logger.warning(f"⚠️ Erreur envoi écran: {e}")
                disconnected.append(connection)
                self.stats["errors"] += 1

        for conn in disconnected:
            self.disconnect(conn)

        logger.debug(f"📢 Broadcast {message.get('type')}: {sent_count} envoyés, {len(disconnected)} erreurs")

        return {"sent": sent_count, "errors": len(disconnected)}

    async def handle_connection(self, websocket: WebSocket):
        """
        Cycle de vie complet d'un écran : instantané initial puis boucle de messages.
        """
        connection_id = None

        try:
            connection_id = await self.connect(websocket)

            while True:
                data = await websocket.receive_text()
                self.stats["messages_received"] += 1

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    if data == "ping":
                        await websocket.send_text("pong")
                    else:
                        logger.debug(f"📨 Trame non JSON ignorée (Connexion: {connection_id})")
                    continue

                try:
                    await self._handle_client_message(websocket, message)
                except WebSocketDisconnect:
                    raise
                except Exception as e:
                    # Une trame invalide ne coupe jamais l'écran
                    logger.warning(f"⚠️ Message client ignoré (Connexion: {connection_id}): {e}")
                    self.stats["errors"] += 1

        except WebSocketDisconnect:
            logger.info(f"🔌 WebSocketDisconnect (Connexion: {connection_id})")
        except Exception as e:
            logger.error(f"❌ Erreur connexion écran (Connexion: {connection_id}): {e}")
            self.stats["errors"] += 1
        finally:
            self.disconnect(websocket)

    async def _handle_client_message(self, websocket: WebSocket, message: Any):
        if not isinstance(message, dict):
            logger.debug("📨 Message client ignoré (pas un objet)")
            return

        msg_type = message.get("type")

        if msg_type == REQUEST_GIFT_STATE:
            await self.send_snapshot(websocket)
            return

        # Réseau local de confiance : type inconnu ou payload invalide = ignoré, sans réponse
        if self.apply_message(message):
            await self.broadcast_to_all(message)
        else:
            logger.debug(f"📨 Message client non traité: {msg_type}")

    # ==================== ÉTAT ====================

    def apply_message(self, message: Dict[str, Any]) -> bool:
        """
        Appliquer un message à l'instantané local.
        Retourne False si le type est inconnu ou le payload inexploitable.
        """
        msg_type = message.get("type")
        payload = message.get("payload")

        if msg_type not in GIFT_CHAIN_TYPES or not isinstance(payload, dict):
            return False

        # Tout est vérifié avant la première écriture : pas d'instantané à moitié mis à jour
        if not self._is_valid_payload(msg_type, payload):
            logger.debug(f"📨 Payload {msg_type} invalide, ignoré")
            return False

        with self._lock:
            if msg_type == GiftChainMessageType.GIFT_UNIT_CREATED.value:
                self._add_gift(payload)

            elif msg_type == GiftChainMessageType.GIFT_UNIT_CLAIMED.value:
                self._mark_gift(payload.get("giftUnitId"), "claimedAt", payload.get("claimedAt"))

            elif msg_type == GiftChainMessageType.GIFT_CHAIN_CONTINUED.value:
                parent_id = payload.get("giftUnitId")
                self._mark_gift(parent_id, "continuedAt", payload.get("continuedAt"))
                new_gift = payload.get("newGiftUnit")
                if isinstance(new_gift, dict):
                    self._add_gift(new_gift, parent_id=parent_id)

            elif msg_type == GiftChainMessageType.GIFT_STATE_UPDATE.value:
                self.replace_state(payload.get("activeChains") or [], payload.get("recentGifts") or [])

        return True

    @staticmethod
    def _is_gift_id(value: Any) -> bool:
        return isinstance(value, str) and bool(value)

    @classmethod
    def _is_valid_gift(cls, gift: Any) -> bool:
        if not isinstance(gift, dict) or not cls._is_gift_id(gift.get("id")):
            return False
        position = gift.get("chainPosition")
        if position is None:
            return True
        return isinstance(position, int) and not isinstance(position, bool) and position >= 1

    @classmethod
    def _is_valid_payload(cls, msg_type: str, payload: Dict[str, Any]) -> bool:
        if msg_type == GiftChainMessageType.GIFT_UNIT_CREATED.value:
            return cls._is_valid_gift(payload)

        if msg_type == GiftChainMessageType.GIFT_UNIT_CLAIMED.value:
            return cls._is_gift_id(payload.get("giftUnitId"))

        if msg_type == GiftChainMessageType.GIFT_CHAIN_CONTINUED.value:
            new_gift = payload.get("newGiftUnit")
            return cls._is_gift_id(payload.get("giftUnitId")) and (
                new_gift is None or cls._is_valid_gift(new_gift)
            )

        chains = payload.get("activeChains") or []
        recent = payload.get("recentGifts") or []
        if not isinstance(chains, list) or not isinstance(recent, list):
            return False
        return (
            all(isinstance(chain, list) and all(cls._is_valid_gift(g) for g in chain) for chain in chains)
            and all(cls._is_valid_gift(g) for g in recent)
        )

    def _add_gift(self, gift: Dict[str, Any], parent_id: Optional[str] = None):
        gift = dict(gift)
        gift_id = gift.get("id")

        # Cadeaux récents : plus récent en tête, taille bornée
        for index, existing in enumerate(self.recent_gifts):
            if existing.get("id") == gift_id:
                self.recent_gifts[index] = self._merge(existing, gift)
                break
        else:
            self.recent_gifts.insert(0, gift)
            del self.recent_gifts[self.recent_limit:]

        # Déjà présent dans une chaîne (CONTINUED puis CREATED pour le même cadeau)
        for chain in self.active_chains:
            for index, existing in enumerate(chain):
                if existing.get("id") == gift_id:
                    chain[index] = self._merge(existing, gift)
                    return

        target = None
        if parent_id:
            target = next(
                (chain for chain in self.active_chains if any(g.get("id") == parent_id for g in chain)),
                None
            )

        # Approximation : on rattache au premier chaînon de position n-1, pas au vrai parent
        position = gift.get("chainPosition") or 1
        if target is None and position > 1:
            target = next(
                (chain for chain in self.active_chains
                 if any(g.get("chainPosition") == position - 1 for g in chain)),
                None
            )

        if target is not None:
            target.append(gift)
        else:
            self.active_chains.append([gift])

    def _mark_gift(self, gift_id: Optional[str], field: str, value: Any):
        if not gift_id:
            return
        for gift in self.recent_gifts:
            if gift.get("id") == gift_id:
                gift[field] = value
        for chain in self.active_chains:
            for gift in chain:
                if gift.get("id") == gift_id:
                    gift[field] = value

    @staticmethod
    def _merge(existing: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(existing)
        merged.update({k: v for k, v in update.items() if v is not None})
        return merged

    def replace_state(self, active_chains: List[List[Dict[str, Any]]], recent_gifts: List[Dict[str, Any]]):
        """Remplacer tout l'instantané (resynchronisation complète)."""
        with self._lock:
            self.active_chains = [[dict(g) for g in chain] for chain in active_chains if chain]
            self.recent_gifts = [dict(g) for g in recent_gifts][:self.recent_limit]
        logger.info(
            f"🔄 Instantané remplacé: {len(self.active_chains)} chaînes, {len(self.recent_gifts)} récents"
        )

    def get_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "activeChains": copy.deepcopy(self.active_chains),
                "recentGifts": copy.deepcopy(self.recent_gifts),
            }

    # ==================== DIFFUSION DEPUIS LES SERVICES ====================

    def publish(self, message: Dict[str, Any]):
        """
        Mettre à jour l'état puis diffuser, sans jamais bloquer l'appelant.
        Appelable depuis la boucle asyncio comme depuis un thread du threadpool.
        """
        self.apply_message(message)

        if not self.active_connections:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            # Référence forte jusqu'à la fin de la tâche
            task = loop.create_task(self.broadcast_to_all(message))
            self._pending_broadcasts.add(task)
            task.add_done_callback(self._pending_broadcasts.discard)
        elif self._loop is not None and self._loop.is_running():
            asyncio.run_coroutine_threadsafe(self.broadcast_to_all(message), self._loop)
        else:
            logger.warning(f"⚠️ Pas de boucle asyncio, diffusion {message.get('type')} ignorée")

    def broadcast_gift_created(self, gift_event: Dict[str, Any]):
        self.publish(gift_unit_created_message(gift_event))
        logger.info(f"📢 GIFT_UNIT_CREATED: {gift_event.get('id')}")

    def broadcast_gift_claimed(self, gift_unit_id: str, claimed_at: str):
        self.publish(gift_unit_claimed_message(gift_unit_id, claimed_at))
        logger.info(f"📢 GIFT_UNIT_CLAIMED: {gift_unit_id}")

    def broadcast_gift_chain_continued(self, gift_unit_id: str, continued_at: str, new_gift_event: Dict[str, Any]):
        self.publish(gift_chain_continued_message(gift_unit_id, continued_at, new_gift_event))
        logger.info(f"📢 GIFT_CHAIN_CONTINUED: {gift_unit_id} -> {new_gift_event.get('id')}")

    def get_status(self) -> Dict[str, Any]:
        """Visibilité opérationnelle (écrans connectés, taille de l'instantané)."""
        with self._lock:
            chains = len(self.active_chains)
            recent = len(self.recent_gifts)

        return {
            "connected": len(self.active_connections),
            "has_display": bool(self.active_connections),
            "active_chains": chains,
            "recent_gifts": recent,
            "total_connections": self.stats["total_connections"],
            "messages_sent": self.stats["messages_sent"],
            "messages_received": self.stats["messages_received"],
            "errors": self.stats["errors"],
            "timestamp": datetime.utcnow().isoformat()
        }


# Instance globale du hub (une par process)
gift_chain_hub = GiftChainHub()
