"""
Adapter pour les notifications.

Le dispatcher de notifications est un collaborateur externe :
c'est lui qui retrouve les acheteurs intéressés (listes d'envies,
"sauvegardé pour plus tard") et leur envoie le message.
Le moteur se contente de publier l'ouverture de la vente.
"""

from __future__ import annotations

import abc
import json
import logging

import redis

logger = logging.getLogger(__name__)


class AbstractNotifications(abc.ABC):
    """Interface abstraite pour les notifications."""

    @abc.abstractmethod
    def notify_interested_buyers(
        self, allocation_ids: tuple[str, ...], sale_title: str, message: str
    ) -> None:
        raise NotImplementedError


class RedisNotifications(AbstractNotifications):
    """Publie les ouvertures de vente sur un canal Redis pub/sub."""

    def __init__(self, client: redis.Redis, channel: str = "flash_sale_started"):
        self.client = client
        self.channel = channel

    def notify_interested_buyers(
        self, allocation_ids: tuple[str, ...], sale_title: str, message: str
    ) -> None:
        payload = {
            "type": "flash_sale",
            "allocation_ids": list(allocation_ids),
            "sale_title": sale_title,
            "message": message,
        }
        logger.debug("Publication sur %s : %s", self.channel, payload)
        self.client.publish(self.channel, json.dumps(payload))
