"""
Adapter pour le cache de lecture.

Le cache n'est qu'une optimisation pour le trafic de la vitrine :
aucune vérification de stock ne le consulte. Il est passé
explicitement aux views et aux handlers d'invalidation.

Conventions de clés :
- `flash_sales:active`    liste des ventes en cours (TTL court)
- `flash_sales:upcoming`  ventes programmées à venir
- `flash_sale:<id>`       détail d'une vente
- `flash_sale:<id>:products:<page>:<limit>:<sort>`  pages de produits,
  rattachées à la clé de détail de leur vente

Remplissage conditionnel : une view lit la génération de la clé avant
d'interroger la base, et ne remplit le cache que si aucune invalidation
n'est passée entre-temps. Une invalidation incrémente la génération
(`<clé>:gen`) et supprime la clé ainsi que les clés rattachées.
"""

from __future__ import annotations

import abc
import json
import logging
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

ACTIVE_SALES_KEY = "flash_sales:active"
UPCOMING_SALES_KEY = "flash_sales:upcoming"

# Les compteurs de génération survivent largement au TTL des entrées.
GENERATION_TTL = 24 * 3600


def sale_key(sale_id: str) -> str:
    return f"flash_sale:{sale_id}"


def sale_products_key(sale_id: str, page: int, limit: int, sort: str) -> str:
    return f"{sale_key(sale_id)}:products:{page}:{limit}:{sort}"


def sale_keys(sale_id: str) -> tuple[str, ...]:
    """
    Toutes les clés à invalider quand une vente change.

    Les pages de produits sont rattachées à `sale_key(sale_id)` :
    l'invalider les supprime aussi.
    """
    return (ACTIVE_SALES_KEY, UPCOMING_SALES_KEY, sale_key(sale_id))


def generation_key(key: str) -> str:
    return f"{key}:gen"


def members_key(key: str) -> str:
    return f"{key}:members"


class AbstractCache(abc.ABC):
    """
    Interface abstraite : valeurs JSON, expiration en secondes.

    `set` ne remplit que si la génération de `guard` (par défaut la
    clé elle-même) vaut encore `generation` ; une clé gardée par une
    autre clé est supprimée avec elle.
    """

    @abc.abstractmethod
    def generation(self, key: str) -> Optional[int]:
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    @abc.abstractmethod
    def set(
        self,
        key: str,
        value: Any,
        ttl: int,
        generation: Optional[int],
        guard: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, *keys: str) -> None:
        raise NotImplementedError


class RedisCache(AbstractCache):
    """
    Implémentation Redis (GET / SETEX sous WATCH / INCR + DEL).

    Une panne de Redis dégrade la vitrine en lecture directe
    sur la base : les erreurs sont loggées, pas propagées.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    def generation(self, key: str) -> Optional[int]:
        try:
            raw = self.client.get(generation_key(key))
        except redis.RedisError:
            logger.warning("Lecture de génération impossible : %s", key, exc_info=True)
            return None
        return int(raw) if raw is not None else 0

    def get(self, key: str) -> Any | None:
        try:
            raw = self.client.get(key)
        except redis.RedisError:
            logger.warning("Lecture du cache impossible : %s", key, exc_info=True)
            return None
        if raw is None:
            return None
        return json.loads(raw)

    def set(
        self,
        key: str,
        value: Any,
        ttl: int,
        generation: Optional[int],
        guard: Optional[str] = None,
    ) -> None:
        # Génération inconnue : impossible de garantir la fraîcheur.
        if generation is None:
            return
        guard = guard or key
        payload = json.dumps(value, default=str)
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(generation_key(guard))
                raw = pipe.get(generation_key(guard))
                if (int(raw) if raw is not None else 0) != generation:
                    pipe.unwatch()
                    logger.debug("Remplissage abandonné, %s invalidée entre-temps", key)
                    return
                pipe.multi()
                pipe.setex(key, ttl, payload)
                if guard != key:
                    pipe.sadd(members_key(guard), key)
                    pipe.expire(members_key(guard), GENERATION_TTL)
                pipe.execute()
        except redis.WatchError:
            logger.debug("Remplissage abandonné, %s invalidée pendant l'écriture", key)
        except redis.RedisError:
            logger.warning("Écriture du cache impossible : %s", key, exc_info=True)

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            # La génération passe d'abord : tout remplissage lancé avant
            # échoue, tout rattachement déjà fait est visible ci-dessous.
            with self.client.pipeline() as pipe:
                for key in keys:
                    pipe.incr(generation_key(key))
                    pipe.expire(generation_key(key), GENERATION_TTL)
                pipe.execute()
            attached = [
                member
                for key in keys
                for member in self.client.smembers(members_key(key))
            ]
            self.client.delete(*keys, *attached, *(members_key(key) for key in keys))
        except redis.RedisError:
            logger.warning("Invalidation du cache impossible : %s", keys, exc_info=True)
