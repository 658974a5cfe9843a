"""
Configuration de l'application.

Ce module se contente de lire les variables d'environnement.
Toutes les valeurs par défaut conviennent au développement local ;
en production on les surcharge par l'environnement.

Seul le bootstrap (et les entrypoints) lisent la configuration :
les handlers reçoivent les valeurs par injection de dépendances.
"""

from __future__ import annotations

import os


def get_database_uri() -> str:
    return os.environ.get("FLASHSALE_DATABASE_URI", "sqlite:///flashsale.db")


def get_redis_url() -> str:
    return os.environ.get("FLASHSALE_REDIS_URL", "redis://localhost:6379/0")


# Durée de vie (secondes) des entrées du cache de lecture.
def get_cache_ttl() -> int:
    return int(os.environ.get("FLASHSALE_CACHE_TTL", "30"))


# Nombre maximum d'unités d'une allocation qu'un acheteur peut réserver.
def get_purchase_limit() -> int:
    return int(os.environ.get("FLASHSALE_PURCHASE_LIMIT", "2"))


# Attente maximale (secondes) d'un verrou de ligne avant de répondre Busy.
def get_lock_timeout() -> float:
    return float(os.environ.get("FLASHSALE_LOCK_TIMEOUT", "2.0"))


def get_scheduler_interval() -> float:
    return float(os.environ.get("FLASHSALE_SCHEDULER_INTERVAL", "60"))


def get_notifications_channel() -> str:
    return os.environ.get("FLASHSALE_NOTIFICATIONS_CHANNEL", "flash_sale_started")


def get_log_level() -> str:
    return os.environ.get("FLASHSALE_LOG_LEVEL", "INFO").upper()
