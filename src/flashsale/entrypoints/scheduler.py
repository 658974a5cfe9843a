"""
Scheduler du cycle de vie des ventes.

Tâche périodique qui fait avancer les ventes selon l'horloge murale :
    scheduled -> active   (début atteint)
    active    -> ended    (fin atteinte)

Les transitions sont idempotentes et dérivées des horodatages en base :
un tick manqué ou un scheduler redémarré rattrape au tick suivant.

    python -m flashsale.entrypoints.scheduler
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Optional

from flashsale import config
from flashsale.domain import commands
from flashsale.service_layer import bootstrap, messagebus

logger = logging.getLogger(__name__)


def tick(bus: messagebus.MessageBus, now: Optional[datetime] = None) -> None:
    """Un passage : activation puis clôture, au même instant de référence."""
    if now is None:
        now = bus.dependencies.get("clock", bootstrap.utc_now)()
    bus.handle(commands.PromoteScheduledSales(now=now))
    bus.handle(commands.CloseExpiredSales(now=now))


def run(
    bus: messagebus.MessageBus,
    interval: float,
    stop_event: threading.Event,
) -> None:
    """
    Boucle jusqu'à ce que `stop_event` soit positionné.

    Un tick en échec est loggé ; le suivant reprend depuis la base.
    """
    logger.info("Scheduler démarré (intervalle %.0fs)", interval)
    while not stop_event.is_set():
        try:
            tick(bus)
        except Exception:
            logger.exception("Échec du tick du scheduler")
        stop_event.wait(interval)
    logger.info("Scheduler arrêté")


def main() -> None:
    logging.basicConfig(level=config.get_log_level())
    bus = bootstrap.bootstrap()
    stop_event = threading.Event()
    try:
        run(bus, config.get_scheduler_interval(), stop_event)
    except KeyboardInterrupt:
        stop_event.set()


if __name__ == "__main__":
    main()
