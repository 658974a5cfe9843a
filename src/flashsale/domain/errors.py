"""
Taxonomie des refus du moteur de ventes flash.

Chaque refus est une issue attendue et récupérable : il porte un `code`
stable que la vitrine utilise pour choisir l'affichage ("épuisé",
"vente pas encore commencée", "limite atteinte", "réessayez"...),
et un dictionnaire `details()` sérialisable en JSON.

Les erreurs d'infrastructure (base injoignable, etc.) ne font PAS
partie de cette hiérarchie : elles remontent telles quelles.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class SaleError(Exception):
    """Classe de base de tous les refus métier."""

    code = "sale_error"

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self), **self.details()}


class InvalidRequest(SaleError):
    """Requête mal formée (quantité, identifiants, dates...)."""

    code = "invalid_request"


class NotFound(SaleError):
    """Vente ou allocation inconnue."""

    code = "not_found"


class Conflict(SaleError):
    """Action opérateur incompatible avec l'état de la vente."""

    code = "conflict"


class SaleNotActive(SaleError):
    """
    La vente n'est pas dans sa fenêtre active.

    `reason` distingue "not_started", "ended" et "cancelled" ;
    les bornes sont renvoyées pour afficher un compte à rebours.
    """

    code = "sale_not_active"

    def __init__(
        self,
        sale_id: str,
        status: str,
        reason: str,
        start_time: datetime,
        end_time: datetime,
    ):
        self.sale_id = sale_id
        self.status = status
        self.reason = reason
        self.start_time = start_time
        self.end_time = end_time
        super().__init__(f"La vente {sale_id} n'est pas active ({reason})")

    def details(self) -> dict[str, Any]:
        return {
            "sale_id": self.sale_id,
            "status": self.status,
            "reason": self.reason,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
        }


class InsufficientStock(SaleError):
    code = "insufficient_stock"

    def __init__(self, allocation_id: str, requested: int, remaining: int):
        self.allocation_id = allocation_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Stock insuffisant pour {allocation_id} : "
            f"demandé {requested}, restant {remaining}"
        )

    def details(self) -> dict[str, Any]:
        return {
            "allocation_id": self.allocation_id,
            "requested": self.requested,
            "remaining": self.remaining,
        }


class PurchaseLimitExceeded(SaleError):
    code = "purchase_limit_exceeded"

    def __init__(self, allocation_id: str, already_claimed: int, cap: int):
        self.allocation_id = allocation_id
        self.already_claimed = already_claimed
        self.cap = cap
        super().__init__(
            f"Limite d'achat atteinte pour {allocation_id} : "
            f"{already_claimed} déjà réservé(s) sur {cap}"
        )

    def details(self) -> dict[str, Any]:
        return {
            "allocation_id": self.allocation_id,
            "already_claimed": self.already_claimed,
            "cap": self.cap,
        }


class Busy(SaleError):
    """Verrou non obtenu dans le délai imparti ; le client peut réessayer."""

    code = "busy"

    def __init__(self, message: str = "Ressource occupée, réessayez", retry_after: int = 1):
        self.retry_after = retry_after
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        return {"retry_after": self.retry_after}
