from typing import Optional

from fastapi import HTTPException, status


def credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Identifiants invalides ou token expiré",
        headers={"WWW-Authenticate": "Bearer"},
    )


def forbidden_exception(detail: str = "Accès refusé") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=detail,
    )


# ── Erreurs métier ────────────────────────────────────────────────────────────
# Chaque erreur porte un `kind` stable (lisible machine) et un message humain.
# main.py les convertit en JSON : {"error": kind, "detail": message, **extra}.

class MarketplaceError(Exception):
    kind = "marketplace_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Erreur"

    def __init__(self, message: Optional[str] = None, **extra):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message, **self.extra}


class ValidationFailed(MarketplaceError):
    kind = "validation_error"
    default_message = "Requête invalide"


# 404
class NotFoundError(MarketplaceError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Ressource introuvable"


class OrderNotFound(NotFoundError):
    kind = "order_not_found"
    default_message = "Commande introuvable"


class CourierNotFound(NotFoundError):
    kind = "courier_not_found"
    default_message = "Livreur introuvable"


class UserNotFound(NotFoundError):
    kind = "user_not_found"
    default_message = "Utilisateur introuvable"


class AssignmentNotFound(NotFoundError):
    kind = "assignment_not_found"
    default_message = "Ce livreur n'est pas affecté à la commande"


class BidNotFound(NotFoundError):
    kind = "bid_not_found"
    default_message = "Aucune offre de ce livreur pour la commande"


# 409
class InvalidStateError(MarketplaceError):
    kind = "invalid_state"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Opération impossible dans l'état actuel"


class OrderClosed(InvalidStateError):
    kind = "order_closed"
    default_message = "La commande n'accepte plus d'offres"


class QuorumAlreadyReached(InvalidStateError):
    kind = "quorum_already_reached"
    default_message = "Le nombre de livreurs requis est déjà atteint"


class DuplicateBid(InvalidStateError):
    kind = "duplicate_bid"
    default_message = "Ce livreur a déjà fait une offre sur cette commande"


class AlreadyConfirmed(InvalidStateError):
    kind = "already_confirmed"
    default_message = "Étape déjà confirmée"


class AlreadyFinalized(InvalidStateError):
    kind = "already_finalized"
    default_message = "Commande déjà réglée pour ce livreur"


class NotReadyForSettlement(InvalidStateError):
    kind = "not_ready_for_settlement"
    default_message = "Pickup et dropoff doivent être confirmés avant le règlement"


class OrderNotCancellable(InvalidStateError):
    kind = "order_not_cancellable"
    default_message = "Seule une commande ouverte sans livreur accepté peut être annulée"


# 402
class InsufficientFunds(MarketplaceError):
    kind = "insufficient_funds"
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_message = "Solde insuffisant"

    def __init__(self, message: Optional[str] = None, shortfall: float = 0.0, **extra):
        super().__init__(message, shortfall=round(shortfall, 2), **extra)
        self.shortfall = shortfall


class InsufficientCustomerFunds(InsufficientFunds):
    kind = "insufficient_customer_funds"
    default_message = "Offre impossible : fonds du client insuffisants"


# Concurrence
class ConcurrencyConflict(MarketplaceError):
    """Version du document modifiée entre lecture et écriture. Rejouée en interne."""
    kind = "concurrency_conflict"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflit d'écriture concurrente"


class Busy(MarketplaceError):
    kind = "busy"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Ressource occupée, réessayez"
