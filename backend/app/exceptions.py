"""
Erreurs métier de la chaîne de cadeaux.

Les routes les traduisent en codes HTTP (404 / 409 / 422) ; le handler
post-paiement les attrape et les journalise sans jamais les remonter.
"""


class GiftError(Exception):
    """Base des erreurs de la chaîne de cadeaux."""

    pass


class GiftNotFoundError(GiftError):
    """Cadeau (ou cadeau parent) introuvable."""

    def __init__(self, gift_unit_id: str):
        self.gift_unit_id = gift_unit_id
        super().__init__(f"Cadeau {gift_unit_id} introuvable")


class GiftInvalidStateError(GiftError, ValueError):
    """Réclamation d'un cadeau qui n'est plus AVAILABLE."""

    def __init__(self, gift_unit_id: str, status: str):
        self.gift_unit_id = gift_unit_id
        self.status = status
        super().__init__(f"Cadeau {gift_unit_id} non disponible (statut: {status})")


class GiftValidationError(GiftError, ValueError):
    """Entrée mal formée, rejetée avant toute écriture."""

    pass
