import logging
from dataclasses import dataclass, field
from typing import List

from musicstore.errors import NoStoredPaymentMethod, VaultUnavailable
from musicstore.schemas import CheckoutRequest

logger = logging.getLogger(__name__)

CARD_NOT_REMEMBERED = "card_not_remembered"


@dataclass
class Resolution:
    reference: str
    from_vault: bool
    # set when the caller asked to remember a freshly minted reference
    remember: bool = False
    warnings: List[str] = field(default_factory=list)


class PaymentMethodResolver:
    """Picks the Stripe customer reference a checkout is charged against.

    ``useExisting`` wins over a supplied token: the token is ignored and the
    vaulted reference is used.
    """

    def __init__(self, vault, gateway):
        self.vault = vault
        self.gateway = gateway

    def resolve(self, request: CheckoutRequest) -> Resolution:
        if request.use_existing:
            if request.token:
                logger.info("customer %s: useExisting set, ignoring supplied token",
                            request.customer_id)
            reference = self.vault.find(request.customer_id)
            if not reference:
                raise NoStoredPaymentMethod()
            return Resolution(reference=reference, from_vault=True)

        reference = self.gateway.create_customer_from_token(request.token)
        return Resolution(reference=reference, from_vault=False, remember=request.remember)

    def resume(self, request: CheckoutRequest, reference: str) -> Resolution:
        """Rebuild the resolution of an earlier attempt from its pinned reference.

        No vault read and no new Stripe customer: the replayed charge must carry
        the same parameters as the attempt it repeats.
        """
        if request.use_existing:
            return Resolution(reference=reference, from_vault=True)
        return Resolution(reference=reference, from_vault=False, remember=request.remember)

    def remember(self, customer_id: int, resolution: Resolution) -> None:
        """Vault a new reference once it has been charged successfully.

        Best effort: a failed write becomes a warning on the resolution.
        """
        if not resolution.remember or resolution.from_vault:
            return
        try:
            self.vault.save(customer_id, resolution.reference)
        except VaultUnavailable as exc:
            logger.warning("customer %s: could not remember card %s: %s",
                           customer_id, resolution.reference, exc)
            resolution.warnings.append(CARD_NOT_REMEMBERED)
