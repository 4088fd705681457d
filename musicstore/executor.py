from dataclasses import dataclass
from typing import Optional

from musicstore.errors import InvalidAmount


@dataclass(frozen=True)
class ChargeResult:
    charge_id: str
    amount: int
    currency: str


class ChargeExecutor:
    """Exactly one gateway charge per call. Retrying is the orchestrator's call."""

    def __init__(self, gateway):
        self.gateway = gateway

    def execute(self, amount, currency, description, reference,
                idempotency_key=None, metadata=None) -> ChargeResult:
        validate_amount(amount)
        charge_id = self.gateway.charge(
            amount, currency, description, reference,
            idempotency_key=idempotency_key, metadata=metadata,
        )
        return ChargeResult(charge_id=charge_id, amount=amount, currency=currency)

    def find_previous(self, intent_id, amount, currency) -> Optional[ChargeResult]:
        """Look up a charge an earlier attempt of ``intent_id`` already made."""
        charge_id = self.gateway.find_charge(intent_id)
        if charge_id is None:
            return None
        return ChargeResult(charge_id=charge_id, amount=amount, currency=currency)


def validate_amount(amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount()
