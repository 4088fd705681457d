import hashlib
import json
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from musicstore.config import CHARGE_CURRENCY


class OrderPayload(BaseModel):
    customer_id: int
    product_id: int
    price: int                                  # minor currency units
    currency: str = CHARGE_CURRENCY
    description: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        value = value.strip().lower()
        if len(value) != 3 or not value.isalpha():
            raise ValueError("currency must be a three letter ISO code")
        return value


class CheckoutRequest(OrderPayload):
    """Wire shape of ``POST /users/charge``.

    Amount and payment-source invariants are checked by the orchestrator, so a
    bad request is reported with its own error code instead of a generic 422.
    """

    model_config = ConfigDict(populate_by_name=True)

    remember: bool = Field(False, alias="rememberCard")
    use_existing: bool = Field(False, alias="useExisting")
    token: str = ""
    idempotency_key: Optional[str] = Field(None, alias="idempotencyKey", max_length=255)

    @field_validator("token")
    @classmethod
    def strip_token(cls, value: str) -> str:
        return value.strip()

    def order_payload(self) -> OrderPayload:
        return OrderPayload(
            customer_id=self.customer_id,
            product_id=self.product_id,
            price=self.price,
            currency=self.currency,
            description=self.description,
        )

    def fingerprint(self) -> str:
        # token is left out: a client may re-tokenize the same card on retry
        data = self.order_payload().model_dump()
        data["use_existing"] = self.use_existing
        raw = json.dumps(data, sort_keys=True)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    product_id: int
    price: int
    currency: str
    status: str
    charge_id: str
    purchase_date: Optional[datetime] = None


class SignUpRequest(BaseModel):
    name: str
    email: str = Field(min_length=3)
    password: str = Field(min_length=8)


class CustomerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: Optional[str] = None
    email: str
