"""SQLAlchemy-backed collaborators of the checkout workflow.

Each store commits its own writes and rolls the session back on failure, so
a failed order write never leaves the session unusable for the intent update
that follows it.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from musicstore.config import CHARGE_LEASE_SECONDS
from musicstore.errors import (
    IdempotencyInProgress,
    IdempotencyKeyConflict,
    OrderPersistFailure,
    StoreUnavailable,
    VaultUnavailable,
)
from musicstore.models import ChargeIntent, Customer, IntentStatus, Order, utcnow
from musicstore.schemas import CheckoutRequest

logger = logging.getLogger(__name__)


class SqlVault:
    """Customer id -> vaulted Stripe customer reference."""

    def __init__(self, db: Session):
        self.db = db

    def find(self, customer_id: int) -> Optional[str]:
        try:
            customer = self.db.get(Customer, customer_id)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise VaultUnavailable(str(exc)) from exc
        if customer is None:
            return None
        return customer.cc_customer_id

    def save(self, customer_id: int, reference: str) -> None:
        try:
            customer = self.db.get(Customer, customer_id)
            if customer is None:
                raise VaultUnavailable(f"unknown customer {customer_id}")
            customer.cc_customer_id = reference
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise VaultUnavailable(str(exc)) from exc


class SqlOrderStore:
    def __init__(self, db: Session):
        self.db = db

    def add(self, order: Order) -> Order:
        try:
            # a previous attempt may have written the order but not the intent
            existing = self.db.query(Order).filter_by(intent_id=order.intent_id).first()
            if existing is not None:
                return existing
            self.db.add(order)
            self.db.commit()
            self.db.refresh(order)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise OrderPersistFailure(str(exc)) from exc
        return order

    def for_customer(self, customer_id: int) -> List[Order]:
        return (
            self.db.query(Order)
            .filter_by(customer_id=customer_id)
            .order_by(Order.purchase_date.desc(), Order.id.desc())
            .all()
        )


class SqlIntentStore:
    """Charge intents keyed by idempotency key.

    Status only moves forward: ``charging`` is held by one request at a time,
    and ``charged``/``recorded`` are never rolled back. Transitions are
    conditional UPDATEs, so two sessions racing on the same key cannot both
    win.
    """

    def __init__(self, db: Session, lease: timedelta = timedelta(seconds=CHARGE_LEASE_SECONDS)):
        self.db = db
        self.lease = lease

    def begin(self, intent_id: str, request: CheckoutRequest) -> ChargeIntent:
        """Load the intent for ``intent_id`` or create it, and claim it.

        A new intent is created already claimed (``charging``). An existing
        one is claimed when it is ``pending``, ``failed`` or a ``charging``
        claim whose lease ran out; a failed intent is reopened under a new
        attempt number so the next gateway call does not replay the declined
        one. ``charged`` and ``recorded`` intents are returned unclaimed, they
        never reach the gateway again.

        Raises ``IdempotencyInProgress`` when another request holds the claim.
        """
        fingerprint = request.fingerprint()
        try:
            intent = self.db.get(ChargeIntent, intent_id)
            if intent is None:
                intent = ChargeIntent(
                    id=intent_id,
                    customer_id=request.customer_id,
                    amount=request.price,
                    currency=request.currency,
                    fingerprint=fingerprint,
                    payload=request.order_payload().model_dump_json(),
                    status=IntentStatus.CHARGING,
                    attempt=1,
                )
                self.db.add(intent)
                self.db.commit()
                return intent
            if intent.fingerprint != fingerprint:
                raise IdempotencyKeyConflict()
            if intent.status in (IntentStatus.CHARGED, IntentStatus.RECORDED):
                return intent
            if not self._claim(intent_id):
                raise IdempotencyInProgress()
            return intent
        except IntegrityError as exc:
            self.db.rollback()
            raise IdempotencyInProgress() from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreUnavailable(str(exc)) from exc

    def _claim(self, intent_id: str) -> bool:
        now = utcnow()
        query = self.db.query(ChargeIntent).filter(ChargeIntent.id == intent_id)
        reopened = query.filter(ChargeIntent.status == IntentStatus.FAILED).update(
            {
                "status": IntentStatus.CHARGING,
                "attempt": ChargeIntent.attempt + 1,
                "reference": None,
                "last_error": None,
                "updated_at": now,
            },
            synchronize_session=False,
        )
        claimed = reopened or query.filter(
            or_(
                ChargeIntent.status == IntentStatus.PENDING,
                and_(
                    ChargeIntent.status == IntentStatus.CHARGING,
                    ChargeIntent.updated_at <= now - self.lease,
                ),
            )
        ).update(
            {"status": IntentStatus.CHARGING, "updated_at": now},
            synchronize_session=False,
        )
        self.db.commit()
        return claimed == 1

    def set_reference(self, intent: ChargeIntent, reference: str) -> None:
        """Pin the Stripe customer before the first gateway call of an attempt."""
        if not self._transition(intent, (IntentStatus.CHARGING,), reference=reference):
            raise IdempotencyInProgress()

    def mark_charged(self, intent: ChargeIntent, charge_id: str) -> bool:
        return self._transition(
            intent, (IntentStatus.PENDING, IntentStatus.CHARGING),
            status=IntentStatus.CHARGED, charge_id=charge_id,
        )

    def mark_recorded(self, intent: ChargeIntent, order_id: int) -> bool:
        return self._transition(
            intent, (IntentStatus.CHARGING, IntentStatus.CHARGED, IntentStatus.RECORDED),
            status=IntentStatus.RECORDED, order_id=order_id, last_error=None,
        )

    def mark_failed(self, intent: ChargeIntent, error: str) -> bool:
        return self._transition(
            intent, (IntentStatus.PENDING, IntentStatus.CHARGING),
            status=IntentStatus.FAILED, last_error=error,
        )

    def release(self, intent: ChargeIntent, error: str) -> bool:
        """Give up the claim without closing the attempt, the outcome is not known."""
        return self._transition(
            intent, (IntentStatus.CHARGING,),
            status=IntentStatus.PENDING, last_error=error,
        )

    def stuck(self, cutoff: datetime) -> List[ChargeIntent]:
        try:
            return (
                self.db.query(ChargeIntent)
                .filter(ChargeIntent.status.in_([
                    IntentStatus.PENDING, IntentStatus.CHARGING, IntentStatus.CHARGED,
                ]))
                .filter(ChargeIntent.updated_at <= cutoff)
                .order_by(ChargeIntent.updated_at)
                .all()
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreUnavailable(str(exc)) from exc

    def _transition(self, intent: ChargeIntent, allowed, **fields) -> bool:
        intent_id = intent.id
        fields["updated_at"] = utcnow()
        try:
            updated = (
                self.db.query(ChargeIntent)
                .filter(ChargeIntent.id == intent_id, ChargeIntent.status.in_(allowed))
                .update(fields, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreUnavailable(str(exc)) from exc
        if not updated:
            logger.warning("intent %s: status no longer one of %s, %s not applied",
                           intent_id, allowed, sorted(fields))
        return updated == 1
