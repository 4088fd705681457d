"""Checkout state machine.

    start -> resolving_method -> charging -> recording_order -> completed

``failed`` is reachable from every non-terminal state. ``charged_but_unrecorded``
is only reachable from ``recording_order``: the card was billed but the order
row could not be written, so the caller must not report a decline and the
intent stays in ``charged`` for the reconciler.

Every checkout is tied to a charge intent keyed by the idempotency key. The
intent is claimed before the gateway is called and moved to ``charged`` before
the order is written, so a retry with the same key never bills twice.

The Stripe customer of an attempt is pinned on the intent before charging.
When a later request picks up an attempt whose outcome is unknown, it first
searches Stripe for a charge tagged with the intent id, and only then replays
the charge with the same key and the same pinned customer. A replay that
errors leaves the intent open; only a decline closes it.
"""
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from musicstore.config import CHARGE_DESCRIPTION
from musicstore.errors import (
    ChargeDeclined,
    ChargeOutcomeUnknown,
    CheckoutError,
    IdempotencyInProgress,
    OrderPersistFailure,
    StoreUnavailable,
    ValidationError,
)
from musicstore.executor import ChargeExecutor, ChargeResult, validate_amount
from musicstore.models import IntentStatus, Order
from musicstore.recorder import OrderRecorder
from musicstore.repository import SqlIntentStore, SqlOrderStore, SqlVault
from musicstore.resolver import PaymentMethodResolver
from musicstore.schemas import CheckoutRequest

logger = logging.getLogger(__name__)


class CheckoutState(str, Enum):
    START = "start"
    RESOLVING_METHOD = "resolving_method"
    CHARGING = "charging"
    RECORDING_ORDER = "recording_order"
    COMPLETED = "completed"
    FAILED = "failed"
    CHARGED_BUT_UNRECORDED = "charged_but_unrecorded"


@dataclass
class CheckoutOutcome:
    intent_id: str
    state: CheckoutState = CheckoutState.START
    history: List[CheckoutState] = field(default_factory=lambda: [CheckoutState.START])
    order: Optional[Order] = None
    charge_id: Optional[str] = None
    error: Optional[CheckoutError] = None
    warnings: List[str] = field(default_factory=list)

    def enter(self, state: CheckoutState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, error: CheckoutError) -> "CheckoutOutcome":
        self.error = error
        self.enter(CheckoutState.FAILED)
        return self


class CheckoutOrchestrator:
    def __init__(self, resolver: PaymentMethodResolver, executor: ChargeExecutor,
                 recorder: OrderRecorder, intents: SqlIntentStore,
                 description: str = CHARGE_DESCRIPTION):
        self.resolver = resolver
        self.executor = executor
        self.recorder = recorder
        self.intents = intents
        self.description = description

    @classmethod
    def for_session(cls, db, gateway) -> "CheckoutOrchestrator":
        vault = SqlVault(db)
        return cls(
            resolver=PaymentMethodResolver(vault, gateway),
            executor=ChargeExecutor(gateway),
            recorder=OrderRecorder(SqlOrderStore(db)),
            intents=SqlIntentStore(db),
        )

    def checkout(self, request: CheckoutRequest) -> CheckoutOutcome:
        outcome = CheckoutOutcome(intent_id=request.idempotency_key or uuid.uuid4().hex)

        try:
            validate_request(request)
            intent = self.intents.begin(outcome.intent_id, request)
        except CheckoutError as exc:
            return outcome.fail(exc)

        if intent.status in (IntentStatus.CHARGED, IntentStatus.RECORDED):
            logger.info("intent %s already charged (%s), skipping gateway",
                        outcome.intent_id, intent.charge_id)
            charge = ChargeResult(charge_id=intent.charge_id, amount=intent.amount,
                                  currency=intent.currency)
            return self._record(outcome, intent, request, charge)

        # a pinned reference means an earlier claim of this attempt reached the gateway
        replay = intent.reference is not None

        outcome.enter(CheckoutState.RESOLVING_METHOD)
        if replay:
            resolution = self.resolver.resume(request, intent.reference)
        else:
            try:
                resolution = self.resolver.resolve(request)
                self.intents.set_reference(intent, resolution.reference)
            except IdempotencyInProgress as exc:
                return outcome.fail(exc)
            except CheckoutError as exc:
                self._close_failed(intent, outcome.intent_id, exc)
                return outcome.fail(exc)

        outcome.enter(CheckoutState.CHARGING)
        try:
            charge = None
            if replay:
                charge = self.executor.find_previous(outcome.intent_id, request.price,
                                                     request.currency)
            if charge is None:
                charge = self.executor.execute(
                    request.price,
                    request.currency,
                    request.description or self.description,
                    resolution.reference,
                    idempotency_key=intent.gateway_key,
                    metadata={"intent_id": outcome.intent_id,
                              "customer_id": str(request.customer_id)},
                )
            else:
                logger.info("intent %s: found earlier charge %s at gateway",
                            outcome.intent_id, charge.charge_id)
        except ChargeOutcomeUnknown as exc:
            # a retry replays the same gateway key
            self._release(intent, outcome.intent_id, exc)
            return outcome.fail(exc)
        except CheckoutError as exc:
            if replay and not isinstance(exc, ChargeDeclined):
                # the earlier attempt may still have billed the card
                self._release(intent, outcome.intent_id, exc)
            else:
                self._close_failed(intent, outcome.intent_id, exc)
            return outcome.fail(exc)

        outcome.charge_id = charge.charge_id
        try:
            self.intents.mark_charged(intent, charge.charge_id)
        except StoreUnavailable as exc:
            logger.critical("intent %s: charge %s succeeded but intent not marked charged: %s",
                            outcome.intent_id, charge.charge_id, exc)

        self.resolver.remember(request.customer_id, resolution)
        outcome.warnings.extend(resolution.warnings)
        return self._record(outcome, intent, request, charge)

    def _record(self, outcome, intent, request, charge) -> CheckoutOutcome:
        outcome.charge_id = charge.charge_id
        outcome.enter(CheckoutState.RECORDING_ORDER)
        try:
            order = self.recorder.record(request.order_payload(), charge, outcome.intent_id)
        except OrderPersistFailure as exc:
            logger.error("intent %s: charge %s captured but order not recorded, "
                         "needs reconciliation: %s", outcome.intent_id, charge.charge_id, exc)
            outcome.error = exc
            outcome.enter(CheckoutState.CHARGED_BUT_UNRECORDED)
            return outcome

        try:
            self.intents.mark_recorded(intent, order.id)
        except StoreUnavailable as exc:
            # the order row carries the intent id, the reconciler will close it
            logger.warning("intent %s: order %s saved but intent not closed: %s",
                           outcome.intent_id, order.id, exc)

        outcome.order = order
        outcome.enter(CheckoutState.COMPLETED)
        return outcome

    def _close_failed(self, intent, intent_id, error):
        try:
            self.intents.mark_failed(intent, error.code)
        except StoreUnavailable as exc:
            logger.warning("intent %s: could not mark failed: %s", intent_id, exc)

    def _release(self, intent, intent_id, error):
        try:
            self.intents.release(intent, error.code)
        except StoreUnavailable as exc:
            logger.warning("intent %s: could not release after %s: %s",
                           intent_id, error.code, exc)


def validate_request(request: CheckoutRequest) -> None:
    """Local checks, run before any collaborator is touched."""
    validate_amount(request.price)
    if not request.use_existing and not request.token:
        raise ValidationError("token is required unless useExisting is set")
