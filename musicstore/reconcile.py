"""Out-of-band repair of charge intents that never reached ``recorded``.

* ``charged`` intents: the card was billed, write the missing order.
* ``pending`` intents, and ``charging`` ones whose request never came back,
  older than the cutoff: ask Stripe whether a charge tagged with the intent id
  exists. If so, treat it as ``charged``; otherwise nothing was billed and the
  intent is closed as failed.

Run periodically, e.g. ``musicstore-reconcile --older-than 600`` from cron.
"""
import argparse
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from musicstore.config import RECONCILE_AFTER_SECONDS
from musicstore.database import Base, SessionLocal, engine
from musicstore.errors import GatewayUnavailable, OrderPersistFailure, StoreUnavailable
from musicstore.executor import ChargeResult
from musicstore.logging_config import configure_logging
from musicstore.models import ChargeIntent, IntentStatus, utcnow
from musicstore.recorder import OrderRecorder
from musicstore.repository import SqlIntentStore, SqlOrderStore
from musicstore.schemas import OrderPayload
from musicstore.stripe_service import StripeGateway

logger = logging.getLogger(__name__)

ABANDONED = "abandoned"


@dataclass
class ReconcileReport:
    recorded: int = 0
    abandoned: int = 0
    unresolved: int = 0


class Reconciler:
    def __init__(self, intents: SqlIntentStore, recorder: OrderRecorder, gateway,
                 older_than: timedelta = timedelta(seconds=RECONCILE_AFTER_SECONDS)):
        self.intents = intents
        self.recorder = recorder
        self.gateway = gateway
        self.older_than = older_than

    def run(self, now: Optional[datetime] = None) -> ReconcileReport:
        report = ReconcileReport()
        cutoff = (now or utcnow()) - self.older_than
        for intent in self.intents.stuck(cutoff):
            intent_id = intent.id
            try:
                self._reconcile(intent, report)
            except (GatewayUnavailable, OrderPersistFailure, StoreUnavailable) as exc:
                logger.error("intent %s still unreconciled: %s", intent_id, exc)
                report.unresolved += 1
        logger.info("reconciliation done: %s", report)
        return report

    def _reconcile(self, intent: ChargeIntent, report: ReconcileReport) -> None:
        if intent.status in (IntentStatus.PENDING, IntentStatus.CHARGING):
            charge_id = self.gateway.find_charge(intent.id)
            if charge_id is None:
                logger.info("intent %s: no charge found at gateway, closing", intent.id)
                if self.intents.mark_failed(intent, ABANDONED):
                    report.abandoned += 1
                return
            if not self.intents.mark_charged(intent, charge_id):
                # a live checkout moved it meanwhile
                return

        payload = OrderPayload.model_validate_json(intent.payload)
        charge = ChargeResult(charge_id=intent.charge_id, amount=intent.amount,
                              currency=intent.currency)
        order = self.recorder.record(payload, charge, intent.id)
        self.intents.mark_recorded(intent, order.id)
        logger.info("intent %s: recorded order %s for charge %s",
                    intent.id, order.id, intent.charge_id)
        report.recorded += 1


def main(argv=None):
    parser = argparse.ArgumentParser(description="Reconcile stuck checkout intents")
    parser.add_argument("--older-than", type=int, default=RECONCILE_AFTER_SECONDS,
                        help="only touch intents idle for this many seconds")
    args = parser.parse_args(argv)

    configure_logging()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        reconciler = Reconciler(
            SqlIntentStore(db),
            OrderRecorder(SqlOrderStore(db)),
            StripeGateway(),
            older_than=timedelta(seconds=args.older_than),
        )
        report = reconciler.run()
    finally:
        db.close()
    return 1 if report.unresolved else 0


if __name__ == "__main__":
    raise SystemExit(main())
