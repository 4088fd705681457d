from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text

from musicstore.database import Base


def utcnow():
    # naive UTC, SQLite does not keep tzinfo
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True)
    name = Column(String)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)  # bcrypt
    cc_customer_id = Column(String, nullable=True)  # vaulted Stripe customer reference
    created_at = Column(DateTime, default=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, index=True, nullable=False)
    product_id = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)         # minor currency units
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False)         # completed
    charge_id = Column(String, nullable=False)      # Stripe charge ID
    intent_id = Column(String, unique=True, index=True)
    purchase_date = Column(DateTime, default=utcnow)


class IntentStatus:
    PENDING = "pending"
    CHARGING = "charging"
    CHARGED = "charged"
    RECORDED = "recorded"
    FAILED = "failed"


class ChargeIntent(Base):
    __tablename__ = "charge_intents"

    id = Column(String, primary_key=True)           # idempotency key
    customer_id = Column(Integer, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    fingerprint = Column(String, nullable=False)
    payload = Column(Text, nullable=False)          # order payload as JSON
    status = Column(String, index=True, nullable=False)  # pending | charging | charged | recorded | failed
    attempt = Column(Integer, nullable=False, default=1)
    reference = Column(String, nullable=True)       # Stripe customer the attempt is charged against
    charge_id = Column(String, nullable=True)
    order_id = Column(Integer, nullable=True)
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def gateway_key(self):
        """Idempotency key forwarded to Stripe for the current attempt."""
        return f"{self.id}:{self.attempt}"
