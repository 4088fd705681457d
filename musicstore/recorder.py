from musicstore.executor import ChargeResult
from musicstore.models import Order
from musicstore.schemas import OrderPayload

ORDER_COMPLETED = "completed"


class OrderRecorder:
    def __init__(self, orders):
        self.orders = orders

    def record(self, payload: OrderPayload, charge: ChargeResult, intent_id: str) -> Order:
        """Persist the order for a confirmed charge.

        Raises OrderPersistFailure if the store rejects the write.
        """
        if not charge.charge_id:
            raise ValueError("an order can only be recorded for a confirmed charge")
        order = Order(
            customer_id=payload.customer_id,
            product_id=payload.product_id,
            price=charge.amount,
            currency=charge.currency,
            status=ORDER_COMPLETED,
            charge_id=charge.charge_id,
            intent_id=intent_id,
        )
        return self.orders.add(order)
