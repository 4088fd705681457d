import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from musicstore.auth import hash_password, verify_token
from musicstore.database import get_db
from musicstore.models import Customer
from musicstore.orchestrator import CheckoutOrchestrator, CheckoutState
from musicstore.repository import SqlOrderStore
from musicstore.schemas import CheckoutRequest, CustomerOut, OrderOut, SignUpRequest
from musicstore.stripe_service import StripeGateway

logger = logging.getLogger(__name__)

router = APIRouter()


def get_gateway():
    return StripeGateway()


@router.post("/users", response_model=CustomerOut)
def sign_up(request: SignUpRequest, db: Session = Depends(get_db)):
    customer = Customer(
        name=request.name,
        email=request.email.strip().lower(),
        password_hash=hash_password(request.password),
    )
    db.add(customer)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Email already registered")
    db.refresh(customer)
    return customer


@router.get("/users/{customer_id}/orders", response_model=List[OrderOut])
def get_orders(customer_id: int, db: Session = Depends(get_db), auth=Depends(verify_token)):
    return SqlOrderStore(db).for_customer(customer_id)


@router.post("/users/charge")
def charge(
    request: CheckoutRequest,
    idempotency_key: Optional[str] = Header(None, max_length=255),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    auth=Depends(verify_token),
):
    if idempotency_key and not request.idempotency_key:
        request.idempotency_key = idempotency_key

    outcome = CheckoutOrchestrator.for_session(db, gateway).checkout(request)
    logger.info("checkout %s for customer %s ended in %s",
                outcome.intent_id, request.customer_id, outcome.state.value)

    if outcome.state == CheckoutState.COMPLETED:
        body = OrderOut.model_validate(outcome.order).model_dump(mode="json")
        if outcome.warnings:
            body["warnings"] = outcome.warnings
        return body

    if outcome.state == CheckoutState.CHARGED_BUT_UNRECORDED:
        # money moved: never report this as a failure the client would retry
        return JSONResponse(status_code=202, content={
            "status": "processing",
            "idempotency_key": outcome.intent_id,
            "charge_id": outcome.charge_id,
        })

    raise HTTPException(status_code=outcome.error.http_status, detail=outcome.error.to_dict())
