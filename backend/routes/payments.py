"""
Payment endpoints.

    POST /payments/initialize        open a gateway checkout session
    GET  /payments/verify?reference= client-driven verification
    POST /payments/webhook           signed gateway push (no bearer auth)
    GET  /payments/{reference}       status lookup for the owner

The webhook answers 200 for anything it accepted or deliberately ignored,
401 for a bad signature and 409 for an amount/buyer mismatch.
"""

import logging
from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import get_gateway
from domain.actors import Actor
from domain.responses import success_response
from middleware.auth import require_actor
from services import payment_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


class InitializePaymentRequest(BaseModel):
    amount: int = Field(..., ge=0)
    email: str = Field(..., min_length=3, max_length=200)
    order_ids: list[int] | None = Field(default=None, alias="orderIds")
    checkout_batch_id: str | None = Field(default=None, alias="checkoutBatchId")


@router.post("/initialize")
async def initialize_payment(
    request: InitializePaymentRequest,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_gateway),
):
    payment = await payment_service.initiate(
        db,
        buyer_id=actor.actor_id,
        amount=request.amount,
        email=request.email,
        order_ids=request.order_ids,
        batch_id=request.checkout_batch_id,
        gateway=gateway,
    )
    return success_response(
        data={
            "reference": payment.reference,
            "authorizationUrl": payment.authorization_url,
            "accessCode": payment.access_code,
            "amount": payment.amount,
            "currency": payment.currency,
            "orderIds": payment.order_ids,
        }
    )


@router.get("/verify")
async def verify_payment(
    reference: str = Query(..., min_length=1, max_length=100),
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_gateway),
):
    outcome = await payment_service.verify(
        db, reference=reference, buyer_id=actor.actor_id, gateway=gateway
    )
    return success_response(data=outcome.model_dump(mode="json"))


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_paystack_signature: str | None = Header(None, alias="x-paystack-signature"),
    db: AsyncSession = Depends(get_db),
):
    raw_body = await request.body()
    outcome = await payment_service.handle_webhook(db, raw_body=raw_body, signature=x_paystack_signature)
    return success_response(
        data={
            "received": True,
            "processed": outcome is not None,
            "alreadyVerified": bool(outcome and outcome.already_verified),
        }
    )


@router.get("/{reference}")
async def get_payment(
    reference: str,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    payment = await payment_service.get_payment(db, reference=reference, buyer_id=actor.actor_id)
    return success_response(data=payment.model_dump(mode="json"))
