"""
Billing endpoints for internal callers (support tooling, admin backend).

- POST /api/billing/refunds  refund a payment intent, fully or partially
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from keyledger.core.auth import require_internal_key
from keyledger.services.refund_service import RefundService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_internal_key)])


class RefundRequest(BaseModel):
    payment_intent: str = Field(..., min_length=1, description="Stripe payment intent to refund (pi_...)")
    amount: Optional[int] = Field(default=None, gt=0, description="Minor units; omit for a full refund")
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class RefundResponse(BaseModel):
    success: bool = True
    refund_id: str
    payment_intent: str
    status: str
    amount: int
    currency: str
    payment_record_id: str


@lru_cache(maxsize=1)
def get_refund_service() -> RefundService:
    return RefundService()


@router.post("/refunds", response_model=RefundResponse)
async def create_refund(body: RefundRequest, service: RefundService = Depends(get_refund_service)):
    """Refund a charge. Stripe errors surface as KL-PAY-001 (502)."""
    result = await service.refund(body.payment_intent, body.amount, body.idempotency_key)
    return RefundResponse(
        refund_id=result.refund_id,
        payment_intent=result.payment_intent,
        status=result.status,
        amount=result.amount,
        currency=result.currency,
        payment_record_id=result.payment_record_id,
    )
