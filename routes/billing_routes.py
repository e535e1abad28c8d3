from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from db.config import get_mysql_session
from models.schemas import (
    CaptureResponse,
    DepositHandleResponse,
    DepositRequest,
    TransactionPage,
    TransactionResponse,
)
from providers.paypal import get_payment_client
from services.billing_service import BillingService
from services.exceptions import PaymentError

router = APIRouter(prefix="/billing", tags=["Billing"])


def get_billing_service(
    session: Session = Depends(get_mysql_session),
    payment=Depends(get_payment_client)
) -> BillingService:
    return BillingService(session, payment=payment)


@router.post(
    "/{account_id}/deposit",
    response_model=DepositHandleResponse,
    summary="Start a deposit",
    description="Creates a payment order the customer approves with the payment provider"
)
async def initiate_deposit(
    account_id: int,
    request: DepositRequest,
    service: BillingService = Depends(get_billing_service)
):
    try:
        return await service.initiate_deposit(account_id, request.amount_cents, request.currency)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except PaymentError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Payment failed: {e}"
        )


@router.post(
    "/{account_id}/capture/{order_id}",
    response_model=CaptureResponse,
    summary="Capture a deposit",
    description="Captures an approved payment and credits the balance"
)
async def capture_deposit(
    account_id: int,
    order_id: str,
    service: BillingService = Depends(get_billing_service)
):
    try:
        tx = await service.capture_deposit(account_id, order_id)
    except PaymentError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Payment failed: {e}"
        )
    return {"success": True, "transaction": TransactionResponse.model_validate(tx)}


@router.get(
    "/{account_id}/transactions",
    response_model=TransactionPage,
    summary="List transactions",
    description="Newest first, paginated, optionally limited to [date_from, date_to)"
)
def list_transactions(
    account_id: int,
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    service: BillingService = Depends(get_billing_service)
):
    return service.list_transactions(account_id, page, page_size, date_from, date_to)
