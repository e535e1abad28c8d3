from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from db.config import get_mysql_session
from models.schemas import (
    AccountCreateRequest,
    AccountResponse,
    BalanceResponse,
    ReconciliationResponse,
)
from services.billing_service import BillingService
from services.ledger_service import LedgerService

router = APIRouter(prefix="/accounts", tags=["Accounts"])


def get_ledger_service(session: Session = Depends(get_mysql_session)) -> LedgerService:
    return LedgerService(session)


def get_billing_service(session: Session = Depends(get_mysql_session)) -> BillingService:
    return BillingService(session)


@router.post(
    "/",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create account",
    description="Creates a billable account with a zero balance"
)
def create_account(
    request: AccountCreateRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    try:
        return service.create_account(request.username, request.currency)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )


@router.get(
    "/{account_id}",
    response_model=AccountResponse,
    summary="Get account"
)
def get_account(
    account_id: int,
    service: LedgerService = Depends(get_ledger_service)
):
    return service.get_account(account_id)


@router.get(
    "/{account_id}/balance",
    response_model=BalanceResponse,
    summary="Get account balance",
    description="Current balance in cents"
)
def get_balance(
    account_id: int,
    service: LedgerService = Depends(get_ledger_service)
):
    account = service.get_account(account_id)
    return {
        "account_id": account_id,
        "balance": service.get_balance(account_id),
        "currency": account.currency
    }


@router.get(
    "/{account_id}/reconciliation",
    response_model=ReconciliationResponse,
    summary="Check balance against ledger",
    description="Compares the stored balance with the sum of completed transactions"
)
def reconcile(
    account_id: int,
    service: BillingService = Depends(get_billing_service)
):
    return service.reconcile(account_id)
