import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.mysql_models import BillingTransaction, Resource
from models.schemas import ProvisionRequest, ResourceKind, TransactionKind
from services.exceptions import InsufficientBalanceError, PersistenceError, format_dollars
from services.ledger_service import LedgerService
from services.pricing import (
    MINIMUM_DEPOSIT_CENTS,
    VOLUME_MAX_SIZE_GB,
    get_plan,
    to_cents,
    volume_hourly_cost,
)
from services.resource_service import ResourceService

logger = logging.getLogger(__name__)


class BillingService:
    """Balance-affecting entry points used by the HTTP layer.

    Provisioning and resizing run the sufficiency check and the debit as one
    guarded UPDATE, and commit the resource change in the same unit of work.
    """

    def __init__(self, mysql_session: Session, payment=None, provider=None):
        self.mysql_session = mysql_session
        self.payment = payment
        self.provider = provider
        self.ledger = LedgerService(mysql_session)
        self.resource_service = ResourceService(mysql_session)

    def get_balance(self, account_id: int) -> int:
        return self.ledger.get_balance(account_id)

    def list_transactions(
        self,
        account_id: int,
        page: int = 1,
        page_size: int = 10,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> dict:
        return self.ledger.list_transactions(account_id, page, page_size, date_from, date_to)

    def reconcile(self, account_id: int) -> dict:
        balance = self.ledger.get_balance(account_id)
        ledger_total = self.ledger.ledger_total(account_id)
        if balance != ledger_total:
            logger.error(f"Account {account_id} balance {balance} does not match ledger total {ledger_total}")
        return {
            "account_id": account_id,
            "balance": balance,
            "ledger_total": ledger_total,
            "consistent": balance == ledger_total
        }

    async def initiate_deposit(self, account_id: int, amount_cents: int, currency: str = "USD") -> dict:
        if amount_cents < MINIMUM_DEPOSIT_CENTS:
            raise ValueError(f"Minimum deposit amount is {format_dollars(MINIMUM_DEPOSIT_CENTS)}")
        self.ledger.get_account(account_id)
        handle = await self.payment.create_payment_intent(amount_cents, currency)
        logger.info(f"Created payment {handle['order_id']} for account {account_id}")
        return handle

    async def capture_deposit(self, account_id: int, order_id: str) -> BillingTransaction:
        self.ledger.get_account(account_id)
        payment = await self.payment.capture(order_id)
        tx = self.ledger.record_deposit(
            account_id,
            payment["amount_cents"],
            payment["external_ref"],
            currency=payment.get("currency")
        )
        logger.info(f"Captured {format_dollars(payment['amount_cents'])} for account {account_id}")
        return tx

    def provisioning_cost(self, request: ProvisionRequest) -> int:
        if request.kind == ResourceKind.VOLUME:
            if request.size_gb <= 0 or request.size_gb > VOLUME_MAX_SIZE_GB:
                raise ValueError(f"Volume size must be between 1GB and {VOLUME_MAX_SIZE_GB}GB")
            return max(1, to_cents(volume_hourly_cost(request.size_gb)))
        return get_plan(request.size).hourly_rate_cents

    def provision_resource(self, request: ProvisionRequest) -> Resource:
        """Charge the first hour and create the resource record together."""
        cost = self.provisioning_cost(request)
        self.ledger.get_account(request.account_id)

        try:
            resource = self.resource_service.add_resource(
                account_id=request.account_id,
                kind=request.kind,
                name=request.name,
                external_id=request.external_id,
                region=request.region,
                size=request.size,
                size_gb=request.size_gb
            )
            self.ledger.charge_if_sufficient(
                request.account_id,
                cost,
                TransactionKind.RESOURCE_CHARGE,
                f"First hour of {request.kind.value} '{request.name}'",
                resource_id=resource.id,
                commit=False
            )
            self.mysql_session.commit()
        except InsufficientBalanceError:
            logger.info(f"Provisioning refused for account {request.account_id}: balance below {cost} cents")
            raise
        except SQLAlchemyError as e:
            self.mysql_session.rollback()
            raise PersistenceError(str(e)) from e

        logger.info(f"Provisioned {request.kind.value} {resource.id} for account {request.account_id}")
        return resource

    def resize_volume(self, account_id: int, resource_id: int, new_size_gb: int) -> Resource:
        resource = self.resource_service.get_owned_resource(account_id, resource_id)
        if resource.kind != ResourceKind.VOLUME.value:
            raise ValueError("Only volumes can be resized")
        if new_size_gb <= (resource.size_gb or 0):
            raise ValueError("New size must be greater than current size")
        if new_size_gb > VOLUME_MAX_SIZE_GB:
            raise ValueError(f"Maximum volume size is {VOLUME_MAX_SIZE_GB}GB")

        additional = volume_hourly_cost(new_size_gb) - volume_hourly_cost(resource.size_gb or 0)
        cost = max(1, to_cents(additional))

        try:
            self.ledger.charge_if_sufficient(
                account_id,
                cost,
                TransactionKind.RESOURCE_RESIZE_CHARGE,
                f"Resize of volume '{resource.name}' from {resource.size_gb}GB to {new_size_gb}GB",
                resource_id=resource.id,
                commit=False
            )
            resource.size_gb = new_size_gb
            self.mysql_session.commit()
        except SQLAlchemyError as e:
            self.mysql_session.rollback()
            raise PersistenceError(str(e)) from e
        return resource

    async def delete_resource(self, account_id: int, resource_id: int):
        resource = self.resource_service.get_owned_resource(account_id, resource_id)
        if resource.kind == ResourceKind.VOLUME.value:
            await self.provider.destroy_volume(resource.external_id)
        else:
            await self.provider.destroy_instance(resource.external_id)
        self.resource_service.delete_resource(resource.id)
        logger.info(f"Deleted {resource.kind} {resource_id} for account {account_id}")
