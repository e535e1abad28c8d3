import logging
import math
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.mysql_models import Account, BillingTransaction
from models.schemas import TransactionKind, TransactionStatus
from services.exceptions import (
    AccountNotFoundError,
    InsufficientBalanceError,
    PaymentError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class LedgerService:
    """Balance mutations and the append-only transaction history.

    Every public write is one unit of work: the ledger row and the balance
    delta are committed together or not at all. Balance deltas are issued as
    a single ``UPDATE accounts SET balance = balance + :delta`` so concurrent
    writers never lose an update. Pass ``commit=False`` to leave the unit
    open for the caller to extend and commit.
    """

    def __init__(self, mysql_session: Session, clock=datetime.utcnow):
        self.mysql_session = mysql_session
        self.clock = clock

    def create_account(self, username: str, currency: str = "USD") -> Account:
        account = Account(username=username, currency=currency, balance=0, created_at=self.clock())
        try:
            self.mysql_session.add(account)
            self.mysql_session.commit()
        except IntegrityError:
            self.mysql_session.rollback()
            raise ValueError(f"Account '{username}' already exists")
        except SQLAlchemyError as e:
            self._rollback(e)
        return account

    def get_account(self, account_id: int) -> Account:
        account = self.mysql_session.query(Account).filter(Account.id == account_id).first()
        if not account:
            raise AccountNotFoundError(account_id)
        return account

    def get_balance(self, account_id: int) -> int:
        try:
            balance = self.mysql_session.query(Account.balance).filter(
                Account.id == account_id
            ).scalar()
        except SQLAlchemyError as e:
            self._rollback(e)
        if balance is None:
            raise AccountNotFoundError(account_id)
        return balance

    def record_charge(
        self,
        account_id: int,
        amount_cents: int,
        kind: TransactionKind,
        description: str,
        resource_id: Optional[int] = None,
        commit: bool = True
    ) -> BillingTransaction:
        """Debit the account unconditionally; the balance may go negative."""
        self._check_amount(amount_cents)
        try:
            if self._apply_delta(account_id, -amount_cents) == 0:
                self.mysql_session.rollback()
                raise AccountNotFoundError(account_id)
            tx = self._append(account_id, -amount_cents, kind, description, resource_id=resource_id)
            self._finish(commit)
        except SQLAlchemyError as e:
            self._rollback(e)
        return tx

    def charge_if_sufficient(
        self,
        account_id: int,
        amount_cents: int,
        kind: TransactionKind,
        description: str,
        required_cents: Optional[int] = None,
        resource_id: Optional[int] = None,
        commit: bool = True
    ) -> BillingTransaction:
        """Debit only while the balance covers ``required_cents``.

        The balance test is part of the UPDATE statement itself, so two
        concurrent guarded charges against 150 cents of balance for 100 cents
        each admit exactly one.
        """
        self._check_amount(amount_cents)
        required = amount_cents if required_cents is None else required_cents
        try:
            if self._apply_delta(account_id, -amount_cents, minimum=required) == 0:
                self.mysql_session.rollback()
                balance = self.get_balance(account_id)
                raise InsufficientBalanceError(required, balance)
            tx = self._append(account_id, -amount_cents, kind, description, resource_id=resource_id)
            self._finish(commit)
        except SQLAlchemyError as e:
            self._rollback(e)
        return tx

    def record_deposit(
        self,
        account_id: int,
        amount_cents: int,
        external_ref: str,
        currency: Optional[str] = None
    ) -> BillingTransaction:
        """Credit a captured payment. Replaying the same ``external_ref`` is a no-op.

        A payment reference already credited to a different account is refused
        with ``PaymentError`` rather than returned as a replay.
        """
        self._check_amount(amount_cents)
        existing = self._find_by_external_ref(external_ref)
        if existing:
            return self._replayed_deposit(existing, account_id, external_ref)

        try:
            if self._apply_delta(account_id, amount_cents) == 0:
                self.mysql_session.rollback()
                raise AccountNotFoundError(account_id)
            tx = self._append(
                account_id,
                amount_cents,
                TransactionKind.DEPOSIT,
                f"Deposit of ${amount_cents / 100:.2f}",
                external_ref=external_ref,
                currency=currency
            )
            self.mysql_session.commit()
        except IntegrityError:
            # lost a race with a concurrent capture of the same payment
            self.mysql_session.rollback()
            existing = self._find_by_external_ref(external_ref)
            if existing:
                return self._replayed_deposit(existing, account_id, external_ref)
            raise PersistenceError(f"Could not record deposit {external_ref}")
        except SQLAlchemyError as e:
            self._rollback(e)
        return tx

    def _replayed_deposit(self, existing: BillingTransaction, account_id: int, external_ref: str) -> BillingTransaction:
        if existing.account_id != account_id:
            logger.warning(
                f"Deposit {external_ref} belongs to account {existing.account_id}, refused for account {account_id}"
            )
            raise PaymentError(f"Payment {external_ref} was already credited to another account")
        logger.info(f"Deposit {external_ref} already recorded as transaction {existing.id}")
        return existing

    def record_event(
        self,
        account_id: int,
        kind: TransactionKind,
        description: str,
        resource_id: Optional[int] = None
    ) -> BillingTransaction:
        """Append a zero-amount audit entry; the balance is untouched."""
        try:
            tx = self._append(account_id, 0, kind, description, resource_id=resource_id)
            self.mysql_session.commit()
        except SQLAlchemyError as e:
            self._rollback(e)
        return tx

    def list_transactions(
        self,
        account_id: int,
        page: int = 1,
        page_size: int = 10,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> dict:
        if page < 1:
            raise ValueError("page must be >= 1")
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

        date_from = self._ensure_naive(date_from)
        date_to = self._ensure_naive(date_to)

        try:
            self.get_account(account_id)
            query = self.mysql_session.query(BillingTransaction).filter(
                BillingTransaction.account_id == account_id
            )
            if date_from is not None:
                query = query.filter(BillingTransaction.created_at >= date_from)
            if date_to is not None:
                query = query.filter(BillingTransaction.created_at < date_to)

            total = query.count()
            items = query.order_by(
                BillingTransaction.created_at.desc(),
                BillingTransaction.id.desc()
            ).offset((page - 1) * page_size).limit(page_size).all()
        except SQLAlchemyError as e:
            self._rollback(e)

        total_pages = math.ceil(total / page_size)
        return {
            "items": [self._transaction_to_dict(tx) for tx in items],
            "page": page,
            "page_size": page_size,
            "total": total,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1
        }

    def ledger_total(self, account_id: int) -> int:
        try:
            total = self.mysql_session.query(
                func.coalesce(func.sum(BillingTransaction.amount), 0)
            ).filter(
                BillingTransaction.account_id == account_id,
                BillingTransaction.status == TransactionStatus.COMPLETED.value
            ).scalar()
        except SQLAlchemyError as e:
            self._rollback(e)
        return int(total)

    def _apply_delta(self, account_id: int, delta: int, minimum: Optional[int] = None) -> int:
        query = self.mysql_session.query(Account).filter(Account.id == account_id)
        if minimum is not None:
            query = query.filter(Account.balance >= minimum)
        return query.update(
            {Account.balance: Account.balance + delta},
            synchronize_session=False
        )

    def _append(
        self,
        account_id: int,
        amount: int,
        kind: TransactionKind,
        description: str,
        external_ref: Optional[str] = None,
        resource_id: Optional[int] = None,
        currency: Optional[str] = None
    ) -> BillingTransaction:
        if currency is None:
            currency = self.mysql_session.query(Account.currency).filter(
                Account.id == account_id
            ).scalar() or "USD"
        tx = BillingTransaction(
            account_id=account_id,
            amount=amount,
            currency=currency,
            kind=TransactionKind(kind).value,
            status=TransactionStatus.COMPLETED.value,
            description=description,
            external_ref=external_ref,
            resource_id=resource_id,
            created_at=self.clock()
        )
        self.mysql_session.add(tx)
        return tx

    def _find_by_external_ref(self, external_ref: str) -> Optional[BillingTransaction]:
        return self.mysql_session.query(BillingTransaction).filter(
            BillingTransaction.external_ref == external_ref
        ).first()

    def _finish(self, commit: bool):
        if commit:
            self.mysql_session.commit()
        else:
            self.mysql_session.flush()

    def _ensure_naive(self, dt: Optional[datetime]) -> Optional[datetime]:
        if dt is None or dt.tzinfo is None:
            return dt
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    def _check_amount(self, amount_cents: int):
        if not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ValueError(f"Amount must be a positive number of cents, got {amount_cents!r}")

    def _rollback(self, error: Exception):
        self.mysql_session.rollback()
        logger.error(f"Ledger write failed: {error}")
        raise PersistenceError(str(error)) from error

    def _transaction_to_dict(self, tx: BillingTransaction) -> dict:
        return {
            "id": tx.id,
            "account_id": tx.account_id,
            "amount": tx.amount,
            "currency": tx.currency,
            "kind": tx.kind,
            "status": tx.status,
            "description": tx.description,
            "external_ref": tx.external_ref,
            "resource_id": tx.resource_id,
            "created_at": tx.created_at
        }
