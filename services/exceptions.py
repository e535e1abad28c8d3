from typing import Optional


def format_dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


class BillingError(Exception):
    pass


class InsufficientBalanceError(BillingError):
    def __init__(self, required_cents: int, balance_cents: Optional[int] = None):
        self.required_cents = required_cents
        self.balance_cents = balance_cents
        super().__init__(
            f"Insufficient balance. Required: {format_dollars(required_cents)}"
        )


class PersistenceError(BillingError):
    pass


class ProviderError(BillingError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class MetricFetchError(ProviderError):
    pass


class PaymentError(BillingError):
    pass


class AccountNotFoundError(BillingError):
    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class ResourceNotFoundError(BillingError):
    def __init__(self, resource_id):
        self.resource_id = resource_id
        super().__init__(f"Resource {resource_id} not found")
