"""Models package."""

from .account import Account
from .credit_transaction import CreditTransaction
from .usage_record import UsageRecord
from .payment_record import PaymentRecord
from .webhook_event import WebhookEvent
