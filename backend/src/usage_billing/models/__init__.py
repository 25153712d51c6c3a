"""SQLAlchemy ORM models for the usage billing engine."""
# Import all models here to ensure they are registered with Alembic

from usage_billing.models.base import Base
from usage_billing.models.user import User
from usage_billing.models.balance_transaction import BalanceTransaction, TransactionType
from usage_billing.models.plan import Plan
from usage_billing.models.subscription import Subscription, SubscriptionStatus
from usage_billing.models.usage_record import AIUsage, DatabaseUsage, DeploymentUsage, SandboxUsage, StorageUsage
from usage_billing.models.webhook_event import WebhookEventLog, WebhookEventStatus
from usage_billing.models.payment_transaction import PaymentTransaction, PaymentTransactionStatus, ReceiptSequence
from usage_billing.models.ai_model import AIModel

__all__ = [
    "Base",
    "User",
    "BalanceTransaction",
    "TransactionType",
    "Plan",
    "Subscription",
    "SubscriptionStatus",
    "SandboxUsage",
    "StorageUsage",
    "DeploymentUsage",
    "DatabaseUsage",
    "AIUsage",
    "WebhookEventLog",
    "WebhookEventStatus",
    "PaymentTransaction",
    "PaymentTransactionStatus",
    "ReceiptSequence",
    "AIModel",
]
