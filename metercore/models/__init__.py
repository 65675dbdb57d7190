"""Import all models so SQLModel.metadata picks them up."""

from metercore.models.contact import Contact
from metercore.models.credit import (
    CreditAccount,
    CreditSummary,
    CreditTransaction,
    CreditTransactionRead,
    ReconciliationReport,
    TransactionKind,
)
from metercore.models.credit_package import CreditPackage, CreditPackageCreate, CreditPackageRead
from metercore.models.message_log import (
    DeliveryEvent,
    DeliveryReport,
    MessageLog,
    MessageLogDetail,
    MessageLogRead,
    MessageRecipient,
    MessageType,
    OverallStatus,
    RecipientRead,
    RecipientStatus,
    SendMessageRequest,
)
from metercore.models.plan import Plan, PlanCreate, PlanRead
from metercore.models.purchase import (
    PaymentRail,
    Purchase,
    PurchaseCreate,
    PurchaseRead,
    PurchaseStatus,
)
from metercore.models.scheduled_message import (
    MessageStatus,
    RecipientSelector,
    ScheduledMessage,
    ScheduledMessageCreate,
    ScheduledMessageRead,
)
from metercore.models.tenant import SubscriptionRead, SubscriptionUpdate, Tenant
from metercore.models.wallet import Wallet, WalletTransaction

__all__ = [
    "Contact",
    "CreditAccount",
    "CreditPackage",
    "CreditPackageCreate",
    "CreditPackageRead",
    "CreditSummary",
    "CreditTransaction",
    "CreditTransactionRead",
    "DeliveryEvent",
    "DeliveryReport",
    "MessageLog",
    "MessageLogDetail",
    "MessageLogRead",
    "MessageRecipient",
    "MessageStatus",
    "MessageType",
    "OverallStatus",
    "PaymentRail",
    "Plan",
    "PlanCreate",
    "PlanRead",
    "Purchase",
    "PurchaseCreate",
    "PurchaseRead",
    "PurchaseStatus",
    "RecipientRead",
    "RecipientSelector",
    "RecipientStatus",
    "ReconciliationReport",
    "ScheduledMessage",
    "ScheduledMessageCreate",
    "ScheduledMessageRead",
    "SendMessageRequest",
    "SubscriptionRead",
    "SubscriptionUpdate",
    "Tenant",
    "TransactionKind",
    "Wallet",
    "WalletTransaction",
]
