"""
Core Enums - shared types for the payment lifecycle.

Defines:
- PaymentStatus: provider-agnostic payment state machine
- MonitoringStatus: ledger-side monitoring progress
- CreditTransactionType: ledger row types with a fixed sign
- FailureCategory: failure registry categories
- AdminTaskCategory: human escalation categories
"""

from enum import Enum
from typing import FrozenSet


class PaymentStatus(str, Enum):
    """Payment state machine.

    pending → {waiting, confirming, confirmed, sending, partially_paid}* →
    {finished | failed | expired | refunded}
    """

    PENDING = "pending"
    WAITING = "waiting"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    SENDING = "sending"
    PARTIALLY_PAID = "partially_paid"
    FINISHED = "finished"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"

    @classmethod
    def terminal_states(cls) -> FrozenSet["PaymentStatus"]:
        return frozenset({cls.FINISHED, cls.FAILED, cls.EXPIRED, cls.REFUNDED})

    @classmethod
    def in_flight_states(cls) -> FrozenSet["PaymentStatus"]:
        return frozenset({
            cls.WAITING,
            cls.CONFIRMING,
            cls.CONFIRMED,
            cls.SENDING,
            cls.PARTIALLY_PAID,
        })

    @classmethod
    def failure_states(cls) -> FrozenSet["PaymentStatus"]:
        return frozenset({cls.FAILED, cls.EXPIRED, cls.REFUNDED})

    @property
    def is_terminal(self) -> bool:
        return self in PaymentStatus.terminal_states()

    @property
    def progress(self) -> int:
        """Position on the way to a terminal state. Transitions must increase it."""
        return _PAYMENT_PROGRESS[self]


_PAYMENT_PROGRESS = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.WAITING: 1,
    PaymentStatus.CONFIRMING: 2,
    PaymentStatus.CONFIRMED: 3,
    PaymentStatus.PARTIALLY_PAID: 3,
    PaymentStatus.SENDING: 4,
    PaymentStatus.FINISHED: 5,
    PaymentStatus.FAILED: 5,
    PaymentStatus.EXPIRED: 5,
    PaymentStatus.REFUNDED: 5,
}


class PaymentProvider(str, Enum):
    """External payment providers"""

    NOWPAYMENTS = "nowpayments"
    STRIPE = "stripe"


class PaymentPurpose(str, Enum):
    """What a payment pays for"""

    CREDIT_TOPUP = "credit_topup"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    ORDER = "order"


class MonitoringStatus(str, Enum):
    """Monitoring progress recorded on the ledger row."""

    PENDING = "pending"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @classmethod
    def active_states(cls) -> FrozenSet["MonitoringStatus"]:
        """States that put a row back into the pending queue on restart."""
        return frozenset({cls.PENDING, cls.MONITORING})


class CreditTransactionType(str, Enum):
    """Ledger row types. The sign of the amount is fixed by the type."""

    DEPOSIT = "deposit"
    PURCHASE = "purchase"
    REFUND = "refund"
    BONUS = "bonus"
    WITHDRAWAL = "withdrawal"
    REFUND_REVERSAL = "refund_reversal"

    @property
    def is_credit(self) -> bool:
        return self in (
            CreditTransactionType.DEPOSIT,
            CreditTransactionType.REFUND,
            CreditTransactionType.BONUS,
        )


class FailureCategory(str, Enum):
    """Payment failure registry categories"""

    EXPIRED = "expired"
    FAILED = "failed"
    REFUNDED = "refunded"
    NETWORK = "network"
    PROVIDER_REJECTED = "provider_rejected"  # non-transient provider error
    MONITORING_FAILED = "monitoring_failed"
    ALLOCATION_FAILED = "allocation_failed"

    @property
    def can_retry(self) -> bool:
        return self in (
            FailureCategory.NETWORK,
            FailureCategory.PROVIDER_REJECTED,
            FailureCategory.MONITORING_FAILED,
            FailureCategory.ALLOCATION_FAILED,
        )

    @classmethod
    def from_payment_status(cls, status: PaymentStatus) -> "FailureCategory":
        return {
            PaymentStatus.EXPIRED: cls.EXPIRED,
            PaymentStatus.FAILED: cls.FAILED,
            PaymentStatus.REFUNDED: cls.REFUNDED,
        }[status]


class AllocationOutcome(str, Enum):
    """Result of a credit allocation attempt"""

    ALLOCATED = "allocated"
    ALREADY_ALLOCATED = "already_allocated"
    REJECTED = "rejected"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status"""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class RenewalMethod(str, Enum):
    """How a subscription is kept active past its current period"""

    CREDITS = "credits"  # debit the credit ledger
    STRIPE = "stripe"  # new off-session card charge


class StatusReason(str, Enum):
    """Subscription.status_reason values written by the renewal sweep"""

    AUTO_RENEW_MISSING_METHOD = "auto_renew_missing_method"
    AUTO_RENEW_MISSING_PRICE = "auto_renew_missing_price"
    AUTO_RENEW_CURRENCY_MISMATCH = "auto_renew_currency_mismatch"
    AUTO_RENEWED_CREDITS = "auto_renewed_credits"
    AUTO_RENEW_CREDIT_FAILED = "auto_renew_credit_failed"
    RENEWAL_PAYMENT_PENDING = "renewal_payment_pending"
    RENEWAL_PAYMENT_FAILED = "renewal_payment_failed"
    AUTO_RENEWED_CARD = "auto_renewed_card"
    AUTO_RENEW_MANUAL_REVIEW = "auto_renew_manual_review"
    CANCELLED_BY_USER = "cancelled_by_user"
    EXPIRED = "expired"


class AdminTaskCategory(str, Enum):
    """Escalation categories. At most one open task per category and entity."""

    RENEWAL_MISSING_METHOD = "renewal_missing_method"
    RENEWAL_MISSING_PRICE = "renewal_missing_price"
    RENEWAL_CURRENCY_MISMATCH = "renewal_currency_mismatch"
    RENEWAL_CREDIT_FAILED = "renewal_credit_failed"
    RENEWAL_PAYMENT_PENDING = "renewal_payment_pending"
    RENEWAL_PAYMENT_FAILED = "renewal_payment_failed"
    RENEWAL_MANUAL_REVIEW = "renewal_manual_review"
    PAYMENT_MONITORING_FAILED = "payment_monitoring_failed"
    PAYMENT_ALLOCATION_REJECTED = "payment_allocation_rejected"

    @classmethod
    def renewal_categories(cls) -> FrozenSet["AdminTaskCategory"]:
        return frozenset(c for c in cls if c.value.startswith("renewal_"))


class AdminTaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
