"""
Core module - shared enums and exceptions.
"""

from paycycle.core.enums import (
    AdminTaskCategory,
    AdminTaskPriority,
    AllocationOutcome,
    CreditTransactionType,
    FailureCategory,
    MonitoringStatus,
    PaymentProvider,
    PaymentPurpose,
    PaymentStatus,
    RenewalMethod,
    StatusReason,
    SubscriptionStatus,
)

__all__ = [
    "AdminTaskCategory",
    "AdminTaskPriority",
    "AllocationOutcome",
    "CreditTransactionType",
    "FailureCategory",
    "MonitoringStatus",
    "PaymentProvider",
    "PaymentPurpose",
    "PaymentStatus",
    "RenewalMethod",
    "StatusReason",
    "SubscriptionStatus",
]
