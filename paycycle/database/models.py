"""
Database models for the Paycycle payment orchestrator

SQLAlchemy 2.0 models with full type hints
"""

from datetime import datetime, UTC
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from paycycle.core.enums import (
    AdminTaskPriority,
    MonitoringStatus,
    PaymentStatus,
    SubscriptionStatus,
)


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Fixed-point currency: two decimals, signed
Money = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(UTC)


class User(Base):
    """Account that owns ledger rows, payments and subscriptions"""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True, comment="Contact email"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    credit_transactions: Mapped[list["CreditTransaction"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class CreditTransaction(Base):
    """
    Credit ledger row

    A settled row carries balance_before/balance_after and is never edited
    again. A crypto deposit starts as an unsettled intent row (amount 0,
    balance fields NULL) that the allocation service settles exactly once.
    """

    __tablename__ = "credit_transactions"
    __table_args__ = (
        CheckConstraint(
            "balance_before IS NULL OR balance_after IS NULL "
            "OR balance_after = balance_before + amount",
            name="ck_credit_transactions_balance_math",
        ).ddl_if(dialect="postgresql"),
        CheckConstraint(
            "(type IN ('deposit', 'refund', 'bonus') AND amount >= 0) "
            "OR (type IN ('purchase', 'withdrawal', 'refund_reversal') AND amount <= 0)",
            name="ck_credit_transactions_amount_sign",
        ),
        Index("ix_credit_transactions_user_created", "user_id", "created_at", "id"),
        Index("ix_credit_transactions_monitoring", "monitoring_status", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="User ID (foreign key)",
    )

    type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="deposit, purchase, refund, bonus, withdrawal, refund_reversal",
    )

    amount: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0.00"), comment="Signed amount in USD credits"
    )
    balance_before: Mapped[Optional[Decimal]] = mapped_column(
        Money, nullable=True, comment="Balance before this row (NULL while unsettled)"
    )
    balance_after: Mapped[Optional[Decimal]] = mapped_column(
        Money, nullable=True, comment="Balance after this row (NULL while unsettled)"
    )

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Payment linkage (crypto deposits)
    payment_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True, comment="Provider payment ID"
    )
    payment_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_status: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True, comment="Mirror of Payment.status"
    )
    payment_currency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payment_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(20, 8), nullable=True, comment="Amount requested in the pay currency"
    )
    monitoring_status: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="pending, monitoring, completed, failed, skipped",
    )
    last_monitored_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    idempotency_key: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True, comment="Deduplicates debits and credits"
    )

    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSONType, default=dict, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    user: Mapped["User"] = relationship(back_populates="credit_transactions")

    @property
    def is_settled(self) -> bool:
        return self.balance_after is not None

    @property
    def is_monitoring_active(self) -> bool:
        return self.monitoring_status in {s.value for s in MonitoringStatus.active_states()}

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, type={self.type}, "
            f"amount={self.amount}, payment_id={self.payment_id})>"
        )


class Order(Base):
    """Checkout order, used as a fallback source for renewal terms"""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), default="paid", nullable=False)
    total_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    term_months: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    extra_data: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )


class OrderItem(Base):
    """Line item of an order"""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False
    )
    product_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    unit_price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    term_months: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    order: Mapped["Order"] = relationship(back_populates="items")


class Subscription(Base):
    """
    Subscription with auto-renew billing fields

    Once auto_renew is on, the renewal sweep owns end_date, renewal_date,
    next_billing_at and status_reason.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_renewal_due", "status", "auto_renew", "next_billing_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    order_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True
    )

    status: Mapped[str] = mapped_column(
        String(20), default=SubscriptionStatus.ACTIVE.value, nullable=False, index=True
    )
    status_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    renewal_method: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True, comment="credits, stripe"
    )

    price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    term_months: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    renewal_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_billing_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_requested_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    billing_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, comment="Stripe customer ID"
    )
    billing_payment_method_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, comment="Stripe payment method ID"
    )

    extra_data: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    order: Mapped[Optional["Order"]] = relationship()

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, status={self.status}, "
            f"method={self.renewal_method}, next_billing_at={self.next_billing_at})>"
        )


class Payment(Base):
    """
    Provider-agnostic payment intent

    status is only written through the payment state machine.
    """

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id", name="uq_payments_provider_payment"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )

    provider: Mapped[str] = mapped_column(
        String(50), nullable=False, index=True, comment="nowpayments, stripe"
    )
    provider_payment_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="External payment ID from provider"
    )
    status: Mapped[str] = mapped_column(
        String(32), default=PaymentStatus.PENDING.value, nullable=False, index=True
    )
    purpose: Mapped[str] = mapped_column(
        String(32), nullable=False, comment="credit_topup, subscription_renewal, order"
    )

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="Requested amount")
    currency: Mapped[str] = mapped_column(String(10), default="usd", nullable=False)

    order_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True
    )
    subscription_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    credit_transaction_id: Mapped[Optional[int]] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        ForeignKey("credit_transactions.id", ondelete="SET NULL"),
        nullable=True,
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_data: Mapped[Optional[dict]] = mapped_column(
        JSONType, nullable=True, comment="Last provider payload"
    )
    extra_data: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, provider={self.provider}, "
            f"provider_payment_id={self.provider_payment_id}, status={self.status})>"
        )


class AdminTask(Base):
    """
    Human escalation record

    entity_key identifies what the task is about ("subscription:42",
    "payment:abc"). At most one open task per (category, entity_key).
    """

    __tablename__ = "admin_tasks"
    __table_args__ = (
        Index(
            "uq_admin_tasks_open_category_entity",
            "category",
            "entity_key",
            unique=True,
            postgresql_where=text("completed_at IS NULL"),
            sqlite_where=text("completed_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_type: Mapped[str] = mapped_column(String(32), nullable=False, comment="renewal, payment")
    category: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(
        String(10), default=AdminTaskPriority.MEDIUM.value, nullable=False
    )
    entity_key: Mapped[str] = mapped_column(String(128), nullable=False)

    subscription_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=True, index=True
    )
    order_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True
    )
    user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    def __repr__(self) -> str:
        return f"<AdminTask(id={self.id}, category={self.category}, entity={self.entity_key})>"
