# coding: utf-8
"""
Subscription Renewal Service

Periodic sweep over auto-renewing subscriptions that are due:

- credits: debit the credit ledger (idempotent per billing period) and
  advance the period in the same commit
- stripe: create one off-session card charge per period; the period is
  advanced when the charge reports finished through the payment state machine
- anything the sweep cannot decide on its own becomes an AdminTask and the
  subscription is pushed out by the retry interval

A second sweep expires active subscriptions whose period has ended and
cancels their unsettled Stripe renewal charges.

Renewal terms (method, price, currency, term) fall back from the
subscription to its order, then to the order's first item, then to
metadata and the date span.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.orchestrator import RenewalConfig, get_config
from paycycle.core.enums import (
    AdminTaskCategory,
    AdminTaskPriority,
    PaymentProvider,
    PaymentPurpose,
    PaymentStatus,
    RenewalMethod,
    StatusReason,
    SubscriptionStatus,
)
from paycycle.core.exceptions import ChargeError, ProviderError, ProviderUnavailableError
from paycycle.database.models import Order, OrderItem, Payment, Subscription
from paycycle.services.admin_task_service import AdminTaskService, subscription_entity
from paycycle.services.credit_service import CreditService, cents_to_money
from paycycle.services.payment_state import apply_status_transition
from paycycle.utils.time import add_months, ensure_utc, months_between

TERM_METADATA_KEYS = ("termMonths", "term_months", "durationMonths", "duration_months")


@dataclass
class RenewalTerms:
    """Resolved renewal inputs for one subscription"""
    method: Optional[str]
    price_cents: Optional[int]
    currency: str
    term_months: int
    term_source: str  # stored, order, item, metadata, date


def _positive_int(value: Any) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _term_from_metadata(*sources: Optional[Dict[str, Any]]) -> Optional[int]:
    for data in sources:
        for key in TERM_METADATA_KEYS:
            months = _positive_int((data or {}).get(key))
            if months:
                return months
    return None


def resolve_renewal_terms(
    subscription: Subscription,
    order: Optional[Order],
    item: Optional[OrderItem],
) -> RenewalTerms:
    """
    Walk the fallback chain subscription → order → first order item → metadata/dates

    The order total is a price source only when the order carried no coupon,
    since a discounted first payment is not the renewal price.
    """
    known_methods = {m.value for m in RenewalMethod}
    method = (subscription.renewal_method or "").strip().lower() or None
    if method is None and order is not None and (order.payment_method or "").lower() in known_methods:
        method = order.payment_method.lower()
    if method is None:
        meta_method = (subscription.extra_data or {}).get("renewalMethod")
        method = str(meta_method).lower() if meta_method else None

    price = _positive_int(subscription.price_cents)
    if price is None and order is not None and not order.coupon_code:
        price = _positive_int(order.total_cents)
    if price is None and item is not None:
        price = _positive_int(item.unit_price_cents)

    currency = (
        subscription.currency
        or (order.currency if order is not None else None)
        or (item.currency if item is not None else None)
        or "usd"
    ).lower()

    term_source = "stored"
    term = _positive_int(subscription.term_months)
    if term is None and order is not None:
        term, term_source = _positive_int(order.term_months), "order"
    if term is None and item is not None:
        term, term_source = _positive_int(item.term_months), "item"
    if term is None:
        term = _term_from_metadata(
            subscription.extra_data, order.extra_data if order is not None else None
        )
        term_source = "metadata"
    if term is None:
        term_source = "date"
        if subscription.start_date and subscription.end_date:
            term = max(1, months_between(subscription.start_date, subscription.end_date))
        else:
            term = 1

    return RenewalTerms(
        method=method,
        price_cents=price,
        currency=currency,
        term_months=term,
        term_source=term_source,
    )


def renewal_idempotency_key(subscription_id: int, period_end: Optional[datetime], attempt: int = 0) -> str:
    period = ensure_utc(period_end).isoformat() if period_end else "none"
    key = f"renewal:{subscription_id}:{period}"
    return f"{key}:{attempt}" if attempt else key


class SubscriptionRenewalService:
    """
    run_sweep() renews or escalates every due subscription
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        stripe=None,
        events=None,
        config: Optional[RenewalConfig] = None,
    ):
        self._session_maker = session_maker
        self._stripe = stripe
        # PaymentEventProcessor, for charges that settle synchronously
        self.events = events
        self.config = config or get_config().renewal
        self._last_run: Optional[datetime] = None
        self._last_summary: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def fetch_candidate_ids(self, now: datetime) -> List[int]:
        horizon = now + timedelta(minutes=self.config.lookahead_minutes)
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.auto_renew.is_(True),
                Subscription.cancellation_requested_at.is_(None),
                or_(
                    Subscription.next_billing_at <= now,
                    and_(
                        Subscription.next_billing_at.is_(None),
                        Subscription.end_date <= horizon,
                    ),
                ),
            )
            .order_by(func.coalesce(Subscription.next_billing_at, Subscription.end_date), Subscription.id)
            .limit(self.config.batch_size)
        )
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def run_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Process one batch of due subscriptions

        Each subscription is its own unit of work; a failure is logged and
        the sweep moves on.

        Returns:
            Count per action taken
        """
        moment = now or datetime.now(UTC)
        candidate_ids = await self.fetch_candidate_ids(moment)
        summary: Dict[str, int] = {}

        for subscription_id in candidate_ids:
            try:
                action = await self.process_subscription(subscription_id, moment)
            except Exception:
                action = "error"
                logger.exception(f"❌ Renewal failed for subscription {subscription_id}")
            summary[action] = summary.get(action, 0) + 1

        self._last_run = datetime.now(UTC)
        self._last_summary = summary
        if candidate_ids:
            logger.info(f"🔁 Renewal sweep: {len(candidate_ids)} due, {summary}")
        return summary

    async def process_subscription(self, subscription_id: int, now: datetime) -> str:
        """
        Decide and apply the renewal action for one subscription

        Returns:
            Action name (renewed_credits, charge_created, missing_method, ...)
        """
        followup = None
        async with self._session_maker() as session:
            sub = await session.get(Subscription, subscription_id, with_for_update=True)
            if sub is None or not self._is_due(sub):
                return "skipped"

            order, item = await self._load_order(session, sub.order_id)
            terms = resolve_renewal_terms(sub, order, item)
            if sub.term_months is None:
                sub.term_months = terms.term_months
                if terms.term_source == "date":
                    logger.warning(
                        f"⚠️ Subscription {sub.id}: term resolved from date span ({terms.term_months} months)"
                    )

            if not terms.method:
                action = await self._escalate(
                    session, sub, now,
                    AdminTaskCategory.RENEWAL_MISSING_METHOD,
                    StatusReason.AUTO_RENEW_MISSING_METHOD,
                    "Auto-renew has no payment method",
                )
            elif not terms.price_cents:
                action = await self._escalate(
                    session, sub, now,
                    AdminTaskCategory.RENEWAL_MISSING_PRICE,
                    StatusReason.AUTO_RENEW_MISSING_PRICE,
                    "Auto-renew has no price",
                )
            elif terms.method == RenewalMethod.CREDITS.value:
                if terms.currency not in self.config.credit_currencies:
                    action = await self._escalate(
                        session, sub, now,
                        AdminTaskCategory.RENEWAL_CURRENCY_MISMATCH,
                        StatusReason.AUTO_RENEW_CURRENCY_MISMATCH,
                        f"Credit renewal priced in {terms.currency.upper()}",
                    )
                else:
                    action = await self._renew_with_credits(session, sub, terms, now)
                    if action == "already_renewed":
                        return action
            elif terms.method == RenewalMethod.STRIPE.value:
                action, followup = await self._renew_with_stripe(session, sub, terms, now)
            else:
                action = await self._escalate(
                    session, sub, now,
                    AdminTaskCategory.RENEWAL_MANUAL_REVIEW,
                    StatusReason.AUTO_RENEW_MANUAL_REVIEW,
                    f"Unrecognized renewal method '{terms.method}'",
                )

            await session.commit()

        if followup is not None:
            await self.events.handle_status(*followup)
        return action

    @staticmethod
    def _is_due(sub: Subscription) -> bool:
        if sub.status != SubscriptionStatus.ACTIVE.value or not sub.auto_renew:
            return False
        if sub.cancellation_requested_at is not None:
            return False
        return True

    @staticmethod
    async def _load_order(session: AsyncSession, order_id: Optional[int]):
        if order_id is None:
            return None, None
        order = await session.get(Order, order_id)
        if order is None:
            return None, None
        result = await session.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id).limit(1)
        )
        return order, result.scalar_one_or_none()

    def _push_out(self, sub: Subscription, now: datetime, reason: StatusReason) -> None:
        sub.next_billing_at = now + timedelta(minutes=self.config.retry_minutes)
        sub.status_reason = reason.value
        sub.updated_at = now

    async def _escalate(
        self,
        session: AsyncSession,
        sub: Subscription,
        now: datetime,
        category: AdminTaskCategory,
        reason: StatusReason,
        title: str,
        notes: Optional[str] = None,
        priority: AdminTaskPriority = AdminTaskPriority.MEDIUM,
    ) -> str:
        """Open (or refresh) the task for this case and retry later"""
        self._push_out(sub, now, reason)
        await AdminTaskService.ensure_task(
            session,
            category,
            subscription_entity(sub.id),
            title=f"Subscription {sub.id}: {title}",
            task_type="renewal",
            priority=priority,
            notes=notes or title,
            due_at=ensure_utc(sub.end_date),
            subscription_id=sub.id,
            order_id=sub.order_id,
            user_id=sub.user_id,
        )
        logger.warning(f"⚠️ Subscription {sub.id} escalated: {category.value}")
        return category.value.removeprefix("renewal_")

    def _advance_period(self, sub: Subscription, months: int, now: datetime) -> None:
        """Move end_date, renewal_date and next_billing_at one term forward"""
        current_end = ensure_utc(sub.end_date)
        base = current_end if current_end and current_end > now else now
        new_end = add_months(base, months)
        sub.end_date = new_end
        sub.renewal_date = new_end
        sub.next_billing_at = new_end
        sub.updated_at = now

    async def _complete_tasks(
        self,
        session: AsyncSession,
        sub_id: int,
        categories,
        completed_by: str = "system",
    ) -> None:
        for category in categories:
            await AdminTaskService.complete_task(
                session, category, subscription_entity(sub_id), completed_by=completed_by
            )

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    async def _renew_with_credits(
        self,
        session: AsyncSession,
        sub: Subscription,
        terms: RenewalTerms,
        now: datetime,
    ) -> str:
        sub_id, user_id = sub.id, sub.user_id
        period_end = sub.end_date
        amount = cents_to_money(terms.price_cents)

        result = await CreditService.spend(
            session,
            user_id,
            amount,
            description=f"Auto-renew subscription {sub_id}",
            metadata={
                "renewal": True,
                "subscriptionId": sub_id,
                "termMonths": terms.term_months,
                "priceCents": terms.price_cents,
                "periodEnd": ensure_utc(period_end).isoformat() if period_end else None,
            },
            idempotency_key=renewal_idempotency_key(sub_id, period_end),
            commit=False,
        )

        if result.duplicate:
            await session.rollback()
            logger.info(f"Subscription {sub_id} already renewed for this period")
            return "already_renewed"

        if not result.ok:
            await self._escalate(
                session, sub, now,
                AdminTaskCategory.RENEWAL_CREDIT_FAILED,
                StatusReason.AUTO_RENEW_CREDIT_FAILED,
                "Credit renewal failed",
                notes=f"Balance {result.balance} below renewal price {amount}",
                priority=AdminTaskPriority.HIGH,
            )
            return "credit_failed"

        self._advance_period(sub, terms.term_months, now)
        sub.status_reason = StatusReason.AUTO_RENEWED_CREDITS.value
        sub.price_cents = terms.price_cents
        sub.currency = terms.currency
        sub.renewal_method = RenewalMethod.CREDITS.value
        await self._complete_tasks(session, sub_id, AdminTaskCategory.renewal_categories())

        logger.info(
            f"✅ Subscription {sub_id} renewed with credits: {amount} USD, "
            f"{terms.term_months} month(s), balance now {result.balance}"
        )
        return "renewed_credits"

    # ------------------------------------------------------------------
    # Stripe
    # ------------------------------------------------------------------

    @staticmethod
    async def _stripe_renewal_payments(session: AsyncSession, sub_id: int) -> List[Payment]:
        stmt = (
            select(Payment)
            .where(
                Payment.subscription_id == sub_id,
                Payment.provider == PaymentProvider.STRIPE.value,
                Payment.purpose == PaymentPurpose.SUBSCRIPTION_RENEWAL.value,
            )
            .order_by(Payment.created_at, Payment.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def _renew_with_stripe(
        self,
        session: AsyncSession,
        sub: Subscription,
        terms: RenewalTerms,
        now: datetime,
    ):
        """
        Returns:
            (action, followup) where followup is an event to feed through
            the payment processor after the commit, or None
        """
        payments = await self._stripe_renewal_payments(session, sub.id)
        pending = next((p for p in payments if not PaymentStatus(p.status).is_terminal), None)

        if pending is not None:
            self._push_out(sub, now, StatusReason.RENEWAL_PAYMENT_PENDING)
            await AdminTaskService.ensure_task(
                session,
                AdminTaskCategory.RENEWAL_PAYMENT_PENDING,
                subscription_entity(sub.id),
                title=f"Subscription {sub.id}: renewal charge pending",
                notes=f"Stripe PaymentIntent {pending.provider_payment_id} is {pending.status}",
                subscription_id=sub.id,
                order_id=sub.order_id,
                user_id=sub.user_id,
            )
            followup = await self._refresh_pending_charge(pending)
            return "payment_pending", followup

        if not sub.billing_customer_id or not sub.billing_payment_method_id:
            await self._escalate(
                session, sub, now,
                AdminTaskCategory.RENEWAL_PAYMENT_FAILED,
                StatusReason.RENEWAL_PAYMENT_FAILED,
                "Card renewal has no saved customer or payment method",
                priority=AdminTaskPriority.HIGH,
            )
            return "payment_failed", None

        if self._stripe is None or not getattr(self._stripe, "enabled", True):
            await self._escalate(
                session, sub, now,
                AdminTaskCategory.RENEWAL_PAYMENT_FAILED,
                StatusReason.RENEWAL_PAYMENT_FAILED,
                "Card processor is not configured",
                priority=AdminTaskPriority.HIGH,
            )
            return "payment_failed", None

        period_end = ensure_utc(sub.end_date)
        period_iso = period_end.isoformat() if period_end else None
        attempt = sum(1 for p in payments if (p.extra_data or {}).get("periodEnd") == period_iso)
        idempotency_key = renewal_idempotency_key(sub.id, period_end, attempt)

        try:
            charge = await self._stripe.create_charge(
                amount_cents=terms.price_cents,
                currency=terms.currency,
                customer_id=sub.billing_customer_id,
                payment_method_id=sub.billing_payment_method_id,
                idempotency_key=idempotency_key,
                metadata={"subscription_id": sub.id, "user_id": sub.user_id, "period_end": period_iso},
                description=f"Subscription {sub.id} renewal",
            )
        except ProviderUnavailableError as e:
            sub.next_billing_at = now + timedelta(minutes=self.config.retry_minutes)
            logger.warning(f"⚠️ Stripe unavailable for subscription {sub.id}, retrying later: {e}")
            return "charge_deferred", None
        except (ChargeError, ProviderError) as e:
            await self._escalate(
                session, sub, now,
                AdminTaskCategory.RENEWAL_PAYMENT_FAILED,
                StatusReason.RENEWAL_PAYMENT_FAILED,
                "Renewal charge failed",
                notes=str(e),
                priority=AdminTaskPriority.HIGH,
            )
            return "payment_failed", None

        existing = next((p for p in payments if p.provider_payment_id == charge.provider_payment_id), None)
        if existing is None:
            session.add(Payment(
                user_id=sub.user_id,
                provider=PaymentProvider.STRIPE.value,
                provider_payment_id=charge.provider_payment_id,
                status=PaymentStatus.PENDING.value,
                purpose=PaymentPurpose.SUBSCRIPTION_RENEWAL.value,
                amount=cents_to_money(terms.price_cents),
                currency=terms.currency,
                order_id=sub.order_id,
                subscription_id=sub.id,
                provider_data=charge.raw,
                extra_data={
                    "periodEnd": period_iso,
                    "termMonths": terms.term_months,
                    "idempotencyKey": idempotency_key,
                },
            ))

        self._push_out(sub, now, StatusReason.RENEWAL_PAYMENT_PENDING)
        await AdminTaskService.ensure_task(
            session,
            AdminTaskCategory.RENEWAL_PAYMENT_PENDING,
            subscription_entity(sub.id),
            title=f"Subscription {sub.id}: renewal charge pending",
            notes=f"Stripe PaymentIntent {charge.provider_payment_id} created",
            subscription_id=sub.id,
            order_id=sub.order_id,
            user_id=sub.user_id,
        )
        logger.info(f"💳 Renewal charge created for subscription {sub.id}: {charge.provider_payment_id}")

        followup = None
        if charge.status != PaymentStatus.PENDING and self.events is not None:
            followup = (
                PaymentProvider.STRIPE.value,
                charge.provider_payment_id,
                charge.status,
                None,
                "stripe_charge",
            )
        return "charge_created", followup

    async def _refresh_pending_charge(self, payment: Payment):
        """Ask Stripe for the current status of a charge no webhook has settled"""
        if self._stripe is None or self.events is None:
            return None
        try:
            status = await self._stripe.retrieve_status(payment.provider_payment_id)
        except ProviderError as e:
            logger.warning(f"Could not refresh Stripe charge {payment.provider_payment_id}: {e}")
            return None
        if status.status == payment.status:
            return None
        return (
            PaymentProvider.STRIPE.value,
            payment.provider_payment_id,
            status.status,
            None,
            "stripe_poll",
        )

    async def complete_card_renewal(self, payment_pk: int) -> bool:
        """
        Advance the period for a renewal charge that finished

        Applied at most once per payment (renewalApplied flag).
        """
        now = datetime.now(UTC)
        async with self._session_maker() as session:
            payment = await session.get(Payment, payment_pk, with_for_update=True)
            if payment is None or payment.subscription_id is None:
                return False
            if (payment.extra_data or {}).get("renewalApplied"):
                return False

            sub = await session.get(Subscription, payment.subscription_id, with_for_update=True)
            if sub is None:
                logger.error(f"❌ Renewal payment {payment.provider_payment_id} has no subscription")
                return False

            if sub.status == SubscriptionStatus.EXPIRED.value:
                # Charge settled after the expiry sweep gave up on it
                logger.warning(f"⚠️ Subscription {sub.id} reactivated by late renewal payment {payment.provider_payment_id}")
                sub.status = SubscriptionStatus.ACTIVE.value
                sub.auto_renew = True

            months = _positive_int((payment.extra_data or {}).get("termMonths")) or sub.term_months or 1
            self._advance_period(sub, months, now)
            sub.status_reason = StatusReason.AUTO_RENEWED_CARD.value
            payment.extra_data = {
                **(payment.extra_data or {}),
                "renewalApplied": True,
                "renewalAppliedAt": now.isoformat(),
            }
            await self._complete_tasks(session, sub.id, AdminTaskCategory.renewal_categories())
            await session.commit()

            logger.info(
                f"✅ Subscription {sub.id} renewed by card payment {payment.provider_payment_id}, "
                f"ends {sub.end_date.isoformat()}"
            )
        return True

    async def fail_card_renewal(self, payment_pk: int) -> bool:
        """Escalate a renewal charge that failed, expired or was refunded"""
        now = datetime.now(UTC)
        async with self._session_maker() as session:
            payment = await session.get(Payment, payment_pk, with_for_update=True)
            if payment is None or payment.subscription_id is None:
                return False
            if (payment.extra_data or {}).get("renewalFailureHandled"):
                return False

            sub = await session.get(Subscription, payment.subscription_id, with_for_update=True)
            if sub is None:
                return False

            await self._complete_tasks(session, sub.id, [AdminTaskCategory.RENEWAL_PAYMENT_PENDING])
            await self._escalate(
                session, sub, now,
                AdminTaskCategory.RENEWAL_PAYMENT_FAILED,
                StatusReason.RENEWAL_PAYMENT_FAILED,
                "Renewal charge failed",
                notes=f"Stripe PaymentIntent {payment.provider_payment_id} ended {payment.status}",
                priority=AdminTaskPriority.HIGH,
            )
            payment.extra_data = {
                **(payment.extra_data or {}),
                "renewalFailureHandled": True,
                "renewalFailedAt": now.isoformat(),
            }
            await session.commit()
        return True

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def run_expiry_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Expire active subscriptions whose period has ended

        Expired subscriptions lose auto-renew and their next billing time,
        their open renewal tasks are closed, and any renewal charge still
        unsettled at Stripe is cancelled so it cannot bill a lapsed plan.

        Returns:
            {"expired": n, "cancelled": n, "skipped": n, "errors": n}
        """
        moment = now or datetime.now(UTC)
        expired_ids = await self.expire_lapsed(moment)
        summary = {"expired": len(expired_ids), "cancelled": 0, "skipped": 0, "errors": 0}
        if expired_ids:
            cleanup = await self.cancel_pending_renewal_charges(expired_ids)
            summary.update(cleanup)
            logger.info(f"⌛ Expiry sweep: {summary}")
        return summary

    async def expire_lapsed(self, now: datetime) -> List[int]:
        """Mark active subscriptions with end_date before now as expired"""
        stmt = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date < now,
            )
            .order_by(Subscription.end_date, Subscription.id)
            .with_for_update(skip_locked=True)
        )
        async with self._session_maker() as session:
            subscriptions = list((await session.execute(stmt)).scalars().all())
            for sub in subscriptions:
                extra = dict(sub.extra_data or {})
                if sub.auto_renew:
                    extra["autoRenewDisabledAt"] = now.isoformat()
                extra["expiredAt"] = now.isoformat()
                sub.status = SubscriptionStatus.EXPIRED.value
                sub.status_reason = StatusReason.EXPIRED.value
                sub.auto_renew = False
                sub.next_billing_at = None
                sub.extra_data = extra
                sub.updated_at = now
                await self._complete_tasks(
                    session, sub.id, AdminTaskCategory.renewal_categories(), completed_by="expiry_sweep"
                )
            await session.commit()
            expired_ids = [sub.id for sub in subscriptions]

        if expired_ids:
            logger.info(f"⌛ Expired {len(expired_ids)} subscription(s): {expired_ids}")
        return expired_ids

    async def cancel_pending_renewal_charges(self, subscription_ids: List[int]) -> Dict[str, int]:
        """
        Cancel unsettled Stripe renewal charges of the given subscriptions

        A charge Stripe refuses to cancel (it already settled) is skipped and
        left to the webhook; an outage or missing key counts as an error and
        the charge is left as it is.
        """
        counts = {"cancelled": 0, "skipped": 0, "errors": 0}
        stripe_ready = self._stripe is not None and getattr(self._stripe, "enabled", True)

        for sub_id in subscription_ids:
            async with self._session_maker() as session:
                payments = await self._stripe_renewal_payments(session, sub_id)
                pending = [p for p in payments if not PaymentStatus(p.status).is_terminal]
                if pending and not stripe_ready:
                    logger.warning(
                        f"⚠️ Stripe not configured, {len(pending)} renewal charge(s) of "
                        f"expired subscription {sub_id} left open"
                    )
                    counts["errors"] += len(pending)
                    continue

                for payment in pending:
                    intent_id = payment.provider_payment_id
                    try:
                        status = await self._stripe.cancel_charge(intent_id)
                    except ChargeError as e:
                        logger.info(f"Renewal charge {intent_id} not cancelled: {e}")
                        counts["skipped"] += 1
                        continue
                    except ProviderError as e:
                        logger.warning(f"⚠️ Could not cancel renewal charge {intent_id}: {e}")
                        counts["errors"] += 1
                        continue

                    await apply_status_transition(
                        session, payment, PaymentStatus.FAILED, "expiry_sweep", provider_data=status.raw
                    )
                    payment.extra_data = {
                        **(payment.extra_data or {}),
                        "renewalFailureHandled": True,
                        "cancelledReason": "subscription_expired",
                    }
                    counts["cancelled"] += 1
                await session.commit()

        return counts

    # ------------------------------------------------------------------
    # Admin task reconciliation
    # ------------------------------------------------------------------

    async def reconcile_open_tasks(self, limit: int = 500) -> int:
        """
        Auto-complete renewal tasks whose cause has gone away

        Returns:
            Number of tasks completed
        """
        completed = 0
        async with self._session_maker() as session:
            tasks = await AdminTaskService.list_open(session, limit=limit)
            for task in tasks:
                try:
                    category = AdminTaskCategory(task.category)
                except ValueError:
                    continue
                if category not in AdminTaskCategory.renewal_categories() or task.subscription_id is None:
                    continue

                sub = await session.get(Subscription, task.subscription_id)
                if not await self._task_resolved(session, category, sub):
                    continue

                task.completed_at = datetime.now(UTC)
                task.completed_by = "reconciliation"
                completed += 1

            await session.commit()

        if completed:
            logger.info(f"✅ Reconciliation closed {completed} admin task(s)")
        return completed

    async def _task_resolved(
        self,
        session: AsyncSession,
        category: AdminTaskCategory,
        sub: Optional[Subscription],
    ) -> bool:
        if sub is None or not sub.auto_renew or sub.status != SubscriptionStatus.ACTIVE.value:
            return True
        if sub.cancellation_requested_at is not None:
            return True

        renewed = sub.status_reason in (
            StatusReason.AUTO_RENEWED_CREDITS.value,
            StatusReason.AUTO_RENEWED_CARD.value,
        )
        if category == AdminTaskCategory.RENEWAL_MISSING_METHOD:
            return bool(sub.renewal_method)
        if category == AdminTaskCategory.RENEWAL_MISSING_PRICE:
            return bool(_positive_int(sub.price_cents))
        if category == AdminTaskCategory.RENEWAL_CURRENCY_MISMATCH:
            return sub.renewal_method != RenewalMethod.CREDITS.value or (
                (sub.currency or "usd").lower() in self.config.credit_currencies
            )
        if category == AdminTaskCategory.RENEWAL_PAYMENT_PENDING:
            payments = await self._stripe_renewal_payments(session, sub.id)
            return all(PaymentStatus(p.status).is_terminal for p in payments)
        return renewed

    def get_status(self) -> Dict[str, Any]:
        return {
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "last_summary": dict(self._last_summary),
            "stripe_configured": bool(self._stripe is not None and getattr(self._stripe, "enabled", True)),
        }
