"""Side effects of a confirmed payment on payment links and subscriptions."""

import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from server.db.base import PaymentLink, Subscription, SubscriptionInvoice


async def increment_payment_link_usage(db: AsyncSession, link: PaymentLink) -> None:
    await db.execute(
        update(PaymentLink)
        .where(PaymentLink.id == link.id)
        .values(current_uses=PaymentLink.current_uses + 1, last_payment_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def settle_subscription_invoice(db: AsyncSession, link: PaymentLink) -> int:
    """Mark the link's unpaid invoices paid and count one more billing cycle.

    Returns the number of invoices that changed.
    """
    if not link.subscription_id:
        return 0

    result = await db.execute(
        update(SubscriptionInvoice)
        .where(
            SubscriptionInvoice.payment_link_id == link.id,
            SubscriptionInvoice.status != "paid",
        )
        .values(status="paid", paid_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    settled = result.rowcount or 0
    if settled:
        await db.execute(
            update(Subscription)
            .where(Subscription.id == link.subscription_id)
            .values(total_cycles=Subscription.total_cycles + 1)
            .execution_options(synchronize_session=False)
        )
    await db.commit()
    return settled


async def resume_paused_subscription(db: AsyncSession, link: PaymentLink) -> bool:
    if link.source != "subscription" or not link.subscription_id:
        return False

    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == link.subscription_id,
            Subscription.status == "paused",
            Subscription.auto_resume_on_payment.is_(True),
        )
        .values(status="active", paused_at=None, resumed_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    resumed = bool(result.rowcount)
    if resumed:
        logging.info("Subscription %s resumed after payment", link.subscription_id)
    return resumed
