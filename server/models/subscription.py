import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from server.db.base_class import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=True)
    title = Column(String(255), nullable=False, default="")
    # active | paused | cancelled
    status = Column(String(16), nullable=False, default="active", index=True)
    auto_resume_on_payment = Column(Boolean, nullable=False, default=False)
    total_cycles = Column(Integer, nullable=False, default=0)
    paused_at = Column(DateTime, nullable=True)
    resumed_at = Column(DateTime, nullable=True)

    invoices = relationship("SubscriptionInvoice", back_populates="subscription")


class SubscriptionInvoice(Base):
    __tablename__ = "subscription_invoices"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False)
    payment_link_id = Column(String(36), ForeignKey("payment_links.id"), nullable=True, index=True)
    status = Column(String(16), nullable=False, default="sent")
    paid_at = Column(DateTime, nullable=True)

    subscription = relationship("Subscription", back_populates="invoices")
