import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from server.db.base_class import Base


class PaymentLink(Base):
    __tablename__ = "payment_links"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=True)
    title = Column(String(255), nullable=False, default="")
    # manual | subscription | pos
    source = Column(String(32), nullable=False, default="manual")
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=True)

    # customer_email, email_receipts_enabled, ...
    link_metadata = Column("metadata", JSON, nullable=False, default=dict)

    current_uses = Column(Integer, nullable=False, default=0)
    last_payment_at = Column(DateTime, nullable=True)

    merchant = relationship("Merchant", back_populates="payment_links")
    subscription = relationship("Subscription")
    transactions = relationship("Transaction", back_populates="payment_link")
