# server/models/transaction.py
import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from server.db.base_class import Base


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Идентификатор платежа в NOWPayments, основной ключ для вебхуков
    nowpayments_payment_id = Column(String(64), nullable=True, index=True)
    order_id = Column(String(128), nullable=True, index=True)

    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=True)
    payment_link_id = Column(String(36), ForeignKey("payment_links.id"), nullable=True)

    # pending | confirming | confirmed | failed | refunded | expired
    # (или неизвестный статус шлюза как есть)
    status = Column(String(64), nullable=False, default="pending", index=True)
    raw_gateway_status = Column(String(64), nullable=True)

    # Что выставили покупателю
    amount = Column(Numeric(20, 8), nullable=True)
    currency = Column(String(16), nullable=True)
    pay_amount = Column(Numeric(20, 8), nullable=True)
    pay_currency = Column(String(16), nullable=True)
    pay_address = Column(String(128), nullable=True)

    # Хэши транзакций в блокчейне
    payin_hash = Column(String(128), nullable=True)
    payout_hash = Column(String(128), nullable=True)
    tx_hash = Column(String(128), nullable=True)

    amount_received = Column(Numeric(20, 8), nullable=True)
    currency_received = Column(String(16), nullable=True)
    merchant_receives = Column(Numeric(20, 8), nullable=True)
    payout_currency = Column(String(16), nullable=True)
    gateway_fee = Column(Numeric(20, 8), nullable=False, default=0)

    # Диагностические идентификаторы из вебхуков, только дополняются
    payment_data = Column(JSON, nullable=False, default=dict)

    # Счётчик для оптимистичной блокировки
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    payment_link = relationship("PaymentLink", back_populates="transactions")
    merchant = relationship("Merchant")
