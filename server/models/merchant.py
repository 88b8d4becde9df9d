import uuid

from sqlalchemy import BigInteger, Column, String
from sqlalchemy.orm import relationship

from server.db.base_class import Base


class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    business_name = Column(String(255), nullable=False, default="")
    email = Column(String(255), nullable=True)
    # Куда слать уведомления о платежах в Telegram (необязательно)
    telegram_chat_id = Column(BigInteger, nullable=True)

    payment_links = relationship("PaymentLink", back_populates="merchant")
