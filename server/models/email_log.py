from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from server.db.base_class import Base


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=False)
    # customer_receipt | merchant_notification
    type = Column(String(32), nullable=False)
    # sent | queued | failed
    status = Column(String(16), nullable=False)
    error_message = Column(Text, nullable=True)
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
