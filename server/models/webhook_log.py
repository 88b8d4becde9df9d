from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from server.db.base_class import Base


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False)
    event_id = Column(String(128), nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_logs_provider_event"),
    )
