from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, String

from server.db.base_class import Base


class CacheEntry(Base):
    __tablename__ = "nowpayments_cache"

    cache_key = Column(String(255), primary_key=True)
    cache_data = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
