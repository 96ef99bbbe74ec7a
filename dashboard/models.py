"""
Database models for the wallpaper cache
SQLAlchemy ORM models for binary cache entries and day markers
"""
from datetime import datetime
from sqlalchemy import Column, String, LargeBinary, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CacheRecord(Base):
    """
    Binary cache entry - one payload per opaque key
    Wallpaper images and their JSON metadata both live here
    """
    __tablename__ = "cache_records"

    key = Column(String, primary_key=True)
    payload = Column(LargeBinary, nullable=False)
    mime_type = Column(String, nullable=False, default="application/octet-stream")
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    expires_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<CacheRecord(key='{self.key}', size={len(self.payload or b'')}, expires_at={self.expires_at})>"


class DayMarker(Base):
    """
    Small durable string values (success markers, daily-check gate)
    """
    __tablename__ = "day_markers"

    name = Column(String, primary_key=True)
    value = Column(String, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    def __repr__(self):
        return f"<DayMarker(name='{self.name}', value='{self.value}')>"
