"""
AppSetting Model - Durable key/value records

Holds the scrape run-state (progress snapshot, lock, cancel flag,
schedule bookkeeping, history) and operator-tunable schedule values.
Each key is a single current-state row, overwritten in place.
"""

from sqlalchemy import Column, String, JSON, DateTime
from sqlalchemy.sql import func
from jobfeed.database import Base


class AppSetting(Base):
    """
    Single key/value row.

    Attributes:
        key: Setting name (primary key)
        value: Arbitrary JSON value
        updated_at: Last write time
    """

    __tablename__ = "app_settings"

    key = Column(String(200), primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
