"""Key-value settings store (mapping templates and similar presets)."""

from sqlalchemy import Column, String, Text
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from dbimport.db.base import Base


class Option(Base):
    __tablename__ = "dbip_options"

    name = Column(String(191), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
