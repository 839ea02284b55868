"""Durable, append-only record of every finished import run."""

from sqlalchemy import Column, Index, Integer, String, Text
from sqlalchemy.types import DateTime

from dbimport.db.base import Base

STATUS_COMPLETED = "completed"
STATUS_COMPLETED_WITH_ERRORS = "completed_with_errors"
STATUS_FAILED = "failed"


class ImportLog(Base):
    __tablename__ = "dbip_import_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    import_date = Column(DateTime(timezone=True), nullable=False)
    file_name = Column(String(255), nullable=False)
    table_name = Column(String(255), nullable=False)
    total_rows = Column(Integer, nullable=False, default=0)
    inserted = Column(Integer, nullable=False, default=0)
    updated = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    error_log = Column(Text)
    status = Column(String(50), nullable=False)
    duration = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_dbip_import_logs_user_date", user_id, import_date),
        Index("ix_dbip_import_logs_status", status),
    )
