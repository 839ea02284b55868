"""Database models package."""
from dbimport.db.models.import_log import ImportLog
from dbimport.db.models.option import Option

__all__ = ["ImportLog", "Option"]
