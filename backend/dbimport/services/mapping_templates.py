"""Named mapping presets kept in the options table."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from dbimport.db.models.option import Option
from dbimport.services.mapping import ColumnMapping, dump_mapping

logger = logging.getLogger(__name__)

TEMPLATES_OPTION = "dbip_mapping_templates"


def _load_all(db: Session) -> dict[str, dict[str, Any]]:
    option = db.get(Option, TEMPLATES_OPTION)
    if option is None:
        return {}
    try:
        templates = json.loads(option.value)
    except ValueError:
        logger.warning("Mapping templates option is corrupt, starting over")
        return {}
    return templates if isinstance(templates, dict) else {}


def _store_all(db: Session, templates: dict[str, dict[str, Any]]) -> None:
    option = db.get(Option, TEMPLATES_OPTION)
    if option is None:
        option = Option(name=TEMPLATES_OPTION, value="{}")
        db.add(option)
    option.value = json.dumps(templates)
    db.flush()


def save_template(db: Session, name: str, mapping: ColumnMapping, table: str) -> dict[str, Any]:
    """Create or replace a template."""
    name = name.strip()
    if not name:
        raise ValueError("Template name is required")
    templates = _load_all(db)
    template = {
        "name": name,
        "mapping": dump_mapping(mapping),
        "table": table,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    templates[name] = template
    _store_all(db, templates)
    logger.info(f"Saved mapping template {name!r} for table {table}")
    return template


def load_template(db: Session, name: str) -> dict[str, Any] | None:
    return _load_all(db).get(name)


def list_templates(db: Session, table: str | None = None) -> list[dict[str, Any]]:
    templates = _load_all(db).values()
    if table:
        templates = [t for t in templates if t.get("table") == table]
    return sorted(templates, key=lambda t: t["name"])


def delete_template(db: Session, name: str) -> bool:
    templates = _load_all(db)
    if templates.pop(name, None) is None:
        return False
    _store_all(db, templates)
    logger.info(f"Deleted mapping template {name!r}")
    return True
