"""
Shared fixtures: in-memory SQLite target database, fakeredis progress store,
and helpers that lay out an import run the way the HTTP flow would.
"""

import os
import tempfile

# Settings are read once; point them at throwaway resources before any import.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("UPLOADS_DIR", tempfile.mkdtemp(prefix="dbimport-tests-"))
os.environ.setdefault("MEMORY_LIMIT", "-1")

import fakeredis
import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table
from sqlalchemy.orm import sessionmaker

from dbimport.db.session import create_db_engine, init_db
from dbimport.services import table_inspector
from dbimport.services.progress_store import ProgressStore

OPERATOR = "operator-1"


@pytest.fixture(autouse=True)
def clear_table_cache():
    table_inspector.clear_cache()
    yield
    table_inspector.clear_cache()


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(bind=engine)
    metadata = MetaData()
    Table(
        "contacts",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(100), nullable=False),
        Column("email", String(255), unique=True),
        Column("city", String(100)),
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def store(redis_client):
    return ProgressStore(redis_client, ttl=3600)


@pytest.fixture
def write_file(tmp_path):
    """Write text (or bytes) to a file under tmp_path and return its path."""

    def _write(name, content):
        path = tmp_path / name
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def configure_run(store):
    """Store a ready-to-run import configuration for OPERATOR."""

    def _configure(path, mapping, table="contacts", headers=None, **options):
        store.set_run_data(
            OPERATOR,
            "file",
            {
                "name": path.name,
                "path": str(path),
                "extension": path.suffix.lstrip("."),
                "size": path.stat().st_size,
            },
        )
        store.set_run_data(OPERATOR, "target_table", table)
        store.set_run_data(OPERATOR, "mapping", mapping)
        if headers is not None:
            store.set_run_data(OPERATOR, "headers", headers)
        store.set_run_data(OPERATOR, "import_mode", options.get("import_mode", "insert"))
        store.set_run_data(OPERATOR, "key_columns", options.get("key_columns", []))
        store.set_run_data(OPERATOR, "allow_null", options.get("allow_null", False))
        store.set_run_data(OPERATOR, "dry_run", options.get("dry_run", False))
        if "total_records" in options:
            store.set_run_data(OPERATOR, "total_records", options["total_records"])

    return _configure


def contacts_csv(count, start=1):
    lines = ["id,name,email"]
    for i in range(start, start + count):
        lines.append(f"{i},Person {i},person{i}@example.com")
    return "\n".join(lines) + "\n"


BASIC_MAPPING = {
    "id": {"skip": True},
    "name": {"source_field": "name"},
    "email": {"source_field": "email", "transform": "lowercase"},
}
