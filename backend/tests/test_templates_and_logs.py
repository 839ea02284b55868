import json

from dbimport.services import mapping_templates
from dbimport.services.import_logs import errors_to_csv, list_logs, write_import_log
from dbimport.services.mapping import parse_mapping

MAPPING = parse_mapping({"name": {"source_field": "full_name", "transform": "trim"}})


def test_template_save_load_list_delete(session):
    mapping_templates.save_template(session, "people", MAPPING, "contacts")
    mapping_templates.save_template(session, "archive", MAPPING, "archive")
    session.commit()

    loaded = mapping_templates.load_template(session, "people")
    assert loaded["table"] == "contacts"
    assert loaded["mapping"]["name"]["source_field"] == "full_name"
    assert [t["name"] for t in mapping_templates.list_templates(session)] == ["archive", "people"]
    assert [t["name"] for t in mapping_templates.list_templates(session, "contacts")] == ["people"]

    assert mapping_templates.delete_template(session, "people") is True
    assert mapping_templates.delete_template(session, "people") is False
    assert mapping_templates.load_template(session, "people") is None


def test_saving_template_with_same_name_replaces_it(session):
    mapping_templates.save_template(session, "people", MAPPING, "contacts")
    mapping_templates.save_template(session, "people", MAPPING, "customers")
    assert [t["table"] for t in mapping_templates.list_templates(session)] == ["customers"]


def _log(session, status="completed", failed=0):
    return write_import_log(
        session,
        user_id="operator-1",
        file_name="people.csv",
        table_name="contacts",
        stats={"processed": 3, "inserted": 3 - failed, "failed": failed},
        errors=[{"row": 2, "message": "boom"}] if failed else [],
        status=status,
        duration=1.6,
    )


def test_write_import_log(session):
    log = _log(session, status="completed_with_errors", failed=1)
    assert log.id is not None
    assert log.duration == 2
    assert (log.total_rows, log.inserted, log.failed) == (3, 2, 1)
    assert json.loads(log.error_log) == [{"row": 2, "message": "boom"}]


def test_list_logs_is_paginated_newest_first(session):
    ids = [_log(session).id for _ in range(5)]

    page = list_logs(session, page=1, per_page=2)
    assert page["total"] == 5
    assert page["pages"] == 3
    assert [item["id"] for item in page["items"]] == [ids[4], ids[3]]

    assert list_logs(session, page=1, per_page=1000)["per_page"] == 100


def test_errors_to_csv_quotes_messages():
    body = errors_to_csv([{"row": 4, "message": 'bad value "x", again'}])
    assert body.splitlines() == ["Row,Error Message", '4,"bad value ""x"", again"']
