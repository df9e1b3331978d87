import json
import sys

import pytest


def _load_module():
    if "lambda" not in sys.path:
        sys.path.insert(0, "lambda")
    import task_model as module

    return module


def _record(m, **overrides):
    fields = dict(
        task_id="TID-1",
        owner_email="bob@x.com",
        title="A",
        description="d",
        status=m.STATUS_PENDING,
        archived=False,
        created_at="2026-10-01T00:00:00.000000Z",
        owner=m.Person(name="Bob", email="bob@x.com"),
        assigned_by=m.Person(name="Ann", email="ann@x.com"),
    )
    fields.update(overrides)
    return m.TaskRecord(**fields)


def test_event_survives_envelope_content_roundtrip():
    m = _load_module()
    event = m.TodoTaskEvent(
        event_type=m.EVENT_BATCH_TASK,
        action_type=m.ACTION_INSERT,
        task_id="TID-1,TID-2",
        title="A,B",
        owner=m.Person(name="Bob", email="bob@x.com"),
        created_by=m.Person(name="Ann", email="ann@x.com"),
    )
    envelope = m.NotificationEnvelope.wrap(
        event, request_id="req-1", request_lambda_id="lambda-1", origin="fn"
    )
    wire = json.dumps(envelope.to_json())
    decoded = m.NotificationEnvelope.from_json(json.loads(wire))

    assert decoded == envelope
    assert decoded.event() == event
    assert json.loads(envelope.content)["createdBy"] == {"creatorName": "Ann", "email": "ann@x.com"}


def test_record_item_shape_uses_composite_key():
    m = _load_module()
    record = _record(m, deadline="2024-01-01")
    item = record.to_item()

    assert item["pk"] == "TID-1"
    assert item["sk"] == "bob@x.com"
    assert item["taskStatus"] == "PENDING"
    assert item["owner"] == {"ownerName": "Bob", "email": "bob@x.com"}
    assert item["assignedBy"] == {"assignedByName": "Ann", "email": "ann@x.com"}
    assert m.TaskRecord.from_item(item) == record


def test_record_rejects_owner_email_mismatch():
    m = _load_module()
    with pytest.raises(ValueError):
        _record(m, owner_email="eve@x.com")


def test_with_status_changes_only_status():
    m = _load_module()
    record = _record(m)
    updated = record.with_status(m.STATUS_COMPLETED)

    assert updated.status == "COMPLETED"
    assert updated.to_item() | {"taskStatus": "PENDING"} == record.to_item()


def test_parse_status_validates_against_known_set():
    m = _load_module()
    from task_errors import ValidationError

    assert m.parse_status(" in_progress ") == "IN_PROGRESS"
    with pytest.raises(ValidationError):
        m.parse_status("ARCHIVED")
    with pytest.raises(ValidationError):
        m.parse_status(None)


def test_envelope_event_rejects_non_object_content():
    m = _load_module()
    envelope = m.NotificationEnvelope(
        request_id="r", request_lambda_id="l", origin="o", date="d", content="[1,2]"
    )
    with pytest.raises(ValueError):
        envelope.event()
