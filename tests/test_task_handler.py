import importlib
import json
import sys
from types import SimpleNamespace

from fakes import FakeCognito
from fakes import FakeDynamoDB
from fakes import FakeSns

POOL_ID = "us-east-1_Pool123"
ISSUER = f"https://cognito-idp.us-east-1.amazonaws.com/{POOL_ID}"
TOPIC_ARN = "arn:aws:sns:us-east-1:123456789012:todo-task-events"
CONTEXT = SimpleNamespace(aws_request_id="lambda-1", function_name="TodoTaskHandler")

USERS = {
    (POOL_ID, "bob"): {"email": "bob@x.com"},
    (POOL_ID, "root"): {"email": "root@x.com"},
}


def _load_handler(monkeypatch):
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    monkeypatch.setenv("TODO_TASKS_TABLE", "TodoTasks")
    monkeypatch.setenv("TODO_TASKS_OWNER_INDEX", "ownerEmail-index")
    monkeypatch.setenv("TODO_EVENTS_TOPIC_ARN", TOPIC_ARN)
    monkeypatch.setenv("TODO_SCHEMA_VERSION", "2026-10-01")
    if "lambda" not in sys.path:
        sys.path.insert(0, "lambda")
    import task_handler as mod

    return importlib.reload(mod)


def _wire(monkeypatch, mod, *, sns=None):
    ddb = FakeDynamoDB()
    sns = sns or FakeSns()
    from task_auth import AuthorizationGate
    from task_events import EventPublisher
    from task_store import TaskStore

    service = mod.TaskService(
        store=TaskStore(ddb, "TodoTasks", "ownerEmail-index"),
        gate=AuthorizationGate(FakeCognito(USERS)),
        publisher=EventPublisher(sns, TOPIC_ARN),
    )
    monkeypatch.setattr(mod, "_task_service", lambda: service)
    return ddb, sns, service


def _api_event(
    *,
    method: str,
    resource: str,
    body: dict | None = None,
    qs: dict | None = None,
    path_params: dict | None = None,
    username: str = "bob",
    scope: str = "aws.cognito.signin.user.admin",
):
    return {
        "httpMethod": method,
        "resource": resource,
        "body": json.dumps(body) if body is not None else None,
        "queryStringParameters": qs or None,
        "pathParameters": path_params or None,
        "requestContext": {
            "requestId": "req-1",
            "authorizer": {
                "claims": {
                    "iss": ISSUER,
                    "username": username,
                    "scope": scope,
                }
            },
        },
    }


def _create_body(owner_email: str = "bob@x.com", title: str = "A"):
    return {
        "title": title,
        "description": "d",
        "owner": {"name": "Bob", "email": owner_email},
        "assignedBy": {"name": "Ann", "email": "ann@x.com"},
    }


def _seed(mod, monkeypatch, **kwargs):
    out = mod.handler(_api_event(method="POST", resource="/tasks", body=_create_body(**kwargs)), CONTEXT)
    return json.loads(out["body"])["task"]


def test_create_persists_and_publishes_insert_event(monkeypatch):
    mod = _load_handler(monkeypatch)
    ddb, sns, _ = _wire(monkeypatch, mod)

    out = mod.handler(_api_event(method="POST", resource="/tasks", body=_create_body()), CONTEXT)
    body = json.loads(out["body"])

    assert out["statusCode"] == 201
    assert body["requestId"] == "req-1"
    assert body["schemaVersion"] == "2026-10-01"
    task = body["task"]
    assert task["taskId"].startswith("TID-")
    assert task["taskStatus"] == "PENDING"
    assert task["archived"] is False
    assert len(ddb.items) == 1

    envelope = sns.envelopes()[0]
    assert envelope["requestId"] == "req-1"
    assert envelope["requestLambdaId"] == "lambda-1"
    assert envelope["origin"] == "TodoTaskHandler"
    event = sns.events()[0]
    assert event["actionType"] == "INSERT"
    assert event["eventType"] == "SINGLE_TASK"
    assert event["taskId"] == task["taskId"]
    assert event["createdBy"] == {"creatorName": "Ann", "email": "ann@x.com"}


def test_create_for_other_owner_is_forbidden_without_side_effects(monkeypatch):
    mod = _load_handler(monkeypatch)
    ddb, sns, _ = _wire(monkeypatch, mod)

    out = mod.handler(
        _api_event(method="POST", resource="/tasks", body=_create_body(owner_email="eve@x.com")),
        CONTEXT,
    )

    assert out["statusCode"] == 403
    assert json.loads(out["body"])["errorCode"] == "FORBIDDEN"
    assert ddb.items == {}
    assert ddb.op_count("put_item") == 0
    assert sns.published == []


def test_admin_may_create_for_other_owner(monkeypatch):
    mod = _load_handler(monkeypatch)
    ddb, _, _ = _wire(monkeypatch, mod)

    out = mod.handler(
        _api_event(
            method="POST",
            resource="/tasks",
            body=_create_body(owner_email="eve@x.com"),
            username="root",
            scope="admin",
        ),
        CONTEXT,
    )

    assert out["statusCode"] == 201
    assert [key[1] for key in ddb.items] == ["eve@x.com"]


def test_create_rejects_invalid_body(monkeypatch):
    mod = _load_handler(monkeypatch)
    ddb, _, _ = _wire(monkeypatch, mod)
    event = _api_event(method="POST", resource="/tasks")
    event["body"] = "{not json"

    out = mod.handler(event, CONTEXT)
    assert out["statusCode"] == 400
    assert json.loads(out["body"])["errorCode"] == "INVALID_REQUEST"

    out = mod.handler(_api_event(method="POST", resource="/tasks", body={"title": "A"}), CONTEXT)
    assert out["statusCode"] == 400
    assert "owner" in json.loads(out["body"])["message"]
    assert ddb.items == {}


def test_publish_failure_on_create_maps_to_400(monkeypatch):
    mod = _load_handler(monkeypatch)
    _wire(monkeypatch, mod, sns=FakeSns(fail=True))

    out = mod.handler(_api_event(method="POST", resource="/tasks", body=_create_body()), CONTEXT)
    body = json.loads(out["body"])

    assert out["statusCode"] == 400
    assert body["errorCode"] == "PUBLISH_FAILED"


def test_read_by_email_lists_owner_tasks(monkeypatch):
    mod = _load_handler(monkeypatch)
    _, sns, _ = _wire(monkeypatch, mod)
    _seed(mod, monkeypatch, title="A")
    _seed(mod, monkeypatch, title="B")
    published = len(sns.published)

    event = _api_event(method="GET", resource="/tasks", qs={"email": "bob@x.com"})
    first = json.loads(mod.handler(event, CONTEXT)["body"])["items"]
    second = json.loads(mod.handler(event, CONTEXT)["body"])["items"]

    assert sorted(t["title"] for t in first) == ["A", "B"]
    assert first == second
    assert len(sns.published) == published


def test_read_single_task_and_miss(monkeypatch):
    mod = _load_handler(monkeypatch)
    _wire(monkeypatch, mod)
    task = _seed(mod, monkeypatch)

    out = mod.handler(
        _api_event(method="GET", resource="/tasks", qs={"email": "bob@x.com", "taskid": task["taskId"]}),
        CONTEXT,
    )
    assert out["statusCode"] == 200
    assert json.loads(out["body"])["task"] == task

    out = mod.handler(
        _api_event(method="GET", resource="/tasks", qs={"email": "bob@x.com", "taskid": "TID-404"}),
        CONTEXT,
    )
    assert out["statusCode"] == 404
    assert json.loads(out["body"])["errorCode"] == "TASK_NOT_FOUND"


def test_read_other_owner_is_forbidden(monkeypatch):
    mod = _load_handler(monkeypatch)
    ddb, _, _ = _wire(monkeypatch, mod)

    out = mod.handler(_api_event(method="GET", resource="/tasks", qs={"email": "eve@x.com"}), CONTEXT)

    assert out["statusCode"] == 403
    assert ddb.calls == []


def test_read_all_requires_admin(monkeypatch):
    mod = _load_handler(monkeypatch)
    ddb, _, _ = _wire(monkeypatch, mod)
    _seed(mod, monkeypatch)

    out = mod.handler(_api_event(method="GET", resource="/tasks"), CONTEXT)
    assert out["statusCode"] == 403
    assert ddb.op_count("scan") == 0

    out = mod.handler(_api_event(method="GET", resource="/tasks", username="root", scope="admin"), CONTEXT)
    assert out["statusCode"] == 200
    assert len(json.loads(out["body"])["items"]) == 1
    assert ddb.op_count("scan") == 1


def test_update_status_publishes_update_event(monkeypatch):
    mod = _load_handler(monkeypatch)
    _, sns, _ = _wire(monkeypatch, mod)
    task = _seed(mod, monkeypatch)

    out = mod.handler(
        _api_event(
            method="PUT",
            resource="/tasks/{email}/{id}",
            path_params={"email": "bob@x.com", "id": task["taskId"]},
            body={"newStatus": "COMPLETED"},
        ),
        CONTEXT,
    )
    body = json.loads(out["body"])

    assert out["statusCode"] == 204
    assert body["task"]["taskStatus"] == "COMPLETED"
    assert task["taskId"] in body["message"]
    assert sns.events()[-1]["actionType"] == "UPDATE"
    assert sns.events()[-1]["eventType"] == "SINGLE_TASK"


def test_update_of_missing_task_is_not_found_and_publishes_nothing(monkeypatch):
    mod = _load_handler(monkeypatch)
    _, sns, _ = _wire(monkeypatch, mod)

    out = mod.handler(
        _api_event(
            method="PUT",
            resource="/tasks/{email}/{id}",
            path_params={"email": "bob@x.com", "id": "TID-404"},
            body={"newStatus": "COMPLETED"},
        ),
        CONTEXT,
    )

    assert out["statusCode"] == 404
    assert sns.published == []


def test_update_rejects_unknown_status_without_store_write(monkeypatch):
    mod = _load_handler(monkeypatch)
    ddb, _, _ = _wire(monkeypatch, mod)
    task = _seed(mod, monkeypatch)

    out = mod.handler(
        _api_event(
            method="PUT",
            resource="/tasks/{email}/{id}",
            path_params={"email": "bob@x.com", "id": task["taskId"]},
            body={"newStatus": "WHATEVER"},
        ),
        CONTEXT,
    )

    assert out["statusCode"] == 400
    assert json.loads(out["body"])["errorCode"] == "INVALID_REQUEST"
    assert ddb.op_count("update_item") == 0


def test_update_for_other_owner_is_forbidden(monkeypatch):
    mod = _load_handler(monkeypatch)
    ddb, sns, _ = _wire(monkeypatch, mod)

    out = mod.handler(
        _api_event(
            method="PUT",
            resource="/tasks/{email}/{id}",
            path_params={"email": "eve@x.com", "id": "TID-1"},
            body={"newStatus": "COMPLETED"},
        ),
        CONTEXT,
    )

    assert out["statusCode"] == 403
    assert ddb.calls == []
    assert sns.published == []


def test_delete_returns_snapshot_and_publishes_delete_event(monkeypatch):
    mod = _load_handler(monkeypatch)
    ddb, sns, _ = _wire(monkeypatch, mod)
    task = _seed(mod, monkeypatch)

    out = mod.handler(
        _api_event(
            method="DELETE",
            resource="/tasks/{email}/{id}",
            path_params={"email": "bob@x.com", "id": task["taskId"]},
        ),
        CONTEXT,
    )
    body = json.loads(out["body"])

    assert out["statusCode"] == 204
    assert body["task"] == task
    assert ddb.items == {}
    event = sns.events()[-1]
    assert event["actionType"] == "DELETE"
    assert event["eventType"] == "SINGLE_TASK"
    assert event["taskId"] == task["taskId"]
    assert event["title"] == task["title"]
    assert event["owner"] == {"ownerName": "Bob", "email": "bob@x.com"}


def test_delete_of_missing_task_is_not_found(monkeypatch):
    mod = _load_handler(monkeypatch)
    _, sns, _ = _wire(monkeypatch, mod)

    out = mod.handler(
        _api_event(
            method="DELETE",
            resource="/tasks/{email}/{id}",
            path_params={"email": "bob@x.com", "id": "TID-404"},
        ),
        CONTEXT,
    )

    assert out["statusCode"] == 404
    assert sns.published == []


def test_unresolvable_caller_is_unauthorized(monkeypatch):
    mod = _load_handler(monkeypatch)
    ddb, _, _ = _wire(monkeypatch, mod)

    out = mod.handler(
        _api_event(method="GET", resource="/tasks", qs={"email": "ghost@x.com"}, username="ghost"),
        CONTEXT,
    )

    assert out["statusCode"] == 401
    assert json.loads(out["body"])["errorCode"] == "IDENTITY_LOOKUP_FAILED"
    assert ddb.calls == []


def test_unknown_route_returns_404(monkeypatch):
    mod = _load_handler(monkeypatch)
    _wire(monkeypatch, mod)

    out = mod.handler(_api_event(method="PATCH", resource="/tasks"), CONTEXT)

    assert out["statusCode"] == 404
    assert json.loads(out["body"])["errorCode"] == "NOT_FOUND"


def test_missing_configuration_returns_500(monkeypatch):
    mod = _load_handler(monkeypatch)
    monkeypatch.setattr(mod, "EVENTS_TOPIC_ARN", "")

    out = mod.handler(_api_event(method="GET", resource="/tasks"), CONTEXT)

    assert out["statusCode"] == 500
    assert json.loads(out["body"])["errorCode"] == "MISCONFIGURED"


def test_handler_emits_one_structured_log_line(monkeypatch, capsys):
    mod = _load_handler(monkeypatch)
    _wire(monkeypatch, mod)

    mod.handler(_api_event(method="GET", resource="/tasks", qs={"email": "bob@x.com"}), CONTEXT)
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]

    assert len(lines) == 1
    log = json.loads(lines[0])
    assert log["event"] == "todo_tasks_api"
    assert log["status_code"] == 200
    assert log["outcome"] == "success"
    assert log["request_id"] == "req-1"
