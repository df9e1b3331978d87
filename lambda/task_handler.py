from __future__ import annotations

import base64
import json
import os
import time
from dataclasses import dataclass
from typing import Any, Callable

import boto3
from botocore.exceptions import ClientError
from task_auth import AuthorizationGate
from task_auth import Caller
from task_auth import claims_from_event
from task_errors import ForbiddenError
from task_errors import IdentityLookupError
from task_errors import TaskError
from task_errors import ValidationError
from task_events import EventPublisher
from task_ids import TaskIdGenerator
from task_model import ACTION_DELETE
from task_model import ACTION_INSERT
from task_model import ACTION_UPDATE
from task_model import EVENT_SINGLE_TASK
from task_model import STATUS_PENDING
from task_model import Person
from task_model import TaskRecord
from task_model import now_iso
from task_model import parse_status
from task_store import TaskStore

TASKS_TABLE_NAME = os.environ.get("TODO_TASKS_TABLE", "")
TASKS_OWNER_INDEX = os.environ.get("TODO_TASKS_OWNER_INDEX", "ownerEmail-index")
EVENTS_TOPIC_ARN = os.environ.get("TODO_EVENTS_TOPIC_ARN", "")
SCHEMA_VERSION = os.environ.get("TODO_SCHEMA_VERSION", "2026-10-01")

TASKS_RESOURCE = "/tasks"
TASK_ITEM_RESOURCE = "/tasks/{email}/{id}"

_ddb_client = None
_sns_client = None
_cognito_client = None
_service: TaskService | None = None


def _aws_region() -> str | None:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")


def _ddb():
    global _ddb_client
    if _ddb_client is None:
        _ddb_client = boto3.client("dynamodb", region_name=_aws_region())
    return _ddb_client


def _sns():
    global _sns_client
    if _sns_client is None:
        _sns_client = boto3.client("sns", region_name=_aws_region())
    return _sns_client


def _cognito():
    global _cognito_client
    if _cognito_client is None:
        _cognito_client = boto3.client("cognito-idp", region_name=_aws_region())
    return _cognito_client


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    lambda_id: str
    origin: str


def _failure(exc: TaskError) -> tuple[int, dict[str, Any]]:
    return exc.status_code, {"errorCode": exc.error_code, "message": exc.message}


def _store_failure(exc: ClientError) -> tuple[int, dict[str, Any]]:
    return 400, {"errorCode": "STORE_ERROR", "message": str(exc)}


def _person(raw: Any, field: str) -> Person:
    if not isinstance(raw, dict):
        raise ValidationError(f"{field} must be an object with name and email")
    name = str(raw.get("name") or "").strip()
    email = str(raw.get("email") or "").strip()
    if not email:
        raise ValidationError(f"{field}.email is required")
    return Person(name=name, email=email)


class TaskService:
    def __init__(
        self,
        store: TaskStore,
        gate: AuthorizationGate,
        publisher: EventPublisher,
        id_generator_factory: Callable[[], TaskIdGenerator] = TaskIdGenerator,
    ) -> None:
        self.store = store
        self.gate = gate
        self.publisher = publisher
        self._id_generator_factory = id_generator_factory

    def read(self, caller: Caller, email: str, task_id: str) -> tuple[int, dict[str, Any]]:
        try:
            if not email:
                if not caller.is_admin:
                    raise ForbiddenError("Forbidden")
                return 200, {"items": [r.to_json() for r in self.store.list_all()]}

            self.gate.enforce_ownership(email, caller)
            if task_id:
                return 200, {"task": self.store.get(email, task_id).to_json()}
            return 200, {"items": [r.to_json() for r in self.store.list_by_owner(email)]}
        except TaskError as e:
            return _failure(e)

    def build_record(self, body: dict[str, Any]) -> TaskRecord:
        title = str(body.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required")
        owner = _person(body.get("owner"), "owner")
        assigned_by = _person(body.get("assignedBy"), "assignedBy")
        return TaskRecord(
            task_id=self._id_generator_factory().next_id(),
            owner_email=owner.email,
            title=title,
            description=str(body.get("description") or ""),
            status=STATUS_PENDING,
            archived=False,
            created_at=now_iso(),
            owner=owner,
            assigned_by=assigned_by,
            deadline=str(body.get("deadline") or "").strip(),
        )

    def create(self, caller: Caller, body: dict[str, Any], ctx: RequestContext) -> tuple[int, dict[str, Any]]:
        try:
            record = self.build_record(body)
            self.gate.enforce_ownership(record.owner_email, caller)
            stored = self.store.create(record)
            self._notify(ACTION_INSERT, stored, ctx)
        except TaskError as e:
            return _failure(e)
        except ClientError as e:
            return _store_failure(e)
        return 201, {"task": stored.to_json()}

    def update_status(
        self,
        caller: Caller,
        email: str,
        task_id: str,
        body: dict[str, Any],
        ctx: RequestContext,
    ) -> tuple[int, dict[str, Any]]:
        try:
            self.gate.enforce_ownership(email, caller)
            new_status = parse_status(body.get("newStatus"))
            updated = self.store.update_status(email, task_id, new_status)
            self._notify(ACTION_UPDATE, updated, ctx)
        except TaskError as e:
            return _failure(e)
        except ClientError as e:
            return _store_failure(e)
        return 204, {
            "message": f"Update task successful. Task ID {task_id}",
            "task": updated.to_json(),
        }

    def delete(self, caller: Caller, email: str, task_id: str, ctx: RequestContext) -> tuple[int, dict[str, Any]]:
        try:
            self.gate.enforce_ownership(email, caller)
            deleted = self.store.delete(email, task_id)
            self._notify(ACTION_DELETE, deleted, ctx)
        except TaskError as e:
            return _failure(e)
        except ClientError as e:
            return _store_failure(e)
        return 204, {"task": deleted.to_json()}

    def _notify(self, action_type: str, record: TaskRecord, ctx: RequestContext) -> str:
        return self.publisher.publish_event(
            action_type=action_type,
            event_type=EVENT_SINGLE_TASK,
            created_by=record.assigned_by,
            task_id=record.task_id,
            owner=record.owner,
            title=record.title,
            request_id=ctx.request_id,
            request_lambda_id=ctx.lambda_id,
            origin=ctx.origin,
        )


def _task_service() -> TaskService:
    global _service
    if _service is None:
        _service = TaskService(
            store=TaskStore(_ddb(), TASKS_TABLE_NAME, TASKS_OWNER_INDEX),
            gate=AuthorizationGate(_cognito()),
            publisher=EventPublisher(_sns(), EVENTS_TOPIC_ARN),
        )
    return _service


def _response(status_code: int, body: dict[str, Any], request_id: str) -> dict[str, Any]:
    payload = dict(body)
    payload.setdefault("requestId", request_id)
    payload.setdefault("schemaVersion", SCHEMA_VERSION)
    return {
        "statusCode": int(status_code),
        "headers": {
            "content-type": "application/json",
            "cache-control": "no-store",
        },
        "body": json.dumps(payload),
    }


def _error(status_code: int, code: str, message: str, request_id: str) -> dict[str, Any]:
    return _response(
        status_code,
        {"errorCode": code, "message": message},
        request_id,
    )


def _request_id(event: dict[str, Any]) -> str:
    rc = event.get("requestContext") or {}
    if isinstance(rc, dict):
        rid = str(rc.get("requestId") or "").strip()
        if rid:
            return rid
    return ""


def _parse_body(event: dict[str, Any]) -> dict[str, Any]:
    raw = event.get("body")
    if raw is None:
        return {}
    if not isinstance(raw, str):
        raise ValidationError("request body must be a JSON object")
    if bool(event.get("isBase64Encoded")):
        try:
            raw = base64.b64decode(raw.encode("utf-8")).decode("utf-8")
        except Exception as e:
            raise ValidationError("request body base64 decode failed") from e
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except Exception as e:
        raise ValidationError("request body must be valid JSON") from e
    if not isinstance(parsed, dict):
        raise ValidationError("request body must be a JSON object")
    return parsed


def _param(event: dict[str, Any], section: str, key: str) -> str:
    params = event.get(section) or {}
    if not isinstance(params, dict):
        return ""
    val = params.get(key)
    return str(val).strip() if val is not None else ""


def _route(event: dict[str, Any]) -> tuple[str, str]:
    method = str(event.get("httpMethod") or "").upper()
    resource = str(event.get("resource") or "").rstrip("/") or str(event.get("path") or "").rstrip("/")
    return method, resource


def _dispatch(
    service: TaskService,
    caller: Caller,
    event: dict[str, Any],
    method: str,
    resource: str,
    ctx: RequestContext,
) -> tuple[int, dict[str, Any]]:
    if resource == TASKS_RESOURCE and method == "GET":
        return service.read(
            caller,
            _param(event, "queryStringParameters", "email"),
            _param(event, "queryStringParameters", "taskid"),
        )

    if resource == TASKS_RESOURCE and method == "POST":
        try:
            body = _parse_body(event)
        except ValidationError as e:
            return _failure(e)
        return service.create(caller, body, ctx)

    email = _param(event, "pathParameters", "email")
    task_id = _param(event, "pathParameters", "id")
    if method == "PUT":
        try:
            body = _parse_body(event)
        except ValidationError as e:
            return _failure(e)
        return service.update_status(caller, email, task_id, body, ctx)
    return service.delete(caller, email, task_id, ctx)


def _is_known_route(method: str, resource: str) -> bool:
    if resource == TASKS_RESOURCE:
        return method in {"GET", "POST"}
    if resource == TASK_ITEM_RESOURCE:
        return method in {"PUT", "DELETE"}
    return False


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = _request_id(event)
    ctx = RequestContext(
        request_id=request_id,
        lambda_id=str(getattr(context, "aws_request_id", "") or request_id),
        origin=str(getattr(context, "function_name", "") or "task_handler"),
    )
    method, resource = _route(event)
    wide_event: dict[str, Any] = {
        "event": "todo_tasks_api",
        "schema_version": SCHEMA_VERSION,
        "ts": now_iso(),
        "request_id": request_id,
        "lambda_request_id": ctx.lambda_id,
        "method": method,
        "resource": resource,
    }
    status_code = 500

    try:
        if not TASKS_TABLE_NAME or not EVENTS_TOPIC_ARN:
            wide_event["outcome"] = "misconfigured"
            return _error(500, "MISCONFIGURED", "task table and topic env vars are required", request_id)

        if not _is_known_route(method, resource):
            status_code = 404
            wide_event["outcome"] = "route_not_found"
            return _error(404, "NOT_FOUND", f"route not found: {method} {resource}", request_id)

        service = _task_service()
        try:
            caller = service.gate.caller(claims_from_event(event))
        except IdentityLookupError as e:
            status_code = e.status_code
            wide_event["outcome"] = "unauthorized"
            wide_event["error"] = {"type": type(e).__name__, "message": e.message}
            return _error(e.status_code, e.error_code, e.message, request_id)
        wide_event["caller_is_admin"] = caller.is_admin

        status_code, body = _dispatch(service, caller, event, method, resource, ctx)
        wide_event["outcome"] = "success" if status_code < 400 else str(body.get("errorCode") or "error").lower()
        return _response(status_code, body, request_id)
    except ClientError as e:
        status_code = 500
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
        return _error(500, "DDB_ERROR", str(e), request_id)
    except Exception as e:
        status_code = 500
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
        return _error(500, "INTERNAL_ERROR", str(e), request_id)
    finally:
        wide_event["status_code"] = status_code
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
