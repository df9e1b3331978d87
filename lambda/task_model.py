from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from task_errors import ValidationError

STATUS_PENDING = "PENDING"
STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_COMPLETED = "COMPLETED"
VALID_STATUSES = {STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED}

EVENT_SINGLE_TASK = "SINGLE_TASK"
EVENT_BATCH_TASK = "BATCH_TASK"
EVENT_TYPES = {EVENT_SINGLE_TASK, EVENT_BATCH_TASK}

ACTION_INSERT = "INSERT"
ACTION_UPDATE = "UPDATE"
ACTION_DELETE = "DELETE"
ACTION_TYPES = {ACTION_INSERT, ACTION_UPDATE, ACTION_DELETE}


def now_iso() -> str:
    # Fixed-format UTC timestamp for lexicographic ordering.
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_status(raw: Any) -> str:
    value = str(raw or "").strip().upper()
    if value not in VALID_STATUSES:
        raise ValidationError(f"invalid status: {raw}")
    return value


def _str(val: Any) -> str:
    return str(val) if val is not None else ""


@dataclass(frozen=True)
class Person:
    name: str
    email: str


@dataclass(frozen=True)
class TaskRecord:
    task_id: str
    owner_email: str
    title: str
    description: str
    status: str
    archived: bool
    created_at: str
    owner: Person
    assigned_by: Person
    deadline: str = ""

    def __post_init__(self) -> None:
        if self.owner_email != self.owner.email:
            raise ValueError("owner_email must match owner.email")

    def with_status(self, status: str) -> TaskRecord:
        return TaskRecord(
            task_id=self.task_id,
            owner_email=self.owner_email,
            title=self.title,
            description=self.description,
            status=status,
            archived=self.archived,
            created_at=self.created_at,
            owner=self.owner,
            assigned_by=self.assigned_by,
            deadline=self.deadline,
        )

    def to_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "pk": self.task_id,
            "sk": self.owner_email,
            "email": self.owner_email,
            "title": self.title,
            "description": self.description,
            "taskStatus": self.status,
            "archived": bool(self.archived),
            "createdAt": self.created_at,
            "owner": {"ownerName": self.owner.name, "email": self.owner.email},
            "assignedBy": {
                "assignedByName": self.assigned_by.name,
                "email": self.assigned_by.email,
            },
        }
        if self.deadline:
            item["deadline"] = self.deadline
        return item

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> TaskRecord:
        owner = item.get("owner") or {}
        assigned = item.get("assignedBy") or {}
        owner_email = _str(item.get("sk") or owner.get("email"))
        return cls(
            task_id=_str(item.get("pk")),
            owner_email=owner_email,
            title=_str(item.get("title")),
            description=_str(item.get("description")),
            status=_str(item.get("taskStatus")),
            archived=bool(item.get("archived", False)),
            created_at=_str(item.get("createdAt")),
            owner=Person(name=_str(owner.get("ownerName")), email=owner_email),
            assigned_by=Person(
                name=_str(assigned.get("assignedByName")),
                email=_str(assigned.get("email")),
            ),
            deadline=_str(item.get("deadline")),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "email": self.owner_email,
            "title": self.title,
            "description": self.description,
            "taskStatus": self.status,
            "archived": self.archived,
            "createdAt": self.created_at,
            "deadline": self.deadline,
            "owner": {"name": self.owner.name, "email": self.owner.email},
            "assignedBy": {"name": self.assigned_by.name, "email": self.assigned_by.email},
        }


@dataclass(frozen=True)
class TodoTaskEvent:
    """Notification payload for one task mutation.

    For consolidated batch events `task_id` and `title` hold comma-joined
    lists covering every task the owner received in the batch.
    """

    event_type: str
    action_type: str
    task_id: str
    title: str
    owner: Person
    created_by: Person

    def to_json(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type,
            "actionType": self.action_type,
            "taskId": self.task_id,
            "title": self.title,
            "owner": {"ownerName": self.owner.name, "email": self.owner.email},
            "createdBy": {"creatorName": self.created_by.name, "email": self.created_by.email},
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> TodoTaskEvent:
        owner = data.get("owner") or {}
        created_by = data.get("createdBy") or {}
        return cls(
            event_type=_str(data.get("eventType")),
            action_type=_str(data.get("actionType")),
            task_id=_str(data.get("taskId")),
            title=_str(data.get("title")),
            owner=Person(name=_str(owner.get("ownerName")), email=_str(owner.get("email"))),
            created_by=Person(
                name=_str(created_by.get("creatorName")),
                email=_str(created_by.get("email")),
            ),
        )

    @classmethod
    def for_task(cls, record: TaskRecord, *, action_type: str, event_type: str) -> TodoTaskEvent:
        return cls(
            event_type=event_type,
            action_type=action_type,
            task_id=record.task_id,
            title=record.title,
            owner=record.owner,
            created_by=record.assigned_by,
        )


@dataclass(frozen=True)
class NotificationEnvelope:
    request_id: str
    request_lambda_id: str
    origin: str
    date: str
    content: str

    def to_json(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "requestLambdaId": self.request_lambda_id,
            "origin": self.origin,
            "date": self.date,
            "content": self.content,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> NotificationEnvelope:
        return cls(
            request_id=_str(data.get("requestId")),
            request_lambda_id=_str(data.get("requestLambdaId")),
            origin=_str(data.get("origin")),
            date=_str(data.get("date")),
            content=_str(data.get("content")),
        )

    @classmethod
    def wrap(
        cls,
        event: TodoTaskEvent,
        *,
        request_id: str,
        request_lambda_id: str,
        origin: str,
    ) -> NotificationEnvelope:
        return cls(
            request_id=request_id,
            request_lambda_id=request_lambda_id,
            origin=origin,
            date=now_iso(),
            content=json.dumps(event.to_json(), separators=(",", ":")),
        )

    def event(self) -> TodoTaskEvent:
        parsed = json.loads(self.content)
        if not isinstance(parsed, dict):
            raise ValueError("envelope content must decode to an object")
        return TodoTaskEvent.from_json(parsed)
