from __future__ import annotations

from typing import Any, Iterable

from boto3.dynamodb.types import TypeDeserializer
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError
from task_errors import BatchTooLargeError
from task_errors import ConflictError
from task_errors import NotFoundError
from task_errors import TaskStoreError
from task_model import TaskRecord

# DynamoDB BatchWriteItem accepts at most 25 put/delete requests per call.
BATCH_WRITE_LIMIT = 25

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _marshal(item: dict[str, Any]) -> dict[str, Any]:
    return {k: _serializer.serialize(v) for k, v in item.items()}


def _unmarshal(item: dict[str, Any]) -> dict[str, Any]:
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


def _key(owner_email: str, task_id: str) -> dict[str, Any]:
    return _marshal({"pk": task_id, "sk": owner_email})


def _is_condition_failure(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code") or "")
    return code == "ConditionalCheckFailedException"


class TaskStore:
    """Task records in one table keyed by (pk=taskId, sk=ownerEmail).

    Uses the low-level client so a single handle can be shared by the
    concurrent import pipelines.
    """

    def __init__(self, client: Any, table_name: str, owner_index: str) -> None:
        self._client = client
        self._table_name = table_name
        self._owner_index = owner_index

    def get(self, owner_email: str, task_id: str) -> TaskRecord:
        out = self._client.get_item(
            TableName=self._table_name,
            Key=_key(owner_email, task_id),
            ConsistentRead=True,
        )
        item = out.get("Item")
        if not item:
            raise NotFoundError(f"task not found: {task_id}")
        return TaskRecord.from_item(_unmarshal(item))

    def list_by_owner(self, owner_email: str) -> list[TaskRecord]:
        return self._paginate(
            "query",
            IndexName=self._owner_index,
            KeyConditionExpression="email = :email",
            ExpressionAttributeValues=_marshal({":email": owner_email}),
        )

    def list_all(self) -> list[TaskRecord]:
        return self._paginate("scan")

    def create(self, record: TaskRecord) -> TaskRecord:
        try:
            self._client.put_item(
                TableName=self._table_name,
                Item=_marshal(record.to_item()),
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise ConflictError(f"task already exists: {record.task_id}") from e
            raise
        return record

    def batch_create(self, records: Iterable[TaskRecord]) -> list[TaskRecord]:
        records = list(records)
        if len(records) > BATCH_WRITE_LIMIT:
            raise BatchTooLargeError(
                f"batch size {len(records)} exceeds limit of {BATCH_WRITE_LIMIT}"
            )
        if not records:
            return []
        out = self._client.batch_write_item(
            RequestItems={
                self._table_name: [
                    {"PutRequest": {"Item": _marshal(r.to_item())}} for r in records
                ]
            }
        )
        unprocessed = (out.get("UnprocessedItems") or {}).get(self._table_name) or []
        if unprocessed:
            raise TaskStoreError(
                f"batch write left {len(unprocessed)} of {len(records)} items unprocessed"
            )
        return records

    def update_status(self, owner_email: str, task_id: str, status: str) -> TaskRecord:
        try:
            out = self._client.update_item(
                TableName=self._table_name,
                Key=_key(owner_email, task_id),
                UpdateExpression="SET taskStatus = :status",
                ConditionExpression="attribute_exists(pk)",
                ExpressionAttributeValues=_marshal({":status": status}),
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise NotFoundError(f"task not found: {task_id}") from e
            raise
        return TaskRecord.from_item(_unmarshal(out.get("Attributes") or {}))

    def delete(self, owner_email: str, task_id: str) -> TaskRecord:
        try:
            out = self._client.delete_item(
                TableName=self._table_name,
                Key=_key(owner_email, task_id),
                ConditionExpression="attribute_exists(pk)",
                ReturnValues="ALL_OLD",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise NotFoundError(f"task not found: {task_id}") from e
            raise
        return TaskRecord.from_item(_unmarshal(out.get("Attributes") or {}))

    def _paginate(self, op: str, **kwargs: Any) -> list[TaskRecord]:
        out: list[TaskRecord] = []
        start_key: dict[str, Any] | None = None
        while True:
            call_kwargs = dict(kwargs, TableName=self._table_name)
            if start_key:
                call_kwargs["ExclusiveStartKey"] = start_key
            page = getattr(self._client, op)(**call_kwargs)
            for item in page.get("Items", []) or []:
                if isinstance(item, dict):
                    out.append(TaskRecord.from_item(_unmarshal(item)))
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                return out
