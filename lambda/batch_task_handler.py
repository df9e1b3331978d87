from __future__ import annotations

import json
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Iterable
from urllib.parse import unquote_plus

import boto3
from task_errors import BatchTooLargeError
from task_errors import EmptyObjectError
from task_errors import ValidationError
from task_events import EventPublisher
from task_ids import TaskIdGenerator
from task_model import ACTION_INSERT
from task_model import EVENT_BATCH_TASK
from task_model import STATUS_PENDING
from task_model import Person
from task_model import TaskRecord
from task_model import TodoTaskEvent
from task_model import now_iso
from task_store import BATCH_WRITE_LIMIT
from task_store import TaskStore

TASKS_TABLE_NAME = os.environ.get("TODO_TASKS_TABLE", "")
TASKS_OWNER_INDEX = os.environ.get("TODO_TASKS_OWNER_INDEX", "ownerEmail-index")
EVENTS_TOPIC_ARN = os.environ.get("TODO_EVENTS_TOPIC_ARN", "")
SCHEMA_VERSION = os.environ.get("TODO_SCHEMA_VERSION", "2026-10-01")
MAX_PUBLISH_WORKERS = int(os.environ.get("TODO_MAX_PUBLISH_WORKERS", "8"))

BATCH_FIELDS = (
    "title",
    "description",
    "deadline",
    "ownerName",
    "ownerEmail",
    "assignedByName",
    "assignedByEmail",
)

_s3_client = None
_ddb_client = None
_sns_client = None


def _aws_region() -> str | None:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")


def _s3():
    global _s3_client
    if _s3_client is None:
        _s3_client = boto3.client("s3", region_name=_aws_region())
    return _s3_client


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


def _log(entry: dict[str, Any]) -> None:
    print(json.dumps(entry, separators=(",", ":"), sort_keys=True))


@dataclass(frozen=True)
class BatchLine:
    line_no: int
    title: str
    description: str
    deadline: str
    owner: Person
    assigned_by: Person


@dataclass(frozen=True)
class ObjectRef:
    bucket: str
    key: str


def parse_batch_lines(text: str) -> list[BatchLine]:
    """Parse `title,description,deadline,ownerName,ownerEmail,assignedByName,assignedByEmail` lines.

    Blank lines are skipped. Any other line without exactly seven fields, or
    without an owner email, fails the whole object.
    """
    out: list[BatchLine] = []
    for idx, raw in enumerate(text.split("\n"), start=1):
        line = raw.replace("\r", "")
        if not line.strip():
            continue
        fields = [f.strip() for f in line.split(",")]
        if len(fields) != len(BATCH_FIELDS):
            raise ValidationError(
                f"line {idx}: expected {len(BATCH_FIELDS)} fields, got {len(fields)}"
            )
        title, description, deadline, owner_name, owner_email, by_name, by_email = fields
        if not owner_email:
            raise ValidationError(f"line {idx}: ownerEmail is required")
        out.append(
            BatchLine(
                line_no=idx,
                title=title,
                description=description,
                deadline=deadline,
                owner=Person(name=owner_name, email=owner_email),
                assigned_by=Person(name=by_name, email=by_email),
            )
        )
    return out


def build_records(lines: Iterable[BatchLine], ids: TaskIdGenerator) -> list[TaskRecord]:
    records: list[TaskRecord] = []
    for line in lines:
        records.append(
            TaskRecord(
                task_id=ids.next_id(),
                owner_email=line.owner.email,
                title=line.title,
                description=line.description,
                status=STATUS_PENDING,
                archived=False,
                created_at=now_iso(),
                owner=line.owner,
                assigned_by=line.assigned_by,
                deadline=line.deadline,
            )
        )
    return records


def consolidate_events(events: Iterable[TodoTaskEvent]) -> list[TodoTaskEvent]:
    """One event per owner email, titles and ids joined in first-seen order."""
    grouped: dict[str, list[TodoTaskEvent]] = {}
    for event in events:
        grouped.setdefault(event.owner.email, []).append(event)

    out: list[TodoTaskEvent] = []
    for owned in grouped.values():
        first = owned[0]
        out.append(
            TodoTaskEvent(
                event_type=first.event_type,
                action_type=first.action_type,
                task_id=",".join(e.task_id for e in owned),
                title=",".join(e.title for e in owned),
                owner=first.owner,
                created_by=first.created_by,
            )
        )
    return out


def object_refs(event: dict[str, Any]) -> list[ObjectRef]:
    refs: list[ObjectRef] = []
    for record in event.get("Records") or []:
        s3_info = (record or {}).get("s3") or {}
        bucket = str((s3_info.get("bucket") or {}).get("name") or "")
        key = unquote_plus(str((s3_info.get("object") or {}).get("key") or ""))
        if bucket and key:
            refs.append(ObjectRef(bucket=bucket, key=key))
    return refs


class BatchImporter:
    def __init__(
        self,
        s3_client: Any,
        store: TaskStore,
        publisher: EventPublisher,
        *,
        max_publish_workers: int = MAX_PUBLISH_WORKERS,
    ) -> None:
        self._s3 = s3_client
        self._store = store
        self._publisher = publisher
        self._max_publish_workers = max(1, max_publish_workers)

    def read_object(self, ref: ObjectRef) -> str:
        out = self._s3.get_object(Bucket=ref.bucket, Key=ref.key)
        body = out.get("Body")
        raw = body.read() if body is not None else b""
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw or "")
        if not text.strip():
            raise EmptyObjectError(f"object is empty: s3://{ref.bucket}/{ref.key}")
        return text

    def import_object(
        self,
        ref: ObjectRef,
        *,
        request_id: str,
        request_lambda_id: str,
        origin: str,
    ) -> dict[str, Any]:
        start = time.time()
        log: dict[str, Any] = {
            "event": "todo_tasks_batch_object",
            "schema_version": SCHEMA_VERSION,
            "ts": now_iso(),
            "request_id": request_id,
            "bucket": ref.bucket,
            "key": ref.key,
        }
        try:
            lines = parse_batch_lines(self.read_object(ref))
            records = build_records(lines, TaskIdGenerator())
            log["records"] = len(records)
            if len(records) > BATCH_WRITE_LIMIT:
                raise BatchTooLargeError(
                    f"batch size {len(records)} exceeds limit of {BATCH_WRITE_LIMIT}"
                )
            stored = self._store.batch_create(records)

            events = [
                TodoTaskEvent.for_task(r, action_type=ACTION_INSERT, event_type=EVENT_BATCH_TASK)
                for r in stored
            ]
            consolidated = consolidate_events(events)
            message_ids = self._publish_all(
                consolidated,
                request_id=request_id,
                request_lambda_id=request_lambda_id,
                origin=origin,
            )
            log["task_ids"] = [r.task_id for r in stored]
            log["published"] = len(message_ids)
            log["outcome"] = "success"
            return {
                "bucket": ref.bucket,
                "key": ref.key,
                "imported": len(stored),
                "published": len(message_ids),
            }
        except Exception as e:
            log["outcome"] = "error"
            log["error"] = {"type": type(e).__name__, "message": str(e)}
            raise
        finally:
            log["duration_ms"] = int((time.time() - start) * 1000)
            _log(log)

    def _publish_all(
        self,
        events: list[TodoTaskEvent],
        *,
        request_id: str,
        request_lambda_id: str,
        origin: str,
    ) -> list[str]:
        if not events:
            return []
        workers = min(self._max_publish_workers, len(events))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(
                    self._publisher.publish,
                    event,
                    request_id=request_id,
                    request_lambda_id=request_lambda_id,
                    origin=origin,
                )
                for event in events
            ]
            # result() re-raises the first publish failure after every publish settles.
            return [f.result() for f in futures]


_importer: BatchImporter | None = None


def _batch_importer() -> BatchImporter:
    global _importer
    if _importer is None:
        _importer = BatchImporter(
            _s3(),
            TaskStore(_ddb(), TASKS_TABLE_NAME, TASKS_OWNER_INDEX),
            EventPublisher(_sns(), EVENTS_TOPIC_ARN),
        )
    return _importer


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    start = time.time()
    lambda_id = str(getattr(context, "aws_request_id", "") or "")
    origin = str(getattr(context, "function_name", "") or "batch_task_handler")
    refs = object_refs(event)
    wide_event: dict[str, Any] = {
        "event": "todo_tasks_batch_import",
        "schema_version": SCHEMA_VERSION,
        "ts": now_iso(),
        "request_id": lambda_id,
        "objects": len(refs),
    }

    try:
        if not TASKS_TABLE_NAME or not EVENTS_TOPIC_ARN:
            wide_event["outcome"] = "misconfigured"
            raise RuntimeError("TODO_TASKS_TABLE and TODO_EVENTS_TOPIC_ARN are required")

        importer = _batch_importer()
        results: list[dict[str, Any]] = []
        failures: list[tuple[ObjectRef, BaseException]] = []
        if refs:
            with ThreadPoolExecutor(max_workers=len(refs)) as pool:
                futures = {
                    pool.submit(
                        importer.import_object,
                        ref,
                        request_id=lambda_id,
                        request_lambda_id=lambda_id,
                        origin=origin,
                    ): ref
                    for ref in refs
                }
                for future, ref in futures.items():
                    exc = future.exception()
                    if exc is not None:
                        failures.append((ref, exc))
                    else:
                        results.append(future.result())

        wide_event["imported"] = sum(r["imported"] for r in results)
        wide_event["published"] = sum(r["published"] for r in results)
        wide_event["failed_objects"] = [f"s3://{r.bucket}/{r.key}" for r, _ in failures]
        if failures:
            wide_event["outcome"] = "partial_failure" if results else "error"
            raise failures[0][1]
        wide_event["outcome"] = "success"
        return {"ok": True, "objects": results}
    finally:
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        _log(wide_event)
