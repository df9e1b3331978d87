import json
import os
import time
from typing import Any

from task_model import NotificationEnvelope
from task_model import now_iso

SCHEMA_VERSION = os.environ.get("TODO_SCHEMA_VERSION", "2026-10-01")


def _envelope_from_body(body: str) -> NotificationEnvelope:
    parsed = json.loads(body)
    if not isinstance(parsed, dict):
        raise ValueError("message body must be a JSON object")
    # Queue subscriptions without raw delivery wrap the envelope in an SNS notification.
    if parsed.get("Type") == "Notification" and "Message" in parsed:
        parsed = json.loads(str(parsed["Message"]))
        if not isinstance(parsed, dict):
            raise ValueError("notification message must be a JSON object")
    return NotificationEnvelope.from_json(parsed)


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    start = time.time()
    lambda_id = str(getattr(context, "aws_request_id", "") or "")
    failures: list[dict[str, str]] = []
    delivered = 0

    for record in event.get("Records") or []:
        message_id = str((record or {}).get("messageId") or "")
        log: dict[str, Any] = {
            "event": "todo_tasks_notification",
            "schema_version": SCHEMA_VERSION,
            "ts": now_iso(),
            "request_id": lambda_id,
            "message_id": message_id,
        }
        try:
            envelope = _envelope_from_body(str((record or {}).get("body") or ""))
            task_event = envelope.event()
            log["origin"] = envelope.origin
            log["envelope_request_id"] = envelope.request_id
            log["envelope_date"] = envelope.date
            log["event_type"] = task_event.event_type
            log["action_type"] = task_event.action_type
            log["task_ids"] = [t for t in task_event.task_id.split(",") if t]
            log["owner_email"] = task_event.owner.email
            log["outcome"] = "delivered"
            delivered += 1
        except Exception as e:
            log["outcome"] = "undecodable"
            log["error"] = {"type": type(e).__name__, "message": str(e)}
            failures.append({"itemIdentifier": message_id})
        finally:
            log["duration_ms"] = int((time.time() - start) * 1000)
            print(json.dumps(log, separators=(",", ":"), sort_keys=True))

    return {"batchItemFailures": failures, "delivered": delivered}
