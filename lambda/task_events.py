from __future__ import annotations

import json
from typing import Any

from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from task_errors import PublishError
from task_model import NotificationEnvelope
from task_model import Person
from task_model import TodoTaskEvent


class EventPublisher:
    """Single choke point for task notifications.

    Every CRUD and batch path goes through `publish`, so the event and
    envelope shapes are identical regardless of caller.
    """

    def __init__(self, sns_client: Any, topic_arn: str) -> None:
        self._sns = sns_client
        self._topic_arn = topic_arn

    def publish_event(
        self,
        *,
        action_type: str,
        event_type: str,
        created_by: Person,
        task_id: str,
        owner: Person,
        title: str,
        request_id: str,
        request_lambda_id: str,
        origin: str,
    ) -> str:
        event = TodoTaskEvent(
            event_type=event_type,
            action_type=action_type,
            task_id=task_id,
            title=title,
            owner=owner,
            created_by=created_by,
        )
        return self.publish(
            event,
            request_id=request_id,
            request_lambda_id=request_lambda_id,
            origin=origin,
        )

    def publish(
        self,
        event: TodoTaskEvent,
        *,
        request_id: str,
        request_lambda_id: str,
        origin: str,
    ) -> str:
        envelope = NotificationEnvelope.wrap(
            event,
            request_id=request_id,
            request_lambda_id=request_lambda_id,
            origin=origin,
        )
        try:
            out = self._sns.publish(
                TopicArn=self._topic_arn,
                Message=json.dumps(envelope.to_json(), separators=(",", ":")),
            )
        except (ClientError, BotoCoreError) as e:
            raise PublishError(f"publish failed for task {event.task_id}: {e}") from e
        return str((out or {}).get("MessageId") or "")
