"""Dead-letter sinks for events that exhaust retries or fail terminally."""

import logging
import threading
from abc import ABC, abstractmethod
from typing import List

from botocore.exceptions import ClientError, BotoCoreError

from .models import DeadLetterRecord

logger = logging.getLogger(__name__)


class DeadLetterSink(ABC):
    """Abstract interface for the dead-letter destination."""

    @abstractmethod
    def send(self, record: DeadLetterRecord) -> None:
        pass


class InMemoryDeadLetterSink(DeadLetterSink):
    """
    Collects dead-letter records in memory (local development and tests).

    Keeps the newest ``max_records``; every record is also logged, which is
    the durable trace when no queue is configured.
    """

    def __init__(self, max_records: int = 1_000):
        self.max_records = max_records
        self.records: List[DeadLetterRecord] = []
        self._lock = threading.Lock()

    def send(self, record: DeadLetterRecord) -> None:
        with self._lock:
            self.records.append(record)
            if len(self.records) > self.max_records:
                del self.records[: len(self.records) - self.max_records]
        logger.warning(
            f"Dead-lettered event {record.event.get('eventId')}: "
            f"{record.error_kind} after {record.attempt_count} attempt(s)"
        )


class SQSDeadLetterSink(DeadLetterSink):
    """Sends dead-letter records to an SQS queue as JSON messages."""

    def __init__(self, queue_url: str, client=None, region: str = None):
        import boto3

        self.queue_url = queue_url
        self._client = client or boto3.client("sqs", region_name=region)

    def send(self, record: DeadLetterRecord) -> None:
        try:
            self._client.send_message(
                QueueUrl=self.queue_url,
                MessageBody=record.model_dump_json(),
                MessageAttributes={
                    "errorKind": {"DataType": "String", "StringValue": str(record.error_kind)},
                    "attemptCount": {"DataType": "Number", "StringValue": str(record.attempt_count)},
                },
            )
        except (ClientError, BotoCoreError) as e:
            logger.critical(
                f"Failed to send dead-letter record for event "
                f"{record.event.get('eventId')}: {e}. Record: {record.model_dump_json()}"
            )
            raise
        logger.warning(
            f"Dead-lettered event {record.event.get('eventId')} to SQS: "
            f"{record.error_kind} after {record.attempt_count} attempt(s)"
        )
