"""Result-marker storage: the canonical terminal outcome per object version."""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Optional

from botocore.exceptions import ClientError, BotoCoreError

from ..errors import StoreUnavailable, client_error_code
from ..models import ObjectIdentity, TerminalRecord

logger = logging.getLogger(__name__)


class ResultStore(ABC):
    """Abstract interface for terminal-outcome markers."""

    @abstractmethod
    def get(self, identity: ObjectIdentity) -> Optional[TerminalRecord]:
        """Return the canonical terminal record for an identity, if any."""
        pass

    @abstractmethod
    def put_if_absent(self, record: TerminalRecord) -> TerminalRecord:
        """
        Store a terminal record unless one already exists.

        Returns:
            The canonical record: ``record`` if it was stored, otherwise the
            record that was already there
        """
        pass

    @property
    def durable(self) -> bool:
        """Whether markers survive the current process."""
        return False


class InMemoryResultStore(ResultStore):
    """
    In-memory markers (per warm container / local development).

    Holds at most ``max_records`` markers; the oldest are evicted first, so a
    redelivery arriving after that many newer outcomes is processed again.
    """

    def __init__(self, max_records: int = 10_000):
        self.max_records = max_records
        self._records: "OrderedDict[str, TerminalRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, identity: ObjectIdentity) -> Optional[TerminalRecord]:
        with self._lock:
            return self._records.get(identity.as_key())

    def put_if_absent(self, record: TerminalRecord) -> TerminalRecord:
        with self._lock:
            existing = self._records.get(record.identity.as_key())
            if existing is not None:
                return existing
            self._records[record.identity.as_key()] = record
            while len(self._records) > self.max_records:
                self._records.popitem(last=False)
            return record

    def __len__(self) -> int:
        return len(self._records)


class DynamoDBResultStore(ResultStore):
    """
    DynamoDB-backed markers.

    Items are keyed ``PK=OBJECT#{bucket}/{key}``, ``SK=VERSION#{version}``
    and written with a conditional put so the first writer wins.
    """

    def __init__(self, table_name: Optional[str] = None, resource=None, region: Optional[str] = None):
        """
        Args:
            table_name: DynamoDB table name (defaults to RESULT_TABLE_NAME)
            resource: Optional boto3 DynamoDB resource
            region: AWS region used when no resource is given
        """
        import boto3

        self.table_name = table_name or os.getenv("RESULT_TABLE_NAME", "image-labeler-results")
        self._dynamodb = resource or boto3.resource("dynamodb", region_name=region)
        self._table = self._dynamodb.Table(self.table_name)

        logger.info(f"Initialized DynamoDB result store: table={self.table_name}")

    @property
    def durable(self) -> bool:
        return True

    @staticmethod
    def _key(identity: ObjectIdentity) -> dict:
        return {
            "PK": f"OBJECT#{identity.bucket}/{identity.key}",
            "SK": f"VERSION#{identity.version}",
        }

    def get(self, identity: ObjectIdentity) -> Optional[TerminalRecord]:
        try:
            response = self._table.get_item(Key=self._key(identity), ConsistentRead=True)
        except ClientError as e:
            logger.error(f"Failed to read result marker for {identity}: {e}")
            raise StoreUnavailable(f"Result store read failed ({client_error_code(e)})")
        except BotoCoreError as e:
            raise StoreUnavailable(f"Result store read failed: {e}")

        item = response.get("Item")
        if not item:
            return None
        return TerminalRecord.from_dict(json.loads(item["record"]))

    def put_if_absent(self, record: TerminalRecord) -> TerminalRecord:
        item = {
            **self._key(record.identity),
            "state": record.state.value,
            "eventId": record.event_id,
            # Stored as a JSON string so floats need no Decimal conversion
            "record": json.dumps(record.to_dict()),
        }
        try:
            self._table.put_item(
                Item=item,
                ConditionExpression="attribute_not_exists(PK)",
            )
            logger.debug(f"Stored result marker for {record.identity}")
            return record
        except ClientError as e:
            if client_error_code(e) == "ConditionalCheckFailedException":
                logger.info(f"Result marker already present for {record.identity}, keeping existing")
                existing = self.get(record.identity)
                if existing is not None:
                    return existing
            logger.error(f"Failed to store result marker for {record.identity}: {e}")
            raise StoreUnavailable(f"Result store write failed ({client_error_code(e)})")
        except BotoCoreError as e:
            raise StoreUnavailable(f"Result store write failed: {e}")
