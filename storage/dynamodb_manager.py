"""DynamoDB manager for idempotent upserts of sync output."""
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from processor.errors import PersistenceError
from processor.models import (
    AppointmentRecord,
    MonthlyCount,
    SlotCount,
    SyncSummary,
    UpsertResult,
)
from processor.normalizer import normalize

logger = logging.getLogger(__name__)


APPOINTMENTS = 'appointments'
SLOT_COUNTS_BY_RESOURCE = 'slot_counts_by_resource'
SLOT_COUNTS_BY_GROUP = 'slot_counts_by_group'
MONTHLY_COUNTS = 'appointment_counts_by_month'
SYNC_RUNS = 'sync_runs'

APPOINTMENT_KEY = 'external_id'
SLOT_COUNT_KEY = ['date', 'scope_key', 'category']
MONTHLY_COUNT_KEY = ['month', 'scope_key', 'category']

PARTITION_KEY = 'pk'
KEY_SEPARATOR = '#'


class DynamoDBManager:
    """
    Keyed upsert sink backed by one DynamoDB table per entity.

    Every table uses a string partition key ``pk`` built from the row's
    conflict key, so a put is an upsert and re-running a sync overwrites
    rows in place.
    """

    DEFAULT_BATCH_SIZE = 200

    def __init__(
        self,
        table_prefix: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dynamodb=None
    ):
        """
        Initialize DynamoDB resource and table naming.

        Args:
            table_prefix: Prefix for table names (``<prefix>-<table_key>``)
            batch_size: Rows flushed per upsert batch
            dynamodb: Optional boto3 DynamoDB resource
        """
        self.table_prefix = table_prefix
        self.batch_size = max(1, batch_size)
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self._tables: Dict[str, Any] = {}
        logger.info(f"Initialized DynamoDBManager with table prefix: {table_prefix}")

    def table(self, table_key: str):
        if table_key not in self._tables:
            self._tables[table_key] = self.dynamodb.Table(
                f"{self.table_prefix}-{table_key}"
            )
        return self._tables[table_key]

    def upsert(
        self,
        table_key: str,
        rows: Sequence[Dict[str, Any]],
        conflict_key: Union[str, Sequence[str]]
    ) -> UpsertResult:
        """
        Upsert rows keyed by ``conflict_key``.

        Rows are flushed in batches. A failing batch is retried row by row
        so that only the offending rows are dropped.

        Args:
            table_key: Logical table name
            rows: Row dicts
            conflict_key: Column or columns forming the natural key

        Returns:
            UpsertResult with distinct keys written, failed count and per-row errors
        """
        if not rows:
            return UpsertResult(written=0, failed=0)

        key_columns = [conflict_key] if isinstance(conflict_key, str) else list(conflict_key)
        table = self.table(table_key)
        written_keys: Set[str] = set()
        errors: List[PersistenceError] = []

        logger.info(f"Upserting {len(rows)} rows into {table_key}")

        for i in range(0, len(rows), self.batch_size):
            batch = rows[i:i + self.batch_size]
            items = []
            for row in batch:
                try:
                    items.append(self._to_item(row, key_columns))
                except KeyError as e:
                    errors.append(PersistenceError(
                        f"Row missing conflict key column {e} for {table_key}"
                    ))

            try:
                with table.batch_writer(overwrite_by_pkeys=[PARTITION_KEY]) as writer:
                    for item in items:
                        writer.put_item(Item=item)
                written_keys.update(item[PARTITION_KEY] for item in items)
            except (ClientError, BotoCoreError) as e:
                logger.warning(
                    f"Batch {i // self.batch_size + 1} for {table_key} failed: {e}; "
                    f"retrying {len(items)} rows individually",
                    extra={'diagnostic': PersistenceError.__name__}
                )
                batch_written, batch_errors = self._upsert_rows(table, table_key, items)
                written_keys.update(batch_written)
                errors.extend(batch_errors)

        # rows sharing a key collapse into one stored item
        written = len(written_keys)
        logger.info(
            f"Upserted {written} rows into {table_key} ({len(errors)} failed)"
        )
        return UpsertResult(written=written, failed=len(errors), errors=errors)

    def _upsert_rows(self, table, table_key: str, items: List[Dict[str, Any]]):
        written = []
        errors = []
        for item in items:
            try:
                table.put_item(Item=item)
                written.append(item[PARTITION_KEY])
            except (ClientError, BotoCoreError) as e:
                error = PersistenceError(
                    f"Failed to upsert {item[PARTITION_KEY]} into {table_key}: {e}",
                    identifier=item[PARTITION_KEY]
                )
                logger.error(str(error), extra={'diagnostic': type(error).__name__})
                errors.append(error)
        return written, errors

    def upsert_appointments(self, records: Sequence[AppointmentRecord]) -> UpsertResult:
        rows = [appointment_to_row(record) for record in records]
        return self.upsert(APPOINTMENTS, rows, APPOINTMENT_KEY)

    def upsert_slot_counts(
        self,
        table_key: str,
        counts: Sequence[SlotCount]
    ) -> UpsertResult:
        rows = [slot_count_to_row(count) for count in counts]
        return self.upsert(table_key, rows, SLOT_COUNT_KEY)

    def upsert_monthly_counts(self, counts: Sequence[MonthlyCount]) -> UpsertResult:
        rows = [monthly_count_to_row(count) for count in counts]
        return self.upsert(MONTHLY_COUNTS, rows, MONTHLY_COUNT_KEY)

    def save_sync_run(self, summary: SyncSummary) -> None:
        """
        Record the current state of a sync run.

        Failures are logged, not raised; the run log is informational.
        """
        item = summary.to_dict()
        item[PARTITION_KEY] = summary.run_id
        try:
            self.table(SYNC_RUNS).put_item(Item=self._clean(item))
        except (ClientError, BotoCoreError) as e:
            logger.error(
                f"Failed to record sync run {summary.run_id}: {e}",
                extra={'diagnostic': PersistenceError.__name__}
            )

    def get_item(self, table_key: str, key: Union[str, Sequence[Any]]) -> Optional[Dict[str, Any]]:
        """Fetch a stored row by its conflict key value(s)."""
        values = [key] if isinstance(key, str) else list(key)
        response = self.table(table_key).get_item(
            Key={PARTITION_KEY: KEY_SEPARATOR.join(str(v) for v in values)}
        )
        return response.get('Item')

    def _to_item(self, row: Dict[str, Any], key_columns: List[str]) -> Dict[str, Any]:
        item = self._clean(row)
        item[PARTITION_KEY] = KEY_SEPARATOR.join(str(row[c]) for c in key_columns)
        return item

    @classmethod
    def _clean(cls, value: Any) -> Any:
        """Convert a row into DynamoDB-compatible types, dropping None fields."""
        if isinstance(value, dict):
            return {k: cls._clean(v) for k, v in value.items() if v is not None}
        if isinstance(value, (list, tuple)):
            return [cls._clean(v) for v in value]
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, bool):
            return value
        if isinstance(value, float):
            return Decimal(str(value))
        if isinstance(value, datetime):
            return value.isoformat()
        return value


def appointment_to_row(record: AppointmentRecord) -> Dict[str, Any]:
    return {
        'external_id': record.external_id,
        'resource_id': record.resource_id,
        'resource_label': record.resource_label,
        'type_id': record.type_id,
        'type_label': record.type_label,
        'group_key': normalize(record.type_label) if record.type_label else None,
        'category': record.category.value,
        'category_defaulted': record.category_defaulted,
        'start_time': record.start_time.isoformat(),
        'end_time': record.end_time.isoformat(),
        'appointment_date': record.appointment_date.isoformat(),
        'status': record.status.value,
        'synced_at': datetime.now().isoformat(timespec='seconds'),
    }


def slot_count_to_row(count: SlotCount) -> Dict[str, Any]:
    return {
        'date': count.date.isoformat(),
        'scope_key': count.scope_key,
        'scope_label': count.scope_label,
        'category': count.category.value,
        'total_slots': count.total_slots,
        'booked_slots': count.booked_slots,
        'available_slots': count.available_slots,
    }


def monthly_count_to_row(count: MonthlyCount) -> Dict[str, Any]:
    return {
        'month': count.month,
        'scope_key': count.scope_key,
        'scope_label': count.scope_label,
        'category': count.category.value,
        'scheduled_count': count.scheduled_count,
        'canceled_count': count.canceled_count,
        'rescheduled_count': count.rescheduled_count,
        'total_count': count.total_count,
    }
