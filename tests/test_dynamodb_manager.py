"""Unit tests for DynamoDB manager."""
from datetime import date, datetime
from decimal import Decimal
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from processor.errors import PersistenceError
from processor.models import (
    AppointmentRecord,
    AppointmentStatus,
    Category,
    MonthlyCount,
    SlotCount,
    SyncStatus,
    SyncSummary,
    TimeWindow,
)
from storage.dynamodb_manager import (
    APPOINTMENTS,
    MONTHLY_COUNTS,
    SLOT_COUNTS_BY_GROUP,
    SLOT_COUNTS_BY_RESOURCE,
    SYNC_RUNS,
    DynamoDBManager,
)


PREFIX = 'test-sync'


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS credentials for moto."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb(aws_credentials):
    """Create mock DynamoDB tables for every sync output."""
    with mock_aws():
        resource = boto3.resource('dynamodb', region_name='us-east-1')
        for table_key in (APPOINTMENTS, SLOT_COUNTS_BY_RESOURCE, SLOT_COUNTS_BY_GROUP,
                          MONTHLY_COUNTS, SYNC_RUNS):
            resource.create_table(
                TableName=f"{PREFIX}-{table_key}",
                KeySchema=[{'AttributeName': 'pk', 'KeyType': 'HASH'}],
                AttributeDefinitions=[{'AttributeName': 'pk', 'AttributeType': 'S'}],
                BillingMode='PAY_PER_REQUEST'
            )
        yield resource


@pytest.fixture
def dynamodb_manager(dynamodb):
    """Create DynamoDBManager instance with mock tables."""
    return DynamoDBManager(PREFIX, batch_size=25, dynamodb=dynamodb)


def make_appointment(external_id='501', status=AppointmentStatus.SCHEDULED, resource_label='John'):
    start = datetime(2025, 7, 2, 10, 0)
    return AppointmentRecord(
        external_id=external_id,
        resource_id='3',
        resource_label=resource_label,
        type_id='11',
        type_label='Store A - John',
        category=Category.MEASUREMENT,
        start_time=start,
        end_time=start.replace(minute=30),
        status=status,
    )


def make_slot_count(scope_key='3', booked=2):
    return SlotCount.build(
        day=date(2025, 7, 2),
        scope_key=scope_key,
        scope_label='John',
        category=Category.FITTING,
        total_slots=10,
        booked_slots=booked,
    )


def client_error(operation='BatchWriteItem'):
    return ClientError(
        {'Error': {'Code': 'ProvisionedThroughputExceededException', 'Message': 'slow down'}},
        operation
    )


def test_upsert_appointments(dynamodb_manager):
    """Test writing appointments keyed by external id."""
    result = dynamodb_manager.upsert_appointments([make_appointment()])

    assert result.written == 1
    assert result.failed == 0

    item = dynamodb_manager.get_item(APPOINTMENTS, '501')
    assert item['external_id'] == '501'
    assert item['group_key'] == 'Store A'
    assert item['category'] == 'measurement'
    assert item['status'] == 'scheduled'
    assert item['appointment_date'] == '2025-07-02'
    assert item['start_time'] == '2025-07-02T10:00:00'


def test_upsert_is_idempotent_and_updates_in_place(dynamodb_manager, dynamodb):
    """Test that re-upserting a key overwrites the row instead of duplicating it."""
    dynamodb_manager.upsert_appointments([make_appointment()])
    dynamodb_manager.upsert_appointments([
        make_appointment(status=AppointmentStatus.CANCELED, resource_label='John B')
    ])

    table = dynamodb.Table(f"{PREFIX}-{APPOINTMENTS}")
    items = table.scan()['Items']
    assert len(items) == 1
    assert items[0]['status'] == 'canceled'
    assert items[0]['resource_label'] == 'John B'


def test_upsert_large_batch(dynamodb_manager, dynamodb):
    """Test writing more rows than one batch."""
    records = [make_appointment(external_id=str(i)) for i in range(60)]

    result = dynamodb_manager.upsert_appointments(records)

    assert result.written == 60
    table = dynamodb.Table(f"{PREFIX}-{APPOINTMENTS}")
    assert table.scan(Select='COUNT')['Count'] == 60


def test_duplicate_keys_in_one_batch(dynamodb_manager, dynamodb):
    """Test that duplicate keys within a batch do not fail the write."""
    records = [
        make_appointment(resource_label='first'),
        make_appointment(resource_label='second'),
    ]

    result = dynamodb_manager.upsert_appointments(records)

    assert result.written == 1
    item = dynamodb_manager.get_item(APPOINTMENTS, '501')
    assert item['resource_label'] == 'second'


def test_upsert_slot_counts_composite_key(dynamodb_manager):
    """Test slot count rows keyed by (date, scope_key, category)."""
    dynamodb_manager.upsert_slot_counts(SLOT_COUNTS_BY_RESOURCE, [make_slot_count()])
    dynamodb_manager.upsert_slot_counts(SLOT_COUNTS_BY_RESOURCE, [make_slot_count(booked=4)])

    item = dynamodb_manager.get_item(
        SLOT_COUNTS_BY_RESOURCE, ['2025-07-02', '3', 'fitting']
    )
    assert item['pk'] == '2025-07-02#3#fitting'
    assert item['total_slots'] == 10
    assert item['booked_slots'] == 4
    assert item['available_slots'] == 6


def test_upsert_group_counts_use_group_table(dynamodb_manager):
    """Test that group rows land in their own table."""
    count = SlotCount.build(date(2025, 7, 2), 'Store A', 'Store A', Category.FITTING, 18, 3)

    dynamodb_manager.upsert_slot_counts(SLOT_COUNTS_BY_GROUP, [count])

    assert dynamodb_manager.get_item(SLOT_COUNTS_BY_RESOURCE, ['2025-07-02', 'Store A', 'fitting']) is None
    item = dynamodb_manager.get_item(SLOT_COUNTS_BY_GROUP, ['2025-07-02', 'Store A', 'fitting'])
    assert item['available_slots'] == 15


def test_upsert_monthly_counts(dynamodb_manager):
    """Test monthly count rows."""
    count = MonthlyCount('2025-07', '3', 'John', Category.MEASUREMENT,
                         scheduled_count=4, canceled_count=1, rescheduled_count=2)

    result = dynamodb_manager.upsert_monthly_counts([count])

    assert result.written == 1
    item = dynamodb_manager.get_item(MONTHLY_COUNTS, ['2025-07', '3', 'measurement'])
    assert item['total_count'] == 7
    assert item['canceled_count'] == 1


def test_upsert_empty(dynamodb_manager):
    """Test that an empty upsert is a no-op."""
    result = dynamodb_manager.upsert_appointments([])

    assert (result.written, result.failed) == (0, 0)


def test_row_missing_conflict_key(dynamodb_manager):
    """Test that rows without their key columns are reported, not written."""
    result = dynamodb_manager.upsert(
        MONTHLY_COUNTS,
        [{'month': '2025-07', 'scope_key': '3'}, {'month': '2025-07', 'scope_key': '4', 'category': 'fitting'}],
        ['month', 'scope_key', 'category']
    )

    assert result.written == 1
    assert result.failed == 1
    assert isinstance(result.errors[0], PersistenceError)


def test_save_sync_run(dynamodb_manager):
    """Test that the run log is written and updated."""
    summary = SyncSummary(run_id='run-1', window=TimeWindow(date(2025, 7, 1), date(2025, 7, 31)))
    summary.transition(SyncStatus.RUNNING)
    dynamodb_manager.save_sync_run(summary)

    summary.record_synced(APPOINTMENTS, 5)
    summary.transition(SyncStatus.SUCCESS)
    dynamodb_manager.save_sync_run(summary)

    item = dynamodb_manager.get_item(SYNC_RUNS, 'run-1')
    assert item['status'] == 'success'
    assert item['window'] == '2025-07-01..2025-07-31'
    assert item['synced'] == 5
    assert item['tables'] == {APPOINTMENTS: 5}
    assert 'completed_at' in item


def test_clean_converts_types():
    """Test DynamoDB type conversion."""
    cleaned = DynamoDBManager._clean({
        'a': 1.5,
        'b': None,
        'c': Category.FITTING,
        'd': datetime(2025, 7, 1, 9, 0),
        'e': [1.0, True],
        'f': {'g': None, 'h': 'x'},
    })

    assert cleaned == {
        'a': Decimal('1.5'),
        'c': 'fitting',
        'd': '2025-07-01T09:00:00',
        'e': [Decimal('1.0'), True],
        'f': {'h': 'x'},
    }


class TestPersistenceFailures:
    """Failure handling against a stubbed DynamoDB resource."""

    def setup_method(self):
        self.resource = MagicMock()
        self.table = self.resource.Table.return_value
        self.manager = DynamoDBManager(PREFIX, batch_size=10, dynamodb=self.resource)

    def test_batch_failure_falls_back_to_single_rows(self):
        """Test that a failing batch is retried row by row."""
        self.table.batch_writer.side_effect = client_error()
        self.table.put_item.side_effect = [None, client_error('PutItem'), None]
        records = [make_appointment(external_id=str(i)) for i in range(3)]

        result = self.manager.upsert_appointments(records)

        assert result.written == 2
        assert result.failed == 1
        assert isinstance(result.errors[0], PersistenceError)
        assert result.errors[0].identifier == '1'
        assert self.table.put_item.call_count == 3

    def test_save_sync_run_failure_is_logged(self, caplog):
        """Test that a run log write failure does not raise."""
        self.table.put_item.side_effect = client_error('PutItem')

        self.manager.save_sync_run(SyncSummary(run_id='run-2'))

        assert 'Failed to record sync run run-2' in caplog.text

    def test_table_names_use_prefix(self):
        """Test table naming and caching."""
        self.manager.table(APPOINTMENTS)
        self.manager.table(APPOINTMENTS)

        self.resource.Table.assert_called_once_with(f"{PREFIX}-{APPOINTMENTS}")
