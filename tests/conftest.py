"""
Shared fixtures for the test suite.
"""

import os
import tempfile
import threading
from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws

from usage_meter.storage.dynamodb_store import DynamoUsageStore
from usage_meter.storage.ledger import InMemoryCostLedger, SqliteCostLedger
from usage_meter.storage.memory_store import InMemoryUsageStore
from usage_meter.storage.sqlite_store import SqliteUsageStore

# Mid-month, mid-day, so neither boundary is adjacent
NOW = datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)

TABLE_NAME = "UsageCounters"


class SerializedTable:
    """A moto Table that handles one request at a time.

    DynamoDB applies every single request atomically. moto's in-process
    backend does not lock around update_item, so racing threads are
    funnelled through one lock here, request by request.
    """

    def __init__(self, table):
        self._table = table
        self._lock = threading.Lock()

    def get_item(self, **kwargs):
        with self._lock:
            return self._table.get_item(**kwargs)

    def put_item(self, **kwargs):
        with self._lock:
            return self._table.put_item(**kwargs)

    def update_item(self, **kwargs):
        with self._lock:
            return self._table.update_item(**kwargs)


@pytest.fixture(autouse=True)
def no_ceiling_env(monkeypatch):
    """Keep the ceiling override from leaking in from the shell."""
    monkeypatch.delenv("MAX_MONTHLY_COST_PER_USER", raising=False)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "test.db")


@pytest.fixture
def dynamodb_table(monkeypatch):
    """An empty usage counters table in a mocked AWS account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[
                {"AttributeName": "PK", "KeyType": "HASH"},
                {"AttributeName": "SK", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        table.wait_until_exists()
        yield table


@pytest.fixture(params=["memory", "sqlite", "dynamodb"])
def usage_store(request, db_path):
    """Every usage store adapter."""
    if request.param == "memory":
        return InMemoryUsageStore()
    if request.param == "dynamodb":
        table = request.getfixturevalue("dynamodb_table")
        return DynamoUsageStore(table=SerializedTable(table))
    store = SqliteUsageStore(db_path)
    store.initialize_schema()
    return store


@pytest.fixture(params=["memory", "sqlite"])
def cost_ledger(request, db_path):
    """Every ledger backend."""
    if request.param == "memory":
        return InMemoryCostLedger()
    ledger = SqliteCostLedger(db_path)
    ledger.initialize_schema()
    return ledger
