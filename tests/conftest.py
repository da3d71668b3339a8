"""Shared fixtures for the test suite."""
import copy
from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws


TABLE_NAME = 'test-calendar-events'

SAMPLE_API_EVENT = {
    'id': 42,
    'title': 'A',
    'description': '<p>An hour on <strong>ideas</strong></p>',
    'start_date': '2025-07-01T10:00:00',
    'end_date': '2025-07-01T11:00:00',
    'timezone': 'America/New_York',
    'venue': {
        'id': 7,
        'venue': 'Hall of Philosophy',
        'address': '1 Clark Ave',
        'show_map': True
    },
    'categories': [
        {'id': 1, 'name': 'Lecture', 'slug': 'lecture', 'taxonomy': 'category', 'parent': 0}
    ],
    'cost': '',
    'url': 'https://example.com/events/42',
    'status': 'publish',
    'featured': False
}


@pytest.fixture(autouse=True)
def aws_env(monkeypatch):
    """Point boto3 at fake credentials so nothing reaches real AWS."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def api_event():
    """Return a factory for raw feed events with optional overrides."""
    def make(**overrides):
        event = copy.deepcopy(SAMPLE_API_EVENT)
        event.update(overrides)
        return event
    return make


@pytest.fixture
def fixed_clock():
    """Clock returning a fixed UTC instant."""
    moment = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)
    return lambda: moment


@pytest.fixture
def dynamodb_table():
    """Create a mock DynamoDB table for testing."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[
                {'AttributeName': 'uid', 'KeyType': 'HASH'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'uid', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )
        yield table
