"""Shared fixtures for the forwarder Lambda tests."""

import json
import os
from unittest.mock import MagicMock

# Must be set before aws_xray_sdk is imported by the modules under test
os.environ.setdefault('AWS_XRAY_SDK_ENABLED', 'false')
os.environ.setdefault('AWS_DEFAULT_REGION', 'ap-southeast-2')

import pytest

from forwarder_config import ForwarderConfig
from mail_clients import InMemoryMessageStore, RecordingMailer, RecordingMetrics

BUCKET = 'test-mail-bucket'
PREFIX = 'inbound/'
DOMAIN = 'example.com'

RAW_MESSAGE = (
    "Return-Path: <alice@sender.net>\r\n"
    "DKIM-Signature: v=1; a=rsa-sha256; c=relaxed/relaxed;\r\n"
    "\td=sender.net; s=sel1;\r\n"
    "\tb=AbCdEf0123456789==\r\n"
    "Message-ID: <original-123@sender.net>\r\n"
    "From: Alice Sender <alice@sender.net>\r\n"
    "To: info@example.com\r\n"
    "Subject: Hello there\r\n"
    "\r\n"
    "Hi,\r\n"
    "From: this line is body text\r\n"
)


def make_ses_event(message_id='msg-0001', recipients=None,
                   event_source='aws:ses', event_version='1.0'):
    """Build an SES Lambda-action event with a single record."""
    if recipients is None:
        recipients = ['info@example.com']
    return {
        'Records': [{
            'eventSource': event_source,
            'eventVersion': event_version,
            'ses': {
                'mail': {
                    'messageId': message_id,
                    'source': 'alice@sender.net',
                    'destination': list(recipients),
                    'commonHeaders': {'subject': 'Hello there'},
                },
                'receipt': {
                    'recipients': list(recipients),
                    'spamVerdict': {'status': 'PASS'},
                    'virusVerdict': {'status': 'PASS'},
                    'action': {'type': 'Lambda'},
                },
            },
        }]
    }


def make_config(mapping=None, **overrides):
    settings = {
        'forward_mapping': json.dumps(mapping if mapping is not None else {'info@example.com': ['me@dest.com']}),
        'bucket_name': BUCKET,
        'key_prefix': PREFIX,
        'domain': DOMAIN,
        'environment': 'test',
    }
    settings.update(overrides)
    return ForwarderConfig(**settings)


@pytest.fixture
def ses_event():
    return make_ses_event()


@pytest.fixture
def store():
    message_store = InMemoryMessageStore()
    message_store.put(BUCKET, f"{PREFIX}msg-0001", RAW_MESSAGE.encode('utf-8'))
    return message_store


@pytest.fixture
def mailer():
    return RecordingMailer(message_id='ses-out-0001')


@pytest.fixture
def metrics():
    return RecordingMetrics()


@pytest.fixture
def log():
    return MagicMock()


@pytest.fixture
def make_runtime(store, mailer, log, metrics):
    """Factory for a runtime wired to in-memory collaborators."""
    from forward_mail import build_runtime

    def _make(mapping=None, **config_overrides):
        return build_runtime(
            config=make_config(mapping, **config_overrides),
            storage=store,
            mailer=mailer,
            log=log,
            metrics=metrics,
        )

    return _make


@pytest.fixture
def runtime(make_runtime):
    return make_runtime()
