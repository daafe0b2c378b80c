#!/usr/bin/env python3
"""
Preview what the forwarder would send for a stored message.

Without --event, only the header rewrite is applied to the .eml file and the
result is printed. With --event, the full pipeline runs against in-memory
S3/SES collaborators, using the .eml file as the stored object for the
event's messageId, and the outgoing SES request is printed.

Examples:
    ./scripts/preview_forward.py message.eml --domain example.com
    ./scripts/preview_forward.py message.eml --domain example.com \\
        --event ses-event.json --mapping '{"@example.com": ["me@gmail.com"]}'
"""

import argparse
import json
import logging
import os
import sys

# No X-Ray daemon when running locally
os.environ.setdefault('AWS_XRAY_SDK_ENABLED', 'false')

from aws_lambda_powertools import Logger

from forward_mail import MESSAGE_ENCODING, MESSAGE_ENCODING_ERRORS, build_runtime, run_pipeline
from forwarder_config import ForwarderConfig
from forwarder_errors import ForwardingFailedError
from header_rewriter import rewrite_header, split_message
from mail_clients import InMemoryMessageStore, RecordingMailer, RecordingMetrics

PREVIEW_BUCKET = 'preview-bucket'

# Pipeline logs go to stderr so stdout carries only the previewed message
preview_logger = Logger(
    service="ses-mail-forwarder-preview",
    logger_handler=logging.StreamHandler(sys.stderr),
)


def preview_rewrite(raw: bytes, domain: str, to_email=None) -> str:
    """Apply only the header rewrite to a raw message."""
    text = raw.decode(MESSAGE_ENCODING, MESSAGE_ENCODING_ERRORS)
    header, body = split_message(text)
    result = rewrite_header(header, f"noreply@{domain}", to_email)
    return result.header + body


def preview_pipeline(raw: bytes, event: dict, config: ForwarderConfig):
    """
    Run the whole pipeline with in-memory collaborators.

    Returns:
        list: Recorded sends (empty when no recipient was forwarded)
    """
    try:
        message_id = event['Records'][0]['ses']['mail']['messageId']
    except (KeyError, IndexError, TypeError):
        # Malformed events are rejected by parse_event; nothing to store
        message_id = ''

    store = InMemoryMessageStore()
    store.put(config.bucket_name, f"{config.key_prefix}{message_id}", raw)
    mailer = RecordingMailer()

    runtime = build_runtime(
        config=config, storage=store, mailer=mailer,
        log=preview_logger, metrics=RecordingMetrics()
    )
    run_pipeline(event, runtime)
    return mailer.sent


def main():
    parser = argparse.ArgumentParser(
        description='Preview the forwarded form of a raw email'
    )
    parser.add_argument(
        'eml',
        help='Path to the raw message (.eml)'
    )
    parser.add_argument(
        '--domain',
        required=True,
        help='Sending domain for the noreply From address'
    )
    parser.add_argument(
        '--to-email',
        default=None,
        help='Optional fixed To: address'
    )
    parser.add_argument(
        '--event',
        default=None,
        help='Path to an SES event JSON file; runs the full pipeline'
    )
    parser.add_argument(
        '--mapping',
        default='{}',
        help='Forwarding table JSON used with --event (default: {})'
    )

    args = parser.parse_args()

    with open(args.eml, 'rb') as f:
        raw = f.read()

    if not args.event:
        sys.stdout.write(preview_rewrite(raw, args.domain, args.to_email))
        return

    with open(args.event) as f:
        event = json.load(f)

    config = ForwarderConfig(
        forward_mapping=args.mapping,
        bucket_name=PREVIEW_BUCKET,
        domain=args.domain,
        to_email=args.to_email,
        environment='preview',
    )

    try:
        sent = preview_pipeline(raw, event, config)
    except ForwardingFailedError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    if not sent:
        print("No recipients matched; nothing would be sent.")
        return

    for send in sent:
        print("=" * 60)
        print(f"Source:       {send['source']}")
        print(f"Destinations: {', '.join(send['destinations'])}")
        print("=" * 60)
        sys.stdout.write(send['raw'].decode(MESSAGE_ENCODING, MESSAGE_ENCODING_ERRORS))


if __name__ == '__main__':
    main()
