"""
SES Mail Forwarder Lambda Function

This Lambda function is invoked by an SES receipt rule after the message has
been stored in S3. It forwards the message to the destinations configured in
the forwarding table:

1. parse_event: validate the SES record and extract message id and recipients
2. transform_recipients: map original recipients to forwarding destinations
3. fetch_message: load the raw message from S3
4. process_message: rewrite the header so the forward is deliverable
5. send_message: resend the rewritten message with SES SendRawEmail

Each stage takes the current ForwardContext and returns a new one. The first
stage error stops the pipeline and the invocation fails with a generic error.
"""

import json
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from aws_lambda_powertools import Logger

from forwarder_config import CATCH_ALL_KEY, ForwarderConfig
from forwarder_errors import (
    ConfigurationError,
    FetchError,
    ForwardingFailedError,
    InvalidEventError,
    SendError,
)
from header_rewriter import rewrite_header, split_message
from mail_clients import (
    CloudWatchMetrics,
    MessageStore,
    MetricsPublisher,
    RawMailer,
    S3MessageStore,
    SesRawMailer,
)

# Configure structured JSON logging
logger = Logger(service="ses-mail-forwarder")

from aws_xray_sdk.core import xray_recorder
from aws_xray_sdk.core import patch_all
patch_all()

EXPECTED_EVENT_SOURCE = 'aws:ses'
EXPECTED_EVENT_VERSION = '1.0'

# Raw messages are not guaranteed to be valid UTF-8; surrogateescape keeps
# every byte intact through decode and encode.
MESSAGE_ENCODING = 'utf-8'
MESSAGE_ENCODING_ERRORS = 'surrogateescape'


@dataclass(frozen=True)
class ForwardContext:
    """State threaded through the pipeline for one inbound message."""
    event: Any
    message_id: Optional[str] = None
    original_recipients: Tuple[str, ...] = ()
    recipients: Tuple[str, ...] = ()
    envelope_sender: Optional[str] = None
    raw_message: Optional[str] = None
    finished: bool = False


@dataclass(frozen=True)
class Runtime:
    """Configuration and collaborators shared by all stages of one invocation."""
    config: ForwarderConfig
    storage: MessageStore
    mailer: RawMailer
    logger: Any = logger
    metrics: Optional[MetricsPublisher] = None


Step = Callable[[ForwardContext, Runtime], ForwardContext]


def build_runtime(config: Optional[ForwarderConfig] = None,
                  storage: Optional[MessageStore] = None,
                  mailer: Optional[RawMailer] = None,
                  log: Any = None,
                  metrics: Optional[MetricsPublisher] = None) -> Runtime:
    """
    Build the runtime for one invocation.

    Anything not supplied gets its production implementation: configuration
    from the Lambda environment, boto3 S3/SES/CloudWatch clients, and the
    module logger.
    """
    if config is None:
        config = ForwarderConfig.from_environ()
    if storage is None:
        storage = S3MessageStore(boto3.client('s3'))
    if mailer is None:
        mailer = SesRawMailer(boto3.client('ses'))
    if metrics is None:
        metrics = CloudWatchMetrics(boto3.client('cloudwatch'), config.metrics_namespace)

    return Runtime(
        config=config,
        storage=storage,
        mailer=mailer,
        logger=log if log is not None else logger,
        metrics=metrics,
    )


def lambda_handler(event, context):
    """
    Lambda handler for forwarding an SES inbound email.

    Args:
        event: SES Lambda-action event with a single receipt record
        context: Lambda context object

    Returns:
        None on success (including when no recipient is forwarded)

    Raises:
        ForwardingFailedError: If any pipeline stage fails
    """
    logger.info("Received SES event", extra={
        "requestId": getattr(context, 'aws_request_id', None),
        "event": event
    })

    run_pipeline(event, build_runtime())
    return None


def run_pipeline(event: Any, runtime: Runtime,
                 steps: Optional[Sequence[Step]] = None) -> ForwardContext:
    """
    Run the forwarding steps against one inbound event.

    Args:
        event: Inbound SES notification
        runtime: Configuration and collaborators for this invocation
        steps: Stage functions to run (defaults to DEFAULT_STEPS)

    Returns:
        ForwardContext: Final context, for callers that want to inspect it

    Raises:
        ForwardingFailedError: If any step raised; the step's error is only logged
    """
    if steps is None:
        steps = DEFAULT_STEPS

    context = ForwardContext(event=event)

    try:
        for step in steps:
            context = run_step(step, context, runtime)
            if context.finished:
                break
    except Exception as e:
        runtime.logger.error(f"Step returned error: {e}", exc_info=True, extra={
            "messageId": context.message_id,
            "errorType": type(e).__name__,
            "error": str(e)
        })
        publish_metric(runtime, 'ForwardFailure')
        raise ForwardingFailedError("Step returned error.") from None

    if context.finished:
        publish_metric(runtime, 'ForwardSkipped')
    else:
        publish_metric(runtime, 'ForwardSuccess')

    runtime.logger.info("Process finished successfully.", extra={"messageId": context.message_id})
    return context


def run_step(step: Step, context: ForwardContext, runtime: Runtime) -> ForwardContext:
    """Run one stage inside its own X-Ray subsegment."""
    name = getattr(step, '__name__', 'step')
    subsegment = xray_recorder.begin_subsegment(f"forward_mail.{name}")

    try:
        result = step(context, runtime)
        if subsegment is not None:
            if result.message_id:
                subsegment.put_annotation('messageId', result.message_id)
            subsegment.put_annotation('outcome', 'success')
        return result
    except Exception as e:
        if subsegment is not None:
            if context.message_id:
                subsegment.put_annotation('messageId', context.message_id)
            subsegment.put_annotation('outcome', 'error')
            subsegment.put_annotation('errorType', type(e).__name__)
        raise
    finally:
        if subsegment is not None:
            xray_recorder.end_subsegment()


def publish_metric(runtime: Runtime, metric_name: str) -> None:
    """Publish an outcome metric; failures are logged and otherwise ignored."""
    if runtime.metrics is None:
        return

    try:
        runtime.metrics.publish(metric_name)
    except Exception as e:
        # Don't fail the invocation if metrics publishing fails
        runtime.logger.exception("Error publishing metrics", extra={
            "metricName": metric_name,
            "error": str(e)
        })


def parse_event(context: ForwardContext, runtime: Runtime) -> ForwardContext:
    """
    Parse the SES event for the message id and recipient list.

    Raises:
        InvalidEventError: Unless the event holds exactly one aws:ses 1.0 record
    """
    event = context.event
    records = event.get('Records') if isinstance(event, dict) else None

    if (not isinstance(records, list) or len(records) != 1 or
            not isinstance(records[0], dict) or
            records[0].get('eventSource') != EXPECTED_EVENT_SOURCE or
            records[0].get('eventVersion') != EXPECTED_EVENT_VERSION):
        reject_event(event, runtime, "parse_event() received invalid SES message")

    ses = records[0].get('ses')
    mail = ses.get('mail') if isinstance(ses, dict) else None
    receipt = ses.get('receipt') if isinstance(ses, dict) else None
    if not isinstance(mail, dict) or not isinstance(receipt, dict):
        reject_event(event, runtime, "parse_event() received SES message without mail or receipt")

    message_id = mail.get('messageId')
    recipients = receipt.get('recipients')

    if (not message_id or not isinstance(message_id, str) or
            not isinstance(recipients, list) or
            not all(isinstance(r, str) for r in recipients)):
        reject_event(event, runtime, "parse_event() received SES message without messageId or recipients")

    recipients = tuple(recipients)
    return replace(
        context,
        message_id=message_id,
        original_recipients=recipients,
        recipients=recipients,
    )


def reject_event(event: Any, runtime: Runtime, message: str) -> None:
    runtime.logger.error(message, extra={"event": json.dumps(event, default=str)})
    raise InvalidEventError("Received invalid SES message.")


def normalize_address(address: str) -> str:
    """
    Lower-case an address and remove its plus tag.

    Example: User+Tag@Example.com -> user@example.com
    """
    key = address.lower()
    plus = key.find('+')
    if plus != -1:
        at = key.find('@', plus)
        if at != -1:
            key = key[:plus] + key[at:]
    return key


def generate_lookup_keys(normalized: str) -> List[str]:
    """
    Generate forwarding table keys in order of specificity.

    1. Full address (user@example.com)
    2. Domain (@example.com), only for addresses containing '@'
    3. Local part (user); the whole value when there is no '@'
    4. Catch-all (@)
    """
    keys = [normalized]

    pos = normalized.rfind('@')
    if pos == -1:
        local_part = normalized
    else:
        keys.append(normalized[pos:])
        local_part = normalized[:pos]

    if local_part:
        keys.append(local_part)

    keys.append(CATCH_ALL_KEY)
    return keys


def resolve_destinations(address: str, table: Dict[str, List[str]]) -> Tuple[Optional[List[str]], Optional[str]]:
    """
    Find the destinations for one original recipient.

    Returns:
        tuple: (destinations, lookup key) or (None, None) when nothing matches
    """
    for lookup_key in generate_lookup_keys(normalize_address(address)):
        if lookup_key in table:
            return table[lookup_key], lookup_key
    return None, None


def transform_recipients(context: ForwardContext, runtime: Runtime) -> ForwardContext:
    """
    Replace the original recipients with their forwarding destinations.

    When several recipients match, the last matching one becomes the
    envelope sender. No match at all finishes the pipeline successfully.

    Raises:
        ConfigurationError: If the forwarding table cannot be parsed
    """
    log = runtime.logger

    try:
        table = runtime.config.forwarding_table()
    except ConfigurationError as e:
        log.error("Failed to parse FORWARD_MAPPING configuration", extra={"error": str(e)})
        raise

    new_recipients: List[str] = []
    envelope_sender = context.envelope_sender

    for original in context.original_recipients:
        destinations, lookup_key = resolve_destinations(original, table)
        log.info("Routing decision", extra={
            "messageId": context.message_id,
            "recipient": original,
            "lookupKey": lookup_key,
            "destinations": destinations
        })
        if destinations is not None:
            new_recipients.extend(destinations)
            envelope_sender = original

    if not new_recipients:
        log.info(
            "Finishing process. No new recipients found for original destinations: "
            f"{', '.join(context.original_recipients)}",
            extra={"messageId": context.message_id}
        )
        return replace(context, finished=True)

    return replace(context, recipients=tuple(new_recipients), envelope_sender=envelope_sender)


def fetch_message(context: ForwardContext, runtime: Runtime) -> ForwardContext:
    """
    Fetch the raw message from S3 at KEY_PREFIX + messageId.

    Raises:
        ConfigurationError: If BUCKET_NAME is not configured
        FetchError: If the object cannot be read
    """
    config = runtime.config
    if not config.bucket_name:
        raise ConfigurationError("BUCKET_NAME environment variable must be set")

    key = f"{config.key_prefix}{context.message_id}"
    runtime.logger.info(f"Fetching email at s3://{config.bucket_name}/{key}", extra={
        "bucket": config.bucket_name,
        "key": key
    })

    try:
        content = runtime.storage.get(config.bucket_name, key)
    except (ClientError, BotoCoreError) as e:
        runtime.logger.exception("Error occurred while fetching message", extra={
            "bucket": config.bucket_name,
            "key": key,
            "error": str(e)
        })
        raise FetchError("Failed to load message from S3.") from e

    raw_message = content.decode(MESSAGE_ENCODING, MESSAGE_ENCODING_ERRORS)
    return replace(context, raw_message=raw_message)


def process_message(context: ForwardContext, runtime: Runtime) -> ForwardContext:
    """
    Rewrite the message header for forwarding; the body is left untouched.

    Raises:
        ConfigurationError: If DOMAIN is not configured
    """
    log = runtime.logger
    noreply_address = runtime.config.noreply_address

    header, body = split_message(context.raw_message or '')
    if not header:
        log.warning("Message has an empty header segment", extra={"messageId": context.message_id})

    result = rewrite_header(header, noreply_address, runtime.config.to_email)

    if result.reply_to:
        log.info(f"Added Reply-To address of: {result.reply_to}", extra={"messageId": context.message_id})
    elif not result.had_reply_to:
        log.info(
            "Reply-To address not added because From address was not properly extracted.",
            extra={"messageId": context.message_id}
        )

    return replace(context, raw_message=result.header + body)


def send_message(context: ForwardContext, runtime: Runtime) -> ForwardContext:
    """
    Send the rewritten message with SES SendRawEmail.

    Raises:
        SendError: If SES rejects the message or the call fails
    """
    log = runtime.logger
    log.info(
        "sendMessage: Sending email via SES. "
        f"Original recipients: {', '.join(context.original_recipients)}. "
        f"Transformed recipients: {', '.join(context.recipients)}.",
        extra={
            "messageId": context.message_id,
            "source": context.envelope_sender
        }
    )

    raw = (context.raw_message or '').encode(MESSAGE_ENCODING, MESSAGE_ENCODING_ERRORS)

    try:
        result = runtime.mailer.send_raw(context.recipients, context.envelope_sender, raw)
    except (ClientError, BotoCoreError) as e:
        log.exception("sendRawEmail() returned error.", extra={
            "messageId": context.message_id,
            "error": str(e)
        })
        raise SendError("Email sending failed.") from e

    log.info("sendRawEmail() successful.", extra={
        "messageId": context.message_id,
        "sesMessageId": result.get('MessageId')
    })
    return context


DEFAULT_STEPS: Tuple[Step, ...] = (
    parse_event,
    transform_recipients,
    fetch_message,
    process_message,
    send_message,
)
