"""
AWS collaborators used by the forwarder pipeline.

Each capability has a production implementation backed by boto3 and an
in-memory implementation used by tests and the local preview script.
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence

from botocore.exceptions import ClientError


class MessageStore(Protocol):
    """Read-only access to stored raw messages."""

    def get(self, bucket: str, key: str) -> bytes:
        ...


class RawMailer(Protocol):
    """Outbound raw message transmission."""

    def send_raw(self, destinations: Sequence[str], source: Optional[str], raw: bytes) -> Dict[str, Any]:
        ...


class MetricsPublisher(Protocol):
    """Counter publishing for invocation outcomes."""

    def publish(self, metric_name: str, value: int = 1) -> None:
        ...


class S3MessageStore:
    """MessageStore backed by S3 get_object."""

    def __init__(self, s3_client):
        self.s3_client = s3_client

    def get(self, bucket: str, key: str) -> bytes:
        obj = self.s3_client.get_object(Bucket=bucket, Key=key)
        return obj['Body'].read()


class SesRawMailer:
    """RawMailer backed by SES SendRawEmail."""

    def __init__(self, ses_client):
        self.ses_client = ses_client

    def send_raw(self, destinations: Sequence[str], source: Optional[str], raw: bytes) -> Dict[str, Any]:
        params = {
            'Destinations': list(destinations),
            'RawMessage': {'Data': raw},
        }
        # Without a Source SES falls back to the From header of the raw message
        if source:
            params['Source'] = source
        return self.ses_client.send_raw_email(**params)


class CloudWatchMetrics:
    """MetricsPublisher writing Count metrics to a CloudWatch namespace."""

    def __init__(self, cloudwatch_client, namespace: str):
        self.cloudwatch = cloudwatch_client
        self.namespace = namespace

    def publish(self, metric_name: str, value: int = 1) -> None:
        self.cloudwatch.put_metric_data(
            Namespace=self.namespace,
            MetricData=[{
                'MetricName': metric_name,
                'Value': value,
                'Unit': 'Count',
                'StorageResolution': 60
            }]
        )


class InMemoryMessageStore:
    """
    MessageStore holding objects in a dict keyed by (bucket, key).

    Missing objects raise the same ClientError S3 would, so callers see
    identical failure behaviour.
    """

    def __init__(self, objects: Optional[Dict[tuple, bytes]] = None):
        self.objects = dict(objects or {})
        self.requests: List[tuple] = []

    def put(self, bucket: str, key: str, content: bytes) -> None:
        self.objects[(bucket, key)] = content

    def get(self, bucket: str, key: str) -> bytes:
        self.requests.append((bucket, key))
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            raise ClientError(
                {'Error': {'Code': 'NoSuchKey', 'Message': 'The specified key does not exist.'}},
                'GetObject'
            )


class RecordingMailer:
    """RawMailer that records every send instead of transmitting it."""

    def __init__(self, message_id: str = 'local-message-id'):
        self.message_id = message_id
        self.sent: List[Dict[str, Any]] = []

    def send_raw(self, destinations: Sequence[str], source: Optional[str], raw: bytes) -> Dict[str, Any]:
        self.sent.append({
            'destinations': list(destinations),
            'source': source,
            'raw': raw,
        })
        return {'MessageId': self.message_id}


class RecordingMetrics:
    """MetricsPublisher that keeps counters in memory."""

    def __init__(self):
        self.counts: Dict[str, int] = {}

    def publish(self, metric_name: str, value: int = 1) -> None:
        self.counts[metric_name] = self.counts.get(metric_name, 0) + value
