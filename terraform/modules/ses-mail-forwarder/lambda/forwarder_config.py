"""
Configuration for the SES mail forwarder.

The Lambda environment is read once per invocation into a ForwarderConfig,
which is then handed to every pipeline stage. Stages never read os.environ.

Environment variables:
- FORWARD_MAPPING: JSON object mapping lookup keys to destination lists
- BUCKET_NAME: S3 bucket the SES receipt rule stores messages in
- KEY_PREFIX: object key prefix used by the receipt rule (may be empty)
- DOMAIN: sending domain used for the noreply From address
- TO_EMAIL: optional fixed address every To: header is rewritten to
- ENVIRONMENT: deployment environment, used for the metrics namespace
"""

import json
import os
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from forwarder_errors import ConfigurationError

CATCH_ALL_KEY = '@'


@dataclass(frozen=True)
class ForwarderConfig:
    """Immutable forwarder settings."""
    forward_mapping: str = '{}'
    bucket_name: Optional[str] = None
    key_prefix: str = ''
    domain: Optional[str] = None
    to_email: Optional[str] = None
    environment: str = 'unknown'

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> 'ForwarderConfig':
        """
        Build the configuration from environment-style values.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            ForwarderConfig: Settings for one invocation
        """
        if environ is None:
            environ = os.environ

        return cls(
            forward_mapping=environ.get('FORWARD_MAPPING', '{}'),
            bucket_name=environ.get('BUCKET_NAME') or None,
            key_prefix=environ.get('KEY_PREFIX', ''),
            domain=environ.get('DOMAIN') or None,
            to_email=environ.get('TO_EMAIL') or None,
            environment=environ.get('ENVIRONMENT', 'unknown'),
        )

    @property
    def noreply_address(self) -> str:
        """Address every rewritten From: header points at."""
        if not self.domain:
            raise ConfigurationError("DOMAIN must be configured to rewrite From headers")
        return f"noreply@{self.domain}"

    @property
    def metrics_namespace(self) -> str:
        return f"SESMail/{self.environment}"

    def forwarding_table(self) -> Dict[str, List[str]]:
        """Parse the serialized forwarding table."""
        return parse_forward_mapping(self.forward_mapping)


def parse_forward_mapping(raw: Optional[str]) -> Dict[str, List[str]]:
    """
    Parse a serialized forwarding table.

    Keys are a full address, a domain with its leading '@', a bare local
    part, or the catch-all '@'. Values are ordered destination lists.

    Args:
        raw: JSON text of the table (None or blank is an empty table)

    Returns:
        dict: Lookup key to destination addresses

    Raises:
        ConfigurationError: If the text is not a JSON object of string lists
    """
    if raw is None or not raw.strip():
        return {}

    try:
        table = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid FORWARD_MAPPING configuration: {e}") from e

    if not isinstance(table, dict):
        raise ConfigurationError("Invalid FORWARD_MAPPING configuration: expected a JSON object")

    for key, destinations in table.items():
        if not isinstance(destinations, list) or not all(isinstance(d, str) for d in destinations):
            raise ConfigurationError(
                f"Invalid FORWARD_MAPPING configuration: entry {key!r} must be a list of addresses"
            )

    return table
