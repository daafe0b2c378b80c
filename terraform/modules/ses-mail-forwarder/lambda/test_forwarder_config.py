#!/usr/bin/env python3
"""
Unit tests for forwarder_config.py
"""

import pytest

from forwarder_config import ForwarderConfig, parse_forward_mapping
from forwarder_errors import ConfigurationError


class TestFromEnviron:
    """Test ForwarderConfig.from_environ()."""

    def test_reads_all_settings(self):
        config = ForwarderConfig.from_environ({
            'FORWARD_MAPPING': '{"@": ["me@dest.com"]}',
            'BUCKET_NAME': 'mail-bucket',
            'KEY_PREFIX': 'inbound/',
            'DOMAIN': 'example.com',
            'TO_EMAIL': 'fixed@dest.com',
            'ENVIRONMENT': 'prod',
        })

        assert config.forward_mapping == '{"@": ["me@dest.com"]}'
        assert config.bucket_name == 'mail-bucket'
        assert config.key_prefix == 'inbound/'
        assert config.domain == 'example.com'
        assert config.to_email == 'fixed@dest.com'
        assert config.metrics_namespace == 'SESMail/prod'
        assert config.noreply_address == 'noreply@example.com'

    def test_defaults(self):
        config = ForwarderConfig.from_environ({})

        assert config.forward_mapping == '{}'
        assert config.bucket_name is None
        assert config.key_prefix == ''
        assert config.to_email is None
        assert config.environment == 'unknown'

    def test_blank_optional_values_are_unset(self):
        config = ForwarderConfig.from_environ({'TO_EMAIL': '', 'DOMAIN': ''})

        assert config.to_email is None
        assert config.domain is None

    def test_reads_process_environment_by_default(self, monkeypatch):
        monkeypatch.setenv('BUCKET_NAME', 'env-bucket')

        assert ForwarderConfig.from_environ().bucket_name == 'env-bucket'

    def test_noreply_address_requires_domain(self):
        with pytest.raises(ConfigurationError):
            ForwarderConfig().noreply_address


class TestParseForwardMapping:
    """Test parse_forward_mapping() function."""

    def test_parses_table_in_order(self):
        table = parse_forward_mapping('{"a@b.com": ["x@d.com", "y@d.com"], "@": []}')

        assert table == {'a@b.com': ['x@d.com', 'y@d.com'], '@': []}

    @pytest.mark.parametrize('raw', [None, '', '   '])
    def test_blank_is_empty_table(self, raw):
        assert parse_forward_mapping(raw) == {}

    @pytest.mark.parametrize('raw', [
        '{not json',
        '["a@b.com"]',
        '{"a@b.com": "x@d.com"}',
        '{"a@b.com": [1, 2]}',
    ])
    def test_invalid_tables(self, raw):
        with pytest.raises(ConfigurationError):
            parse_forward_mapping(raw)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
