"""
Unit tests for configuration.

Tests cover:
- Defaults
- Validation of each section
- Testing preset
"""

import pytest

from verso.utils.config import (
    MAX_SEQUENCE,
    DatabaseConfig,
    ObservabilityConfig,
    QueryConfig,
    TransactionConfig,
)
from verso.utils.errors import ConfigurationError, VersoError


class TestDefaults:
    """Tests for default configuration."""

    def test_default(self):
        """Defaults are read committed with detection and vacuum on."""
        config = DatabaseConfig.default()

        assert config.transaction.isolation_level == "read_committed"
        assert config.transaction.lock_timeout_ms == 5000
        assert config.transaction.deadlock_detection_enabled is True
        assert config.transaction.auto_vacuum is True
        assert config.transaction.max_transaction_id == MAX_SEQUENCE
        assert config.observability.enable_metrics is True
        assert config.observability.log_format == "json"

    def test_for_testing(self):
        """Testing preset trades overhead for determinism."""
        config = DatabaseConfig.for_testing()

        assert config.transaction.lock_timeout_ms == 1000
        assert config.transaction.auto_vacuum is False
        assert config.observability.enable_metrics is False
        assert config.observability.log_level == "DEBUG"


class TestValidation:
    """Tests for invalid values."""

    @pytest.mark.parametrize(
        "kwargs, key",
        [
            ({"isolation_level": "serializable"}, "isolation_level"),
            ({"lock_timeout_ms": -1}, "lock_timeout_ms"),
            ({"max_transaction_id": 0}, "max_transaction_id"),
            ({"max_commit_seq": -5}, "max_commit_seq"),
            ({"vacuum_interval_seconds": 0}, "vacuum_interval_seconds"),
            ({"vacuum_threshold": -1}, "vacuum_threshold"),
        ],
    )
    def test_transaction_config(self, kwargs, key):
        with pytest.raises(ConfigurationError) as exc_info:
            TransactionConfig(**kwargs)
        assert exc_info.value.key == key

    def test_zero_lock_timeout_allowed(self):
        """Zero means fail immediately instead of waiting."""
        assert TransactionConfig(lock_timeout_ms=0).lock_timeout_ms == 0

    def test_query_config(self):
        with pytest.raises(ConfigurationError):
            QueryConfig(max_query_length=0)

    def test_observability_config(self):
        with pytest.raises(ConfigurationError):
            ObservabilityConfig(log_level="LOUD")
        with pytest.raises(ConfigurationError):
            ObservabilityConfig(log_format="xml")

    def test_error_hierarchy(self):
        """ConfigurationError is a VersoError carrying the reason."""
        with pytest.raises(VersoError) as exc_info:
            TransactionConfig(lock_timeout_ms=-1)
        assert "non-negative" in exc_info.value.reason
