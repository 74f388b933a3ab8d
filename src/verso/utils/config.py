"""
Configuration management for Verso DB.

Centralized configuration with validation and sensible defaults.
Uses dataclasses for type safety; every section validates itself in
__post_init__ and raises ConfigurationError on bad values.
"""

from dataclasses import dataclass, field

from verso.utils.errors import ConfigurationError


MAX_SEQUENCE = 2**63 - 1


@dataclass
class TransactionConfig:
    """Configuration for transaction management."""

    isolation_level: str = "read_committed"

    # Locking settings
    lock_timeout_ms: int = 5000  # 5 seconds
    deadlock_detection_enabled: bool = True

    # Identifier space
    max_transaction_id: int = MAX_SEQUENCE
    max_commit_seq: int = MAX_SEQUENCE

    # Vacuum settings
    auto_vacuum: bool = True
    vacuum_interval_seconds: float = 1.0
    vacuum_threshold: int = 1000  # Vacuum after this many dead versions

    def __post_init__(self) -> None:
        """Validate configuration."""
        valid_isolation = {"read_committed"}
        if self.isolation_level not in valid_isolation:
            raise ConfigurationError(
                "isolation_level",
                self.isolation_level,
                f"must be one of {valid_isolation}",
            )

        if self.lock_timeout_ms < 0:
            raise ConfigurationError(
                "lock_timeout_ms",
                self.lock_timeout_ms,
                "must be non-negative",
            )

        for key in ("max_transaction_id", "max_commit_seq"):
            value = getattr(self, key)
            if value <= 0:
                raise ConfigurationError(key, value, "must be positive")

        if self.vacuum_interval_seconds <= 0:
            raise ConfigurationError(
                "vacuum_interval_seconds",
                self.vacuum_interval_seconds,
                "must be positive",
            )

        if self.vacuum_threshold < 0:
            raise ConfigurationError(
                "vacuum_threshold",
                self.vacuum_threshold,
                "must be non-negative",
            )


@dataclass
class QueryConfig:
    """Configuration for statement processing."""

    max_query_length: int = 1024 * 1024  # 1MB

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_query_length <= 0:
            raise ConfigurationError(
                "max_query_length",
                self.max_query_length,
                "must be positive",
            )


@dataclass
class ObservabilityConfig:
    """Configuration for observability features."""

    enable_metrics: bool = True

    # Logging settings
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    log_format: str = "json"  # json, console

    def __post_init__(self) -> None:
        """Validate configuration."""
        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level not in valid_log_levels:
            raise ConfigurationError(
                "log_level",
                self.log_level,
                f"must be one of {valid_log_levels}",
            )

        valid_formats = {"json", "console"}
        if self.log_format not in valid_formats:
            raise ConfigurationError(
                "log_format",
                self.log_format,
                f"must be one of {valid_formats}",
            )


@dataclass
class DatabaseConfig:
    """Master configuration for the database."""

    transaction: TransactionConfig = field(default_factory=TransactionConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def default(cls) -> "DatabaseConfig":
        """Create configuration with default values."""
        return cls()

    @classmethod
    def for_testing(cls) -> "DatabaseConfig":
        """Create configuration optimized for testing."""
        return cls(
            transaction=TransactionConfig(
                lock_timeout_ms=1000,  # Faster timeout
                auto_vacuum=False,  # Deterministic version counts
            ),
            observability=ObservabilityConfig(
                log_level="DEBUG",
                enable_metrics=False,  # Less overhead
            ),
        )
