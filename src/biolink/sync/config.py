"""Configuration for the sync and caching core."""

import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict


@dataclass
class SyncConfig:
    """Configuration settings for the data sync manager."""

    # Cache settings
    cache_max_entries: int = 500
    cache_ttl_seconds: float = 3600.0  # 1 hour
    query_ttl_seconds: float = 300.0  # 5 minutes
    eviction_ratio: float = 0.2

    # Queue / retry settings
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_seconds: float = 30.0
    sync_interval_seconds: float = 30.0
    auto_drain_on_enqueue: bool = True

    # Remote settings
    remote_timeout_seconds: float = 10.0
    max_batch_operations: int = 500
    enable_circuit_breaker: bool = True
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout_seconds: float = 30.0

    # Durable storage keys
    cache_storage_key: str = "data_cache"
    queue_storage_key: str = "sync_queue"

    # Logging settings
    log_level: str = "INFO"

    def validate(self) -> None:
        """Validate configuration parameters."""
        errors = []

        if self.cache_max_entries <= 0:
            errors.append(f"Cache max entries must be positive, got {self.cache_max_entries}")

        if self.cache_ttl_seconds <= 0:
            errors.append(f"Cache TTL must be positive, got {self.cache_ttl_seconds}")

        if self.query_ttl_seconds <= 0:
            errors.append(f"Query TTL must be positive, got {self.query_ttl_seconds}")

        if not (0.0 < self.eviction_ratio <= 1.0):
            errors.append(f"Eviction ratio must be in (0, 1], got {self.eviction_ratio}")

        if self.max_retries < 0:
            errors.append(f"Max retries must be non-negative, got {self.max_retries}")

        if self.retry_base_delay_seconds < 0:
            errors.append(f"Retry base delay must be non-negative, got {self.retry_base_delay_seconds}")

        if self.retry_backoff_multiplier < 1.0:
            errors.append(f"Retry backoff multiplier must be >= 1.0, got {self.retry_backoff_multiplier}")

        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            errors.append("Retry max delay must not be smaller than the base delay")

        if self.sync_interval_seconds <= 0:
            errors.append(f"Sync interval must be positive, got {self.sync_interval_seconds}")

        if self.remote_timeout_seconds <= 0:
            errors.append(f"Remote timeout must be positive, got {self.remote_timeout_seconds}")

        if self.max_batch_operations <= 0:
            errors.append(f"Max batch operations must be positive, got {self.max_batch_operations}")

        if self.circuit_failure_threshold <= 0:
            errors.append(f"Circuit failure threshold must be positive, got {self.circuit_failure_threshold}")

        if self.circuit_recovery_timeout_seconds < 0:
            errors.append(f"Circuit recovery timeout must be non-negative, got {self.circuit_recovery_timeout_seconds}")

        if not self.cache_storage_key or not self.queue_storage_key:
            errors.append("Storage keys must not be empty")
        elif self.cache_storage_key == self.queue_storage_key:
            errors.append("Cache and queue storage keys must differ")

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            errors.append(f"Log level must be one of {valid_log_levels}, got {self.log_level}")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return asdict(self)

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Create configuration from BIOLINK_SYNC_* environment variables."""
        def flag(name: str, default: str) -> bool:
            return os.getenv(name, default).lower() == "true"

        try:
            config = cls(
                cache_max_entries=int(os.getenv("BIOLINK_SYNC_CACHE_MAX_ENTRIES", "500")),
                cache_ttl_seconds=float(os.getenv("BIOLINK_SYNC_CACHE_TTL", "3600")),
                query_ttl_seconds=float(os.getenv("BIOLINK_SYNC_QUERY_TTL", "300")),
                eviction_ratio=float(os.getenv("BIOLINK_SYNC_EVICTION_RATIO", "0.2")),

                max_retries=int(os.getenv("BIOLINK_SYNC_MAX_RETRIES", "3")),
                retry_base_delay_seconds=float(os.getenv("BIOLINK_SYNC_RETRY_BASE_DELAY", "1.0")),
                retry_backoff_multiplier=float(os.getenv("BIOLINK_SYNC_RETRY_BACKOFF_MULTIPLIER", "2.0")),
                retry_max_delay_seconds=float(os.getenv("BIOLINK_SYNC_RETRY_MAX_DELAY", "30.0")),
                sync_interval_seconds=float(os.getenv("BIOLINK_SYNC_INTERVAL", "30")),
                auto_drain_on_enqueue=flag("BIOLINK_SYNC_AUTO_DRAIN", "true"),

                remote_timeout_seconds=float(os.getenv("BIOLINK_SYNC_REMOTE_TIMEOUT", "10")),
                max_batch_operations=int(os.getenv("BIOLINK_SYNC_MAX_BATCH_OPERATIONS", "500")),
                enable_circuit_breaker=flag("BIOLINK_SYNC_ENABLE_CIRCUIT_BREAKER", "true"),
                circuit_failure_threshold=int(os.getenv("BIOLINK_SYNC_CIRCUIT_FAILURE_THRESHOLD", "5")),
                circuit_recovery_timeout_seconds=float(os.getenv("BIOLINK_SYNC_CIRCUIT_RECOVERY_TIMEOUT", "30")),

                cache_storage_key=os.getenv("BIOLINK_SYNC_CACHE_STORAGE_KEY", "data_cache"),
                queue_storage_key=os.getenv("BIOLINK_SYNC_QUEUE_STORAGE_KEY", "sync_queue"),

                log_level=os.getenv("BIOLINK_SYNC_LOG_LEVEL", "INFO"),
            )

            config.validate()
            return config

        except ValueError as e:
            if "could not convert" in str(e) or "invalid literal" in str(e):
                raise ValueError(f"Invalid environment variable format: {e}")
            raise

    @classmethod
    def from_file(cls, config_path: str) -> "SyncConfig":
        """Load configuration from a .env file."""
        from dotenv import load_dotenv

        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        load_dotenv(config_file, override=True)

        return cls.from_env()
