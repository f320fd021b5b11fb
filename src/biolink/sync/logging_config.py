"""Logging configuration for synchronization events."""

import logging
import sys
import time
from datetime import datetime
from typing import Optional


STRUCTURED_FIELDS = ['key', 'collection', 'operation', 'item_id']


class SyncEventFormatter(logging.Formatter):
    """Custom formatter for synchronization events."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with sync-specific information."""
        if not hasattr(record, 'timestamp'):
            record.timestamp = datetime.now().isoformat()

        sync_fields = []
        for field in STRUCTURED_FIELDS:
            if hasattr(record, field):
                sync_fields.append(f"{field}={getattr(record, field)}")

        base_msg = super().format(record)

        if sync_fields:
            return f"{base_msg} [{', '.join(sync_fields)}]"

        return base_msg


def setup_sync_logging(log_level: str = "INFO", force_level: bool = False) -> logging.Logger:
    """Set up logging for synchronization components.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        force_level: Apply ``log_level`` even if logging was already set up

    Returns:
        Configured logger for sync operations
    """
    logger = logging.getLogger("biolink")

    # Avoid duplicate handlers
    if logger.handlers:
        if force_level:
            logger.setLevel(getattr(logging, log_level.upper()))
            for handler in logger.handlers:
                handler.setLevel(getattr(logging, log_level.upper()))
        return logger

    logger.setLevel(getattr(logging, log_level.upper()))

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, log_level.upper()))

    formatter = SyncEventFormatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)

    return logger


def log_sync_event(logger: logging.Logger, operation: str, key: Optional[str],
                   message: str, **kwargs) -> None:
    """Log a cache or remote sync event with structured data.

    Args:
        logger: Logger instance
        operation: Operation name (get, set, update, delete, push, ...)
        key: Cache key involved, if any
        message: Human-readable message
        **kwargs: Additional fields to include in log
    """
    extra = {
        'operation': operation,
        'key': key,
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }

    logger.info(message, extra=extra)


def log_queue_event(logger: logging.Logger, item_id: str, operation: str,
                    event: str, message: str, **kwargs) -> None:
    """Log a sync queue transition.

    Args:
        logger: Logger instance
        item_id: Queue item ID
        operation: Queued operation type
        event: Queue event (enqueued, collapsed, synced, requeued, dropped)
        message: Human-readable message
        **kwargs: Additional fields to include in log
    """
    extra = {
        'item_id': item_id,
        'operation': operation,
        'queue_event': event,
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }

    # Log at appropriate level based on event type
    if event == 'dropped':
        logger.error(message, extra=extra)
    elif event == 'requeued':
        logger.warning(message, extra=extra)
    elif event in ['synced', 'restored']:
        logger.info(message, extra=extra)
    else:
        logger.debug(message, extra=extra)


def log_performance_metrics(logger: logging.Logger, operation: str,
                            latency_ms: float, **kwargs) -> None:
    """Log performance metrics for remote operations.

    Args:
        logger: Logger instance
        operation: Name of the operation being measured
        latency_ms: Operation latency in milliseconds
        **kwargs: Additional performance metrics
    """
    extra = {
        'event_type': 'performance_metrics',
        'latency_ms': round(latency_ms, 2),
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }

    # Log performance warnings for slow operations
    if latency_ms > 1000:
        logger.warning(f"Slow operation detected: {operation} took {latency_ms:.2f}ms", extra=extra)
    elif latency_ms > 500:
        logger.info(f"Performance: {operation} took {latency_ms:.2f}ms", extra=extra)
    else:
        logger.debug(f"Performance: {operation} took {latency_ms:.2f}ms", extra=extra)


def log_batch_metrics(logger: logging.Logger, batch_size: int,
                      processing_time_ms: float, success_count: int,
                      failure_count: int, **kwargs) -> None:
    """Log metrics for a queue drain pass or batch write.

    Args:
        logger: Logger instance
        batch_size: Total number of items attempted
        processing_time_ms: Time to process the batch
        success_count: Number of successful operations
        failure_count: Number of failed operations
        **kwargs: Additional batch metrics
    """
    success_rate = (success_count / batch_size) if batch_size > 0 else 0

    extra = {
        'event_type': 'batch_metrics',
        'batch_size': batch_size,
        'processing_time_ms': round(processing_time_ms, 2),
        'success_count': success_count,
        'failure_count': failure_count,
        'success_rate': round(success_rate, 3),
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }

    if failure_count > 0:
        logger.warning(f"Batch processed with {failure_count} failures: {success_count}/{batch_size} succeeded", extra=extra)
    else:
        logger.info(f"Batch processed successfully: {batch_size} items in {processing_time_ms:.2f}ms", extra=extra)


class PerformanceTimer:
    """Context manager for measuring operation performance."""

    def __init__(self, logger: logging.Logger, operation: str, **kwargs):
        self.logger = logger
        self.operation = operation
        self.kwargs = kwargs
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            latency_ms = (time.time() - self.start_time) * 1000

            if exc_type:
                self.kwargs['error'] = str(exc_val)
                self.kwargs['error_type'] = exc_type.__name__

            log_performance_metrics(
                self.logger, self.operation, latency_ms, **self.kwargs
            )


def get_logger(name: str, log_level: str = "INFO") -> logging.Logger:
    """Get a configured logger for sync components.

    Args:
        name: Logger name (usually __name__)
        log_level: Logging level

    Returns:
        Configured logger instance
    """
    setup_sync_logging(log_level)

    return logging.getLogger(name)
