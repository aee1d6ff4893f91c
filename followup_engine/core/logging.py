"""
Structured logging configuration with correlation IDs and pass timing.
"""
import logging
import random
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

from followup_engine.core.config import settings

# Context variables for pass-scoped data
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
pass_name_var: ContextVar[Optional[str]] = ContextVar('pass_name', default=None)
follow_up_id_var: ContextVar[Optional[str]] = ContextVar('follow_up_id', default=None)
customer_id_var: ContextVar[Optional[str]] = ContextVar('customer_id', default=None)


def add_correlation_id(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add correlation ID to log events."""
    correlation_id = correlation_id_var.get()
    if not correlation_id:
        correlation_id = str(uuid.uuid4())[:8]
        correlation_id_var.set(correlation_id)

    event_dict["correlation_id"] = correlation_id
    return event_dict


def add_pass_context(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add batch pass context information to log events."""
    pass_name = pass_name_var.get()
    if pass_name:
        event_dict.setdefault("pass_name", pass_name)

    follow_up_id = follow_up_id_var.get()
    if follow_up_id:
        event_dict.setdefault("follow_up_id", follow_up_id)

    customer_id = customer_id_var.get()
    if customer_id:
        event_dict.setdefault("customer_id", customer_id)

    return event_dict


def add_service_context(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add service context to log events."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.service_version
    event_dict["environment"] = settings.environment
    return event_dict


class LogSampler:
    """Log sampler for high-volume passes."""

    def __init__(self, sample_rate: float = 1.0):
        """
        Initialize sampler.

        Args:
            sample_rate: Rate between 0.0 and 1.0 for sampling logs
        """
        self.sample_rate = max(0.0, min(1.0, sample_rate))

    def should_log(self, level: str = "info") -> bool:
        """Determine if a log event should be sampled."""
        # Always log errors and warnings
        if level.lower() in ("error", "warning", "critical", "exception"):
            return True

        if self.sample_rate >= 1.0:
            return True
        if self.sample_rate <= 0.0:
            return False
        return random.random() < self.sample_rate


# Global sampler instance
_log_sampler = LogSampler()


def add_sampling_filter(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop sampled-out log events."""
    if not _log_sampler.should_log(method_name):
        raise structlog.DropEvent
    return event_dict


def setup_logging(sample_rate: Optional[float] = None, log_level: Optional[str] = None) -> None:
    """
    Configure structured logging.

    Args:
        sample_rate: Sampling rate for high-volume logs (0.0-1.0)
        log_level: Minimum level name, defaults to the configured level
    """
    global _log_sampler
    _log_sampler = LogSampler(settings.log_sample_rate if sample_rate is None else sample_rate)

    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_service_context,
            add_pass_context,
            add_correlation_id,
            add_sampling_filter,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def get_business_logger() -> structlog.stdlib.BoundLogger:
    """Get a business event logger instance."""
    return structlog.get_logger("business")


def get_performance_logger() -> structlog.stdlib.BoundLogger:
    """Get a performance logger instance."""
    return structlog.get_logger("performance")


def set_correlation_id(correlation_id: str) -> None:
    """Set correlation ID in the current context."""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get correlation ID from current context."""
    return correlation_id_var.get()


@contextmanager
def correlation_context(
    correlation_id: Optional[str] = None,
    pass_name: Optional[str] = None,
    follow_up_id: Optional[str] = None,
    customer_id: Optional[str] = None,
):
    """
    Context manager for setting correlation context.

    Args:
        correlation_id: Correlation ID for the pass
        pass_name: Name of the batch pass
        follow_up_id: Follow-up instance being processed
        customer_id: Customer being processed
    """
    tokens = []
    if correlation_id:
        tokens.append((correlation_id_var, correlation_id_var.set(correlation_id)))
    if pass_name:
        tokens.append((pass_name_var, pass_name_var.set(pass_name)))
    if follow_up_id:
        tokens.append((follow_up_id_var, follow_up_id_var.set(follow_up_id)))
    if customer_id:
        tokens.append((customer_id_var, customer_id_var.set(customer_id)))

    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


@contextmanager
def performance_timing(operation_name: str, **context):
    """
    Context manager for timing operations.

    Args:
        operation_name: Name of the operation being timed
    """
    start_time = time.perf_counter()
    logger = get_performance_logger()
    logger.info("Operation started", operation=operation_name, **context)

    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        logger.info(
            "Operation completed",
            operation=operation_name,
            duration_ms=round(duration * 1000, 2),
            **context
        )


def log_business_event(event_type: str, **kwargs) -> None:
    """
    Log a structured business event.

    Args:
        event_type: Type of business event
        **kwargs: Additional event data
    """
    logger = get_business_logger()
    logger.info("Business event", event_type=event_type, **kwargs)
