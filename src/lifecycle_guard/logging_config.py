"""
Structured logging and Prometheus metrics.
"""
import logging

import structlog
from prometheus_client import Counter, Histogram

from lifecycle_guard.config import Settings

# Prometheus metrics
DECISION_COUNT = Counter(
    'guard_decisions_total', 'Lifecycle guard decisions', ['operation', 'outcome']
)
REQUEST_COUNT = Counter('http_requests_total', 'Total HTTP requests', ['method', 'endpoint', 'status'])
REQUEST_DURATION = Histogram('http_request_duration_seconds', 'HTTP request duration')


def configure_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging and render JSON lines"""
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
