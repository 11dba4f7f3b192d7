import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "companion-core",
    environment: str = "development"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    # Configure structlog
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=environment,
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    # Correlate every entry emitted while a turn is running
    turn_id = structlog.contextvars.get_contextvars().get("turn_id")
    if turn_id:
        event_dict["turn_id"] = turn_id

    return event_dict


class CompanionLogger:
    """Specialized logger for conversation pipeline events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_turn_event(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        """Log turn lifecycle events"""

        self.logger.info(
            "turn_event",
            event_type=event_type,
            data=data or {},
            **kwargs
        )

    def log_completion_request(
        self,
        model: str,
        message_count: int,
        duration_ms: Optional[float] = None,
        status: Optional[int] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log a completion endpoint round trip"""

        self.logger.info(
            "completion_request",
            model=model,
            message_count=message_count,
            duration_ms=duration_ms,
            status=status,
            success=success,
            error=error
        )

    def log_memory_update(
        self,
        memory_type: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log writes to persisted facts or history"""

        self.logger.info(
            "memory_update",
            memory_type=memory_type,
            action=action,
            details=details or {}
        )

    def log_recovery(
        self,
        status: Optional[int],
        history_reset: bool,
        error: Optional[str] = None
    ):
        """Log recovery decisions after a failed turn"""

        self.logger.warning(
            "turn_recovery",
            status=status,
            history_reset=history_reset,
            error=error
        )


# Global logger instance
companion_logger = CompanionLogger("companion")


class MetricsCollector:
    """Collect and export metrics"""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}

    def record_latency(self, operation: str, duration_ms: float):
        """Record operation latency"""

        key = f"latency.{operation}"
        if key not in self.metrics:
            self.metrics[key] = {
                "count": 0,
                "sum": 0,
                "min": float('inf'),
                "max": 0
            }

        self.metrics[key]["count"] += 1
        self.metrics[key]["sum"] += duration_ms
        self.metrics[key]["min"] = min(self.metrics[key]["min"], duration_ms)
        self.metrics[key]["max"] = max(self.metrics[key]["max"], duration_ms)

        companion_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms
        )

    def increment_counter(self, name: str, value: int = 1):
        """Increment a counter metric"""

        if name not in self.metrics:
            self.metrics[name] = 0
        self.metrics[name] += value

        companion_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value
        )

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict) and "count" in value:
                # Latency metric
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float('inf') else 0,
                    "max": value["max"]
                }
            else:
                summary[key] = value

        return summary


# Global metrics collector
metrics = MetricsCollector()
