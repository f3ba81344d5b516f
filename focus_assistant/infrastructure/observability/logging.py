import structlog
import logging
import sys
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("uvicorn.access", "httpx", "llama_cpp")

TURN_CONTEXT_KEYS = ("conversation_id", "turn_id")


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "focus-assistant"
) -> None:
    """Route stdlib and structlog output through one renderer"""

    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        add_turn_context,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=service_name)


def add_turn_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Make sure every entry inside a turn names its conversation and turn"""

    event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    context = structlog.contextvars.get_contextvars()
    for key in TURN_CONTEXT_KEYS:
        if key in context:
            event_dict.setdefault(key, context[key])
    return event_dict


class AssistantLogger:
    """Typed events for model, generation, action and memory activity"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_model_transition(
        self,
        from_state: str,
        to_state: str,
        model_name: Optional[str] = None,
        reason: Optional[str] = None
    ):
        self.logger.info(
            "model_transition",
            transition=f"{from_state}->{to_state}",
            model_name=model_name,
            reason=reason
        )

    def log_generation(
        self,
        model_name: str,
        prompt_chars: int,
        output_chars: int,
        fragments: int,
        duration_ms: float,
        cancelled: bool = False,
        timed_out: bool = False
    ):
        """One event per generation run, whatever its outcome"""

        if timed_out:
            outcome = "timed_out"
        elif cancelled:
            outcome = "cancelled"
        else:
            outcome = "completed"
        self.logger.info(
            "generation",
            model_name=model_name,
            outcome=outcome,
            prompt_chars=prompt_chars,
            output_chars=output_chars,
            fragments=fragments,
            duration_ms=round(duration_ms, 2)
        )

    def log_action_execution(
        self,
        action_type: str,
        item_name: str,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        log = self.logger.info if success else self.logger.warning
        log(
            "action_execution",
            action_type=action_type,
            item_name=item_name,
            duration_ms=round(duration_ms, 2) if duration_ms is not None else None,
            success=success,
            error=error
        )

    def log_memory_update(
        self,
        conversation_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.logger.info(
            "memory_update",
            conversation_id=conversation_id,
            action=action,
            **(details or {})
        )


assistant_logger = AssistantLogger("focus_assistant")


class LatencyStats:
    """Running count, total and bounds for one operation"""

    def __init__(self):
        self.count = 0
        self.total_ms = 0.0
        self.min_ms: Optional[float] = None
        self.max_ms = 0.0

    def observe(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    def summary(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg": self.total_ms / self.count if self.count else 0.0,
            "min": self.min_ms or 0.0,
            "max": self.max_ms,
        }


class MetricsCollector:
    """In-process counters, gauges and latencies; also emitted as debug logs"""

    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.gauges: Dict[str, float] = {}
        self.latencies: Dict[str, LatencyStats] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        self.latencies.setdefault(operation, LatencyStats()).observe(duration_ms)
        assistant_logger.logger.debug("metric", kind="latency", name=operation, value=duration_ms, tags=tags or {})

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        self.counters[name] = self.counters.get(name, 0) + value
        assistant_logger.logger.debug("metric", kind="counter", name=name, value=value, tags=tags or {})

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        self.gauges[name] = value
        assistant_logger.logger.debug("metric", kind="gauge", name=name, value=value, tags=tags or {})

    def get_metrics_summary(self) -> Dict[str, Any]:
        """JSON-ready view used by the health endpoint"""
        return {
            "counters": dict(self.counters),
            "gauges": dict(self.gauges),
            "latency": {name: stats.summary() for name, stats in self.latencies.items()},
        }


metrics = MetricsCollector()
