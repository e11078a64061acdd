import structlog
import logging
import sys
from typing import Dict, Any, List, Optional
from datetime import datetime
import os


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    service_name: str = "loregate"
) -> None:
    """Setup structured logging configuration"""

    log_level = log_level or os.getenv("LOG_LEVEL", "INFO")
    log_format = log_format or os.getenv("LOG_FORMAT", "json")

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

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

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add interaction context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    context = structlog.contextvars.get_contextvars()

    npc_id = context.get("npc_id")
    if npc_id:
        event_dict["npc_id"] = npc_id

    interaction_id = context.get("interaction_id")
    if interaction_id:
        event_dict["interaction_id"] = interaction_id

    return event_dict


class PipelineLogger:
    """Specialized logger for dialogue pipeline events"""

    def __init__(self, name: str = "loregate.pipeline", logger=None):
        self.logger = logger or structlog.get_logger(name)

    def log_attempt_started(self, npc_id: Optional[str], attempt_number: int, prompt_characters: int):
        self.logger.info(
            "attempt_started",
            npc_id=npc_id,
            attempt_number=attempt_number,
            prompt_characters=prompt_characters
        )

    def log_attempt_finished(
        self,
        npc_id: Optional[str],
        attempt_number: int,
        success: bool,
        outcome: str,
        duration_ms: float,
        error: Optional[str] = None
    ):
        self.logger.info(
            "attempt_finished",
            npc_id=npc_id,
            attempt_number=attempt_number,
            success=success,
            outcome=outcome,
            duration_ms=duration_ms,
            error=error
        )

    def log_gate_result(self, npc_id: Optional[str], passed: bool, failures: List[str], critical: bool):
        self.logger.info(
            "gate_result",
            npc_id=npc_id,
            passed=passed,
            failures=failures,
            critical=critical
        )

    def log_escalation(self, npc_id: Optional[str], attempt_number: int, added_constraints: List[str]):
        self.logger.info(
            "constraint_escalation",
            npc_id=npc_id,
            attempt_number=attempt_number,
            added_constraints=added_constraints
        )

    def log_workflow_transition(self, npc_id: Optional[str], from_node: str, to_node: str):
        self.logger.debug(
            "workflow_transition",
            npc_id=npc_id,
            from_node=from_node,
            to_node=to_node
        )

    def log_prefix_violation(self, key: str, boundary: str, check_number: int):
        self.logger.warning(
            "prefix_violation",
            key=key,
            boundary=boundary,
            check_number=check_number
        )
