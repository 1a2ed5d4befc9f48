"""
Logging configuration for dissonance.

Provides structured JSON logging and an audit logger for governance
decisions, calibration submissions and nonce binding lifecycle events.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

from .security import redact_for_logging

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for audit events.

    One method per governance event. The logger carries no decision state;
    it only formats and forwards records.
    """

    def __init__(self, name: str = "dissonance.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **redact_for_logging(kwargs)
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def decision_rendered(
        self,
        outcome: str,
        mode: str,
        org_id: str,
        rules_checked: int,
        rules_errored: List[str],
        degraded_mode: bool = False
    ) -> None:
        """Log the final allow/warn/block decision for one evaluation."""
        level = logging.INFO if outcome == "allow" else logging.WARNING
        self._log(
            level,
            "DECISION_RENDERED",
            outcome=outcome,
            mode=mode,
            org_id=org_id,
            rules_checked=rules_checked,
            rules_errored=rules_errored,
            degraded_mode=degraded_mode,
            message=f"Decision {outcome} for {org_id}"
        )

    def l0_failed(self, invariant_id: str, invariant_name: str, evidence: Dict[str, Any]) -> None:
        self._log(
            logging.WARNING,
            "L0_INVARIANT_FAILED",
            invariant_id=invariant_id,
            invariant_name=invariant_name,
            evidence=evidence,
            message=f"L0 invariant {invariant_id} ({invariant_name}) failed"
        )

    def rule_errored(self, rule_id: str, phase: str, error_type: str) -> None:
        self._log(
            logging.ERROR,
            "RULE_EVALUATION_ERROR",
            rule_id=rule_id,
            phase=phase,
            error_type=error_type,
            message=f"Rule {rule_id} failed during {phase}"
        )

    def circuit_breaker_tripped(self, rule_id: str, org_id: str, count: int, threshold: int) -> None:
        self._log(
            logging.WARNING,
            "CIRCUIT_BREAKER_TRIPPED",
            rule_id=rule_id,
            org_id=org_id,
            count=count,
            threshold=threshold,
            message=f"Circuit breaker triggered: {count} blocks in current hour (threshold: {threshold})"
        )

    def fp_event_recorded(self, event_id: str, rule_id: str, finding_id: str) -> None:
        self._log(
            logging.INFO,
            "FP_EVENT_RECORDED",
            event_id=event_id,
            rule_id=rule_id,
            finding_id=finding_id,
            message=f"Calibration event recorded for {rule_id}"
        )

    def false_positive_marked(self, finding_id: str, reviewed_by: str, ticket: Optional[str]) -> None:
        self._log(
            logging.INFO,
            "FALSE_POSITIVE_MARKED",
            finding_id=finding_id,
            reviewed_by=reviewed_by,
            suppression_ticket=ticket,
            message=f"Finding {finding_id} marked false positive"
        )

    def ingest_rejected(self, org_id: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "INGEST_REJECTED",
            org_id=org_id,
            reason=reason,
            message=f"Calibration submission rejected: {reason}"
        )

    def binding_issued(self, org_id: str, is_new: bool) -> None:
        self._log(
            logging.INFO,
            "NONCE_BINDING_ISSUED",
            org_id=org_id,
            is_new=is_new,
            message=f"Nonce binding issued for {org_id}"
        )

    def binding_rotated(self, org_id: str, reason: str) -> None:
        self._log(
            logging.INFO,
            "NONCE_BINDING_ROTATED",
            org_id=org_id,
            reason=reason,
            message=f"Nonce rotated for {org_id}"
        )

    def binding_revoked(self, org_id: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "NONCE_BINDING_REVOKED",
            org_id=org_id,
            reason=reason,
            message=f"Nonce binding revoked for {org_id}"
        )

    def binding_verification_failed(self, org_id: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "NONCE_VERIFICATION_FAILED",
            org_id=org_id,
            reason=reason,
            message=f"Nonce verification failed for {org_id}: {reason}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Shared audit logger; stateless apart from the underlying logging.Logger
audit_log = AuditLogger()
