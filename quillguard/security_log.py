"""Security event logging.

Every security-relevant occurrence becomes an immutable ``SecurityEvent``
written to the ``quillguard.security`` logger. Writing never raises into the
caller: sink and alert failures are caught and reported through the returned
``LogResult``. There is no read API; querying belongs to the log store.
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import secrets
import time
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from typing import Any, Callable, Mapping, Optional

from .heuristics import AttackClassifier, SubstringClassifier, sanitize_for_log
from .policy import LoggingSettings
from .request import IncomingRequest, request_context
from .types import LogResult, SecurityEvent, SecurityEventType, Severity

AlertHook = Callable[[SecurityEvent], None]

LOGGER_NAME = "quillguard.security"

_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


def _build_handler(settings: LoggingSettings) -> logging.Handler:
    handler: logging.Handler
    if settings.output == "file":
        handler = RotatingFileHandler(
            settings.file_path,
            maxBytes=settings.rotate_bytes,
            backupCount=3,
        )
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def _configure(logger: logging.Logger, settings: LoggingSettings) -> QueueListener | None:
    listener = None
    if not logger.handlers:
        handler = _build_handler(settings)
        if settings.queue:
            # Request threads only enqueue; a listener thread does the I/O.
            records: queue.SimpleQueue = queue.SimpleQueue()
            listener = QueueListener(records, handler, respect_handler_level=True)
            listener.start()
            atexit.register(listener.stop)
            handler = QueueHandler(records)
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.level.upper(), logging.INFO))
    return listener


def default_alert_hook(event: SecurityEvent) -> None:
    """Stand-in for a pager/webhook integration."""

    logging.getLogger("quillguard.alerts").critical(
        "CRITICAL SECURITY ALERT event=%s correlation_id=%s details=%s",
        event.event_type.value,
        event.correlation_id,
        json.dumps(dict(event.details), default=str),
    )


def new_correlation_id() -> str:
    return f"sec_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class SecurityLogger:
    """Classifies and emits security events."""

    def __init__(
        self,
        settings: LoggingSettings,
        *,
        alert_hook: AlertHook | None = None,
        classifier: AttackClassifier | None = None,
        logger: logging.Logger | None = None,
        logger_name: str = LOGGER_NAME,
    ) -> None:
        self.logger = logger or logging.getLogger(logger_name)
        self._listener: QueueListener | None = None
        if logger is None:
            self._listener = _configure(self.logger, settings)
        self.structured = bool(settings.structured)
        self.alert_hook = alert_hook or default_alert_hook
        self.classifier = classifier or SubstringClassifier()

    def close(self) -> None:
        """Drain and stop the background sink, if one was started."""

        if self._listener is not None:
            atexit.unregister(self._listener.stop)
            self._listener.stop()
            self._listener = None

    def log_event(
        self,
        event_type: SecurityEventType,
        severity: Severity,
        details: Mapping[str, Any],
        request: Optional[IncomingRequest] = None,
    ) -> LogResult:
        try:
            event = SecurityEvent(
                timestamp=datetime.now(timezone.utc).isoformat(),
                event_type=event_type,
                severity=severity,
                details=dict(details),
                request=request_context(request) if request is not None else None,
                correlation_id=new_correlation_id(),
            )
            self.logger.log(_LEVELS[severity], self._format(event), extra={"security_event": event})
        except Exception as exc:
            # Dropping the event is preferable to failing the request.
            return LogResult(written=False, error=repr(exc))

        if severity is Severity.CRITICAL:
            try:
                self.alert_hook(event)
            except Exception as exc:
                return LogResult(written=True, event=event, error=f"alert hook failed: {exc!r}")
        return LogResult(written=True, event=event)

    def _format(self, event: SecurityEvent) -> str:
        if self.structured:
            return json.dumps({"type": "SECURITY_EVENT", **event.to_dict()}, default=str)
        request = event.request.to_dict() if event.request else {}
        return (
            f"[SECURITY] {event.severity.value} - {event.event_type.value} "
            f"at={event.timestamp} id={event.correlation_id} "
            f"details={json.dumps(dict(event.details), default=str)} request={request}"
        )

    def log_auth_attempt(
        self,
        success: bool,
        user_id: str | None,
        email: str | None,
        request: IncomingRequest | None = None,
    ) -> LogResult:
        return self.log_event(
            SecurityEventType.AUTH_SUCCESS if success else SecurityEventType.AUTH_FAILURE,
            Severity.LOW if success else Severity.MEDIUM,
            {"user_id": user_id or "unknown", "email": email or "unknown", "success": success},
            request,
        )

    def log_admin_action(
        self,
        admin_id: str,
        action: str,
        target_id: str | None,
        request: IncomingRequest | None = None,
    ) -> LogResult:
        return self.log_event(
            SecurityEventType.ADMIN_ACCESS,
            Severity.HIGH,
            {"admin_id": admin_id, "action": action, "target_id": target_id or "none"},
            request,
        )

    def log_rate_limit_hit(
        self,
        endpoint: str,
        attempts: int,
        request: IncomingRequest | None = None,
    ) -> LogResult:
        return self.log_event(
            SecurityEventType.RATE_LIMIT_HIT,
            Severity.HIGH if attempts > 50 else Severity.MEDIUM,
            {"endpoint": endpoint, "attempts": attempts, "possible_attack": attempts > 100},
            request,
        )

    def log_suspicious_upload(
        self,
        user_id: str,
        file_name: str,
        reason: str,
        request: IncomingRequest | None = None,
    ) -> LogResult:
        lowered = reason.lower()
        return self.log_event(
            SecurityEventType.UPLOAD_BLOCKED,
            Severity.HIGH,
            {
                "user_id": user_id,
                "file_name": file_name,
                "reason": reason,
                "potential_malware": "malware" in lowered or "virus" in lowered,
            },
            request,
        )

    def log_malicious_input(
        self,
        input_type: str,
        content: str,
        user_id: str | None = None,
        request: IncomingRequest | None = None,
    ) -> LogResult:
        details: dict[str, Any] = {
            "input_type": input_type,
            "sanitized_content": sanitize_for_log(content),
            "user_id": user_id or "anonymous",
        }
        details.update(self.classifier.classify(content))
        return self.log_event(SecurityEventType.MALICIOUS_INPUT, Severity.HIGH, details, request)

    def log_privilege_escalation(
        self,
        user_id: str,
        attempted_action: str,
        current_role: str,
        request: IncomingRequest | None = None,
    ) -> LogResult:
        return self.log_event(
            SecurityEventType.PRIVILEGE_ESCALATION,
            Severity.CRITICAL,
            {
                "user_id": user_id,
                "attempted_action": attempted_action,
                "current_role": current_role,
                "requires_immediate_attention": True,
            },
            request,
        )
