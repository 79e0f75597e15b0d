"""
Audit logging for payment facilitator events.

This module logs payment lifecycle events for:
- Dispute resolution
- Financial reconciliation
- Debugging failed verifications

Log format: JSON lines (one event per line)
Log location: Configured via AUDIT_LOG_PATH (disable with AUDIT_ENABLED=false)

Events logged:
- Payment request created (id, seller, amount, token)
- Challenge issued by the middleware (id, resource)
- Verification attempted / verified / failed / expired
- Settlement conflict (second signature for a verified id)
- Ledger error (adapter unavailable)
- Rate limited

Writing is best effort: a failing audit log is reported through the
application logger and never fails the request being audited.
"""
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)

_write_lock = threading.Lock()


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUEST_CREATED = "payment_request_created"
    CHALLENGE_ISSUED = "challenge_issued"
    VERIFICATION_ATTEMPTED = "verification_attempted"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_EXPIRED = "payment_expired"
    SETTLEMENT_CONFLICT = "settlement_conflict"
    LEDGER_ERROR = "ledger_error"
    RATE_LIMITED = "rate_limited"


def generate_request_id() -> str:
    """Generate a short correlation id for one HTTP request."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    payment_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Create an audit event dictionary."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "payment_id": payment_id,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    payment_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the audit log.

    Returns:
        The request_id used for this event, or None when disabled or on error
    """
    if not settings.AUDIT_ENABLED:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )

    try:
        log_path = get_audit_log_path()
        with _write_lock:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a") as f:
                f.write(json.dumps(event, default=str) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_request_created(
    payment_id: str,
    seller: str,
    amount: str,
    token: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment request creation."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUEST_CREATED,
        data={"seller": seller, "amount": amount, "token": token},
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )


def log_challenge_issued(
    payment_id: str,
    resource: str,
    amount: str,
    token: str,
    reason: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 challenge returned by the middleware."""
    return log_audit_event(
        event_type=AuditEventType.CHALLENGE_ISSUED,
        data={"resource": resource, "amount": amount, "token": token, "reason": reason},
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )


def log_verification_attempted(
    payment_id: str,
    signature: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.VERIFICATION_ATTEMPTED,
        data={"signature": signature},
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )


def log_payment_verified(
    payment_id: str,
    signature: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={"signature": signature},
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )


def log_payment_rejected(
    payment_id: Optional[str],
    reason: str,
    signature: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Log a rejected create or verify call, choosing the event type from the reason code.
    """
    event_types = {
        "payment_expired": AuditEventType.PAYMENT_EXPIRED,
        "settlement_conflict": AuditEventType.SETTLEMENT_CONFLICT,
        "ledger_unavailable": AuditEventType.LEDGER_ERROR,
        "rate_limited": AuditEventType.RATE_LIMITED,
    }
    return log_audit_event(
        event_type=event_types.get(reason, AuditEventType.PAYMENT_FAILED),
        data={"reason": reason, "signature": signature},
        client_ip=client_ip,
        payment_id=payment_id,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    payment_id: Optional[str] = None
) -> list:
    """
    Read entries from the audit log, most recent first.
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if payment_id and event.get("payment_id") != payment_id:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """Event counts by type and the covered time range."""
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    for event in reversed(read_audit_log(max_entries=10 ** 9)):
        stats["total_events"] += 1
        kind = event.get("event_type", "unknown")
        stats["events_by_type"][kind] = stats["events_by_type"].get(kind, 0) + 1
        timestamp = event.get("timestamp")
        if timestamp:
            if stats["first_event"] is None:
                stats["first_event"] = timestamp
            stats["last_event"] = timestamp

    return stats
