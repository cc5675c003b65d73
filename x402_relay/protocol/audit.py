# x402_relay/protocol/audit.py
"""
Durable audit trail of payment decisions and settlement lifecycle.

Each event is appended as one JSON object per line to X402_AUDIT_LOG_PATH.
Set X402_AUDIT_ENABLED=false to turn the trail off.

Two families of events are recorded:

- Gate events, written by the verification middleware: challenge issued,
  payment received, payment rejected, payment verified, middleware error.
  These carry the client IP and, where known, the payer address.
- Settlement events, written by the settlement service: created, submitted,
  confirmed, failed. These carry the ledger ``settlement_id`` so a single
  settlement can be followed through ``read_audit_log(settlement_id=...)``.

An unwritable audit log never interrupts a payment: the failure is logged and
the writer returns None.
"""
import json
import logging
import threading
import uuid
from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from x402_relay.core.config import settings

logger = logging.getLogger(__name__)

_write_lock = threading.Lock()


class AuditEventType(Enum):
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_VERIFIED = "payment_verified"
    SETTLEMENT_CREATED = "settlement_created"
    SETTLEMENT_SUBMITTED = "settlement_submitted"
    SETTLEMENT_CONFIRMED = "settlement_confirmed"
    SETTLEMENT_FAILED = "settlement_failed"
    ERROR = "error"


def generate_request_id() -> str:
    """Short random id correlating the events of one request."""
    return uuid.uuid4().hex[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build the JSON-serialisable record for one event.

    Args:
        event_type: Kind of event
        data: Event-specific fields
        client_ip: Remote address for gate events
        wallet_address: Payer address, when known
        request_id: Correlation id; a fresh one is generated when omitted
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data,
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    """
    Append one event to the audit log.

    Returns:
        The event's request id, or None when auditing is disabled or the
        write failed
    """
    if not settings.X402_AUDIT_ENABLED:
        return None

    event = create_audit_event(event_type, data, client_ip, wallet_address, request_id)
    line = json.dumps(event, default=str)
    path = get_audit_log_path()
    try:
        with _write_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a") as handle:
                handle.write(line + "\n")
    except OSError as e:
        logger.error(f"Audit write to {path} failed for {event_type.value}: {e}")
        return None

    logger.debug(f"Audit {event_type.value} [{event['request_id']}]")
    return event["request_id"]


# --- Gate events ---

def log_payment_required_sent(
    client_ip: Optional[str],
    amount: str,
    token: str,
    network: str,
    recipient: str,
    resource: str,
    request_id: Optional[str] = None,
) -> Optional[str]:
    """Record a 402 challenge and the terms it offered."""
    terms = {"amount": amount, "token": token, "network": network, "recipient": recipient, "resource": resource}
    return log_audit_event(AuditEventType.PAYMENT_REQUIRED_SENT, terms, client_ip, request_id=request_id)


def log_payment_received(
    client_ip: Optional[str],
    payer: str,
    scheme: str,
    amount: int,
    network: str,
    request_id: Optional[str] = None,
) -> Optional[str]:
    # amounts can exceed the JSON-safe integer range
    data = {"scheme": scheme, "amount": str(amount), "network": network}
    return log_audit_event(AuditEventType.PAYMENT_RECEIVED, data, client_ip, payer, request_id)


def log_payment_rejected(
    client_ip: Optional[str],
    reason: str,
    status_code: int,
    payer: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    data = {"reason": reason, "status_code": status_code}
    return log_audit_event(AuditEventType.PAYMENT_REJECTED, data, client_ip, payer, request_id)


def log_payment_verified(
    client_ip: Optional[str],
    payer: str,
    settled: bool,
    tx_hash: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    data = {"settled": settled, "tx_hash": tx_hash}
    return log_audit_event(AuditEventType.PAYMENT_VERIFIED, data, client_ip, payer, request_id)


def log_error(
    client_ip: Optional[str],
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    data = {"error_type": error_type, "error_message": error_message, "context": context or {}}
    return log_audit_event(AuditEventType.ERROR, data, client_ip, request_id=request_id)


# --- Settlement events ---

def _settlement_event(event_type: AuditEventType, settlement_id: str, **fields: Any) -> Optional[str]:
    return log_audit_event(event_type, {"settlement_id": settlement_id, **fields})


def log_settlement_created(
    settlement_id: str,
    from_identifier: str,
    to_address: str,
    amount: str,
    token: str,
    network: str,
    fee: str,
) -> Optional[str]:
    return _settlement_event(
        AuditEventType.SETTLEMENT_CREATED,
        settlement_id,
        **{"from": from_identifier, "to": to_address},
        amount=amount,
        token=token,
        network=network,
        fee=fee,
    )


def log_settlement_submitted(settlement_id: str, tx_hash: str, network: str) -> Optional[str]:
    return _settlement_event(AuditEventType.SETTLEMENT_SUBMITTED, settlement_id, tx_hash=tx_hash, network=network)


def log_settlement_confirmed(
    settlement_id: str,
    tx_hash: str,
    network: str,
    gas_used: Optional[int] = None,
) -> Optional[str]:
    return _settlement_event(
        AuditEventType.SETTLEMENT_CONFIRMED, settlement_id, tx_hash=tx_hash, network=network, gas_used=gas_used
    )


def log_settlement_failed(
    settlement_id: str,
    code: str,
    reason: str,
    tx_hash: Optional[str] = None,
) -> Optional[str]:
    return _settlement_event(AuditEventType.SETTLEMENT_FAILED, settlement_id, code=code, reason=reason, tx_hash=tx_hash)


# --- Reading ---

def _iter_events(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield parsed events in file order, skipping blank or corrupt lines."""
    with path.open() as handle:
        for raw in handle:
            raw = raw.strip()
            if not raw:
                continue
            try:
                yield json.loads(raw)
            except json.JSONDecodeError:
                logger.debug(f"Skipping unreadable audit line in {path}")


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    settlement_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Most recent audit events first.

    Args:
        max_entries: Upper bound on returned events
        event_type: Only events of this type
        settlement_id: Only events for this settlement
    """
    path = get_audit_log_path()
    if not path.exists():
        return []

    def wanted(event: Dict[str, Any]) -> bool:
        if event_type is not None and event.get("event_type") != event_type.value:
            return False
        return settlement_id is None or event.get("data", {}).get("settlement_id") == settlement_id

    try:
        matches = [event for event in _iter_events(path) if wanted(event)]
    except OSError as e:
        logger.error(f"Could not read audit log {path}: {e}")
        return []

    matches.reverse()
    return matches[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """Event totals per type and the first/last timestamps in the log."""
    path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(path),
        "log_exists": path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    counts: Counter = Counter()
    timestamps: List[str] = []
    try:
        for event in _iter_events(path):
            counts[event.get("event_type", "unknown")] += 1
            if event.get("timestamp"):
                timestamps.append(event["timestamp"])
    except OSError as e:
        logger.error(f"Could not read audit log {path}: {e}")
        stats["error"] = str(e)

    stats["total_events"] = sum(counts.values())
    stats["events_by_type"] = dict(counts)
    if timestamps:
        stats["first_event"], stats["last_event"] = timestamps[0], timestamps[-1]
    return stats
