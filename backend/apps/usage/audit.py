"""
Audit logging for chat usage.

Provides structured JSON logging for key events without exposing message
content. One JSON object per line on the ``audit`` logger.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Dedicated audit logger
audit_logger = logging.getLogger('audit')

# Shared bucket for callers without any address header
UNKNOWN_IDENTITY = 'unknown'


class AuditEvent:
    """Standard audit event types."""
    # Usage events
    USAGE_ADMITTED = 'usage.admitted'
    RATELIMIT_EXCEEDED = 'ratelimit.exceeded'

    # Chat events
    CHAT_COMPLETED = 'chat.completed'
    CHAT_FAILED = 'chat.failed'


def get_client_ip(request) -> str:
    """
    Resolve the caller's address from proxy headers.

    ``X-Real-IP`` wins over ``X-Forwarded-For``; for the latter the first
    address in the chain is the client. Without either header every caller
    lands in the ``unknown`` bucket.
    """
    real_ip = request.META.get('HTTP_X_REAL_IP', '').strip()
    if real_ip:
        return real_ip

    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR', '')
    if x_forwarded_for:
        # First IP in the chain is the client
        first = x_forwarded_for.split(',')[0].strip()
        if first:
            return first

    return UNKNOWN_IDENTITY


def get_request_id(request) -> str:
    """Get or generate a request ID for correlation."""
    request_id = getattr(request, 'request_id', None)
    if not request_id:
        request_id = request.META.get('HTTP_X_REQUEST_ID')
    if not request_id:
        request_id = str(uuid.uuid4())[:8]
        request.request_id = request_id
    return request_id


def log_audit(
    event_type: str,
    request_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Log a structured audit event.

    Args:
        event_type: One of AuditEvent constants
        request_id: Correlation ID for request tracing
        client_ip: Client identity used for rate limiting
        outcome: 'success' or 'failure'
        metadata: Event-specific data (no message content)
    """
    event = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'event_type': event_type,
        'request_id': request_id,
        'client_ip': client_ip,
        'outcome': outcome,
        'metadata': metadata or {}
    }

    # Log as structured JSON
    audit_logger.info(json.dumps(event))


def log_audit_from_request(
    request,
    event_type: str,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """Log an audit event with request context auto-populated."""
    log_audit(
        event_type=event_type,
        request_id=get_request_id(request),
        client_ip=get_client_ip(request),
        outcome=outcome,
        metadata=metadata
    )


# Convenience functions for common events

def audit_usage_admitted(request, limit: int, remaining: int):
    """Log an admitted request."""
    log_audit_from_request(
        request,
        AuditEvent.USAGE_ADMITTED,
        metadata={
            'limit': limit,
            'remaining': remaining,
        }
    )


def audit_ratelimit_exceeded(request, endpoint: str, limit: int, window: int):
    """Log rate limit exceeded."""
    log_audit_from_request(
        request,
        AuditEvent.RATELIMIT_EXCEEDED,
        outcome='failure',
        metadata={
            'endpoint': endpoint,
            'limit': limit,
            'window': window,
        }
    )


def audit_chat_completed(request, query_length: int, history_length: int,
                         source_count: int, delta_count: int):
    """Log a fully streamed chat answer (without any text)."""
    log_audit_from_request(
        request,
        AuditEvent.CHAT_COMPLETED,
        metadata={
            'query_length': query_length,
            'history_length': history_length,
            'source_count': source_count,
            'delta_count': delta_count,
        }
    )


def audit_chat_failed(request, code: str, streamed: bool):
    """Log a chat request that failed before or during streaming."""
    log_audit_from_request(
        request,
        AuditEvent.CHAT_FAILED,
        outcome='failure',
        metadata={
            'code': code,
            'streamed': streamed,
        }
    )
