"""
Audit logging for security events.
Logs authentication outcomes, token rejections, authorization denials,
session revocations, and live-channel admission for forensics.
"""
import logging
import json
from datetime import datetime
from typing import Dict, Any, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Types of security audit events."""
    # Authentication events
    SIGNUP = "signup"
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    TOKEN_INVALID = "token_invalid"
    TOKEN_VERSION_BUMPED = "token_version_bumped"

    # Authorization events
    AUTHZ_DENIED = "authorization_denied"

    # Live channel events
    CHANNEL_OPENED = "channel_opened"
    CHANNEL_REFUSED = "channel_refused"
    CHANNEL_REVOKED = "channel_revoked"


class AuditLogger:
    """
    Security audit logger.

    All audit events are logged with:
    - Timestamp (ISO 8601)
    - Event type
    - User identifier
    - Request ID (for correlation)
    - Additional context metadata
    """

    @staticmethod
    def log_event(
        event_type: AuditEventType,
        user_id: Optional[int] = None,
        request_id: Optional[str] = None,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None
    ) -> None:
        """
        Log a security audit event.

        Args:
            event_type: Type of security event
            user_id: User identifier (if available)
            request_id: Request correlation ID
            success: Whether the operation succeeded
            metadata: Additional context (e.g., resource, transport)
            error_message: Error message for failed operations
        """
        audit_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "event_type": event_type.value,
            "success": success,
            "user_id": user_id,
            "request_id": request_id,
            "metadata": metadata or {},
            "error_message": error_message
        }

        log_level = logging.INFO if success else logging.WARNING

        logger.log(
            log_level,
            f"AUDIT: {event_type.value} | user={user_id} | "
            f"success={success} | {json.dumps(audit_entry)}"
        )

    @staticmethod
    def log_auth_success(user_id: int, method: str, request_id: Optional[str] = None) -> None:
        """Log successful signup or login."""
        event_type = AuditEventType.SIGNUP if method == "signup" else AuditEventType.AUTH_SUCCESS
        AuditLogger.log_event(
            event_type=event_type,
            user_id=user_id,
            request_id=request_id,
            metadata={"method": method}
        )

    @staticmethod
    def log_auth_failure(email: str, reason: str, request_id: Optional[str] = None) -> None:
        """Log failed login attempt."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTH_FAILURE,
            request_id=request_id,
            success=False,
            metadata={"email": email},
            error_message=reason
        )

    @staticmethod
    def log_token_invalid(transport: str, reason: str, user_id: Optional[int] = None) -> None:
        """Log a rejected bearer token (bad signature or stale version)."""
        AuditLogger.log_event(
            event_type=AuditEventType.TOKEN_INVALID,
            user_id=user_id,
            success=False,
            metadata={"transport": transport},
            error_message=reason
        )

    @staticmethod
    def log_authz_denied(user_id: Optional[int], action: str, resource: str) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.AUTHZ_DENIED,
            user_id=user_id,
            success=False,
            metadata={"action": action, "resource": resource}
        )

    @staticmethod
    def log_token_version_bumped(user_id: int, reason: str, new_version: int) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.TOKEN_VERSION_BUMPED,
            user_id=user_id,
            metadata={"reason": reason, "token_version": new_version}
        )

    @staticmethod
    def log_channel(event_type: AuditEventType, user_id: Optional[int], reason: Optional[str] = None) -> None:
        AuditLogger.log_event(
            event_type=event_type,
            user_id=user_id,
            success=event_type != AuditEventType.CHANNEL_REFUSED,
            error_message=reason
        )


# Global audit logger instance
audit_logger = AuditLogger()
