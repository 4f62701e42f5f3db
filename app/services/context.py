"""
Request context: the deferred principal attached to a request or channel.

A context is built from whatever the transport received (a bearer header on
one-shot requests, the handshake token on live channels) without touching
the database. The principal is only resolved when an operation asks for it,
so requests without credentials are valid until something needs a user.
"""
import logging
from typing import Optional
from core.audit_logger import audit_logger
from core.exceptions import InvalidToken, Unauthorized
from core.security import TokenClaims, verify_token
from db.models import User
from db.repository import Repository

logger = logging.getLogger(__name__)


class RequestContext:
    """
    Holds the unverified identity of a caller until it is resolved.

    Attributes:
        claims: Verified token claims, or None
        token_supplied: Whether the caller presented any token at all
        transport: "http" or "ws", used for audit records
    """

    def __init__(self, claims: Optional[TokenClaims] = None, token_supplied: bool = False, transport: str = "http"):
        self.claims = claims
        self.token_supplied = token_supplied
        self.transport = transport

    @classmethod
    def from_token(cls, token: Optional[str], transport: str = "http") -> "RequestContext":
        """Build a context from a raw bearer token (or its absence)."""
        if not token:
            return cls(transport=transport)
        claims = verify_token(token)
        if claims is None:
            audit_logger.log_token_invalid(transport, "bad signature or payload")
        return cls(claims=claims, token_supplied=True, transport=transport)

    @property
    def user_id(self) -> Optional[int]:
        return self.claims.user_id if self.claims else None

    def resolve(self, repository: Repository) -> User:
        """
        Resolve the principal against the stored user.

        Every call re-reads the user, so a token version bumped after the
        context was created is noticed on the next resolution.

        Raises:
            Unauthorized: No token was supplied
            InvalidToken: Token failed verification, its user is gone, or its
                version no longer matches
        """
        if not self.token_supplied:
            raise Unauthorized("Authentication required")
        if self.claims is None:
            raise InvalidToken("Invalid token")

        user = repository.get_user_by_id(self.claims.user_id)
        if user is None:
            audit_logger.log_token_invalid(self.transport, "unknown user", self.claims.user_id)
            raise InvalidToken("Invalid token")
        if user.token_version != self.claims.token_version:
            audit_logger.log_token_invalid(self.transport, "stale token version", user.id)
            raise InvalidToken("Token has been revoked")
        return user
