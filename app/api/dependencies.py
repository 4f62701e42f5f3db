"""
Dependency injection functions for FastAPI.
Provides database sessions, the request context, and the mediator.
"""
from typing import Callable, Generator, Optional
from fastapi import Depends, Header
from sqlalchemy.orm import Session
from core.security import extract_bearer_token
from db.database import SessionLocal
from db.repository import Repository
from services.context import RequestContext
from services.event_bus import EventBus, event_bus
from services.mediator import Mediator
from services.subscriptions import SubscriptionGate


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Automatically closes the session when request completes.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    """Session factory for work that outlives a single request (live channels)."""
    return SessionLocal


def get_event_bus() -> EventBus:
    return event_bus


def get_request_context(authorization: Optional[str] = Header(None)) -> RequestContext:
    """
    Build the caller's context from an optional ``Authorization`` header.

    A missing header is valid and yields an anonymous context; only
    operations that need a principal fail, with ``Unauthorized``.

    Args:
        authorization: Raw Authorization header

    Returns:
        Unresolved RequestContext
    """
    token = extract_bearer_token(authorization)
    if authorization and token is None:
        # Present but not a bearer credential
        return RequestContext(token_supplied=True)
    return RequestContext.from_token(token, transport="http")


def get_mediator(
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
) -> Mediator:
    return Mediator(Repository(db), bus)


def get_subscription_gate(
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    bus: EventBus = Depends(get_event_bus)
) -> SubscriptionGate:
    return SubscriptionGate(bus, session_factory)
