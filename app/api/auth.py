"""
Account endpoints.
Signup and login issue a bearer token; password change and logout bump the
user's token version, which invalidates every token issued before and closes
the user's live channels.
"""
import logging
from fastapi import APIRouter, Depends, status
from api import metrics
from api.dependencies import get_mediator, get_request_context
from api.schemas import AuthResponse, LoginRequest, PasswordChangeRequest, SignupRequest
from api.websocket_manager import connection_manager
from core.exceptions import ChatError
from services.context import RequestContext
from services.mediator import Mediator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _auth_response(mediator: Mediator, user) -> AuthResponse:
    return AuthResponse(id=user.id, username=user.username, jwt=mediator.issue_token_for(user))


@router.post("/signup", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def signup(request_body: SignupRequest, mediator: Mediator = Depends(get_mediator)):
    """
    Create an account and return its first token.

    Args:
        request_body: Email, password, optional username
        mediator: Authorization mediator (injected)

    Returns:
        AuthResponse: User id, username and bearer token

    Raises:
        Conflict: 409 if the email is already registered

    Example Request:
        ```json
        POST /auth/signup
        {"email": "ada@example.com", "password": "s3cret-pass"}
        ```
    """
    try:
        user = mediator.signup(request_body.email, request_body.password, request_body.username)
    except ChatError:
        metrics.auth_requests_total.labels(type="signup", status="failure").inc()
        raise
    metrics.auth_requests_total.labels(type="signup", status="success").inc()
    logger.info(f"Account created for user {user.id}")
    return _auth_response(mediator, user)


@router.post("/login", response_model=AuthResponse, status_code=status.HTTP_200_OK)
def login(request_body: LoginRequest, mediator: Mediator = Depends(get_mediator)):
    """
    Exchange email and password for a bearer token.

    Raises:
        Unauthorized: 401 if the credentials do not match
    """
    try:
        user = mediator.login(request_body.email, request_body.password)
    except ChatError:
        metrics.auth_requests_total.labels(type="login", status="failure").inc()
        raise
    metrics.auth_requests_total.labels(type="login", status="success").inc()
    return _auth_response(mediator, user)


@router.post("/password", response_model=AuthResponse, status_code=status.HTTP_200_OK)
def change_password(
    request_body: PasswordChangeRequest,
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    """
    Change the caller's password.

    All previously issued tokens stop working and the caller's live channels
    are closed with code 4003. The response carries a fresh token.
    """
    user = mediator.change_password(context, request_body.old_password, request_body.new_password)
    connection_manager.revoke_user_channels(user.id, reason="Password changed")
    metrics.auth_requests_total.labels(type="password", status="success").inc()
    return _auth_response(mediator, user)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    context: RequestContext = Depends(get_request_context),
    mediator: Mediator = Depends(get_mediator)
):
    """
    Log the caller out everywhere.

    Invalidates every token of the caller and closes their live channels.
    """
    user = mediator.logout(context)
    revoked = connection_manager.revoke_user_channels(user.id, reason="Logged out")
    metrics.auth_requests_total.labels(type="logout", status="success").inc()
    logger.info(f"User {user.id} logged out ({revoked} live channels closed)")
    return None
