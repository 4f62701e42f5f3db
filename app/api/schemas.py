"""
Pydantic schemas for request/response validation.
Defines all data transfer objects (DTOs) for the API and the live channel.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import AliasChoices, BaseModel, Field, ConfigDict, field_validator
from core.security import MAX_PASSWORD_BYTES


def _check_password_length(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return value


# Authentication Schemas
class SignupRequest(BaseModel):
    """
    Account creation request.

    Example:
        ```json
        {"email": "ada@example.com", "password": "s3cret-pass", "username": "ada"}
        ```
    """
    email: str = Field(..., min_length=3, max_length=255, description="Unique email address")
    password: str = Field(..., min_length=1, description="Plain text password")
    username: Optional[str] = Field(None, max_length=100, description="Display name (defaults to the email local part)")

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_length(value)


class LoginRequest(BaseModel):
    email: str = Field(..., description="Account email")
    password: str = Field(..., description="Account password")


class PasswordChangeRequest(BaseModel):
    old_password: str
    new_password: str = Field(..., min_length=1)

    @field_validator("new_password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_length(value)


class AuthResponse(BaseModel):
    """
    Issued credentials.

    Attributes:
        id: User ID
        username: Display name
        jwt: Bearer token, valid until the user's token version changes
    """
    id: int
    username: str
    jwt: str


# User Schemas
class UserSummary(BaseModel):
    """Public view of a user, as seen by other group members."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str


class GroupSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    icon: Optional[str] = None


class UserResponse(BaseModel):
    """Full view of a user, only ever returned to that user."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    username: str
    groups: List[GroupSummary] = Field(default_factory=list)
    friends: List[UserSummary] = Field(default_factory=list)


class UserUpdate(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)


# Message Schemas
class MessageCreate(BaseModel):
    text: str = Field(..., min_length=1, description="Message text")


class MessageResponse(BaseModel):
    """A message with its group and author references."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    text: str
    group_id: int
    created_at: datetime
    author: UserSummary = Field(..., validation_alias=AliasChoices("author", "from"), serialization_alias="from")


class MessageEdge(BaseModel):
    cursor: str
    node: MessageResponse


class PageInfo(BaseModel):
    has_next_page: bool
    has_previous_page: bool


class MessageConnectionResponse(BaseModel):
    """
    A window of a group's history, newest first.

    ``page_info`` is omitted when the caller opts out of it.
    """
    edges: List[MessageEdge]
    page_info: Optional[PageInfo] = None


class MessageListResponse(BaseModel):
    messages: List[MessageResponse]
    limit: int


# Group Schemas
class GroupCreate(BaseModel):
    """
    Request schema for creating a group.

    Only ``user_ids`` that belong to the creator's friends are added; the
    creator always joins.

    Example:
        ```json
        {"name": "Project Team", "user_ids": [2, 3], "icon": "icons/team.png"}
        ```
    """
    name: str = Field(..., min_length=1, max_length=100)
    user_ids: List[int] = Field(default_factory=list)
    icon: Optional[str] = Field(None, max_length=500)


class GroupUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    icon: Optional[str] = Field(None, max_length=500)
    last_read_id: Optional[int] = Field(None, description="Newest message the caller has read")


class GroupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    icon: Optional[str] = None
    created_at: datetime
    users: List[UserSummary] = Field(default_factory=list)
    last_read_id: Optional[int] = None


class GroupRemoved(BaseModel):
    id: int


# WebSocket Frames
class WSError(BaseModel):
    """WebSocket frame: Error notification."""
    type: str = Field(default="error", description="Frame type")
    id: Optional[str] = Field(None, description="Operation id the error belongs to")
    error: Dict[str, str] = Field(..., description="Error kind and message")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Frame timestamp")


class WSNext(BaseModel):
    """WebSocket frame: Event delivered to one subscription."""
    type: str = Field(default="next", description="Frame type")
    id: str = Field(..., description="Operation id")
    payload: Dict[str, Any] = Field(..., description="Message or group")


# Error Schemas
class ErrorDetail(BaseModel):
    type: str
    message: str
    request_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error response schema."""
    status: str = "error"
    error: ErrorDetail


# Serialization helpers
def serialize_message(message) -> MessageResponse:
    return MessageResponse.model_validate(message)


def serialize_group(group, viewer_id: Optional[int] = None) -> GroupResponse:
    """
    Build the group view for one member.

    Args:
        group: Group ORM object
        viewer_id: Member whose read marker is reported
    """
    members = sorted(group.members, key=lambda member: member.user_id)
    last_read_id = None
    for member in members:
        if member.user_id == viewer_id:
            last_read_id = member.last_read_id
    return GroupResponse(
        id=group.id,
        name=group.name,
        icon=group.icon,
        created_at=group.created_at,
        users=[UserSummary.model_validate(member.user) for member in members],
        last_read_id=last_read_id
    )


def serialize_user(user, groups) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        groups=[GroupSummary.model_validate(group) for group in groups],
        friends=[UserSummary.model_validate(friend) for friend in user.friends]
    )
