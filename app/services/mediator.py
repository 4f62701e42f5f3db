"""
Authorization mediator: every read and write of users, groups and messages.

``ChatOperations`` lists one method per authorized action; ``Mediator`` is
its only implementation and closes over a repository and the event bus.
Each operation resolves the caller's context first, then checks the scoped
relationship the resource requires (group membership or self identity), and
only then touches data. Failures surface as ``Unauthorized``, ``InvalidToken``
or ``NotFound`` and are never swallowed here.
"""
import logging
from abc import ABC, abstractmethod
from typing import List, Optional
from core.audit_logger import audit_logger
from core.config import settings
from core.exceptions import Conflict, NotFound, Unauthorized
from core.security import hash_password, issue_token, verify_password
from db.models import Group, GroupMember, Message, User
from db.repository import Repository
from services.context import RequestContext
from services.event_bus import EventBus, GROUP_ADDED, MESSAGE_ADDED
from services.pagination import MessageConnection, PageRequest, paginate_messages
from services.subscriptions import GroupAddedEvent, MessageAddedEvent

logger = logging.getLogger(__name__)


class ChatOperations(ABC):
    """Authorized actions exposed to every transport."""

    # Accounts
    @abstractmethod
    def signup(self, email: str, password: str, username: Optional[str] = None) -> User: ...

    @abstractmethod
    def login(self, email: str, password: str) -> User: ...

    @abstractmethod
    def change_password(self, context: RequestContext, old_password: str, new_password: str) -> User: ...

    @abstractmethod
    def logout(self, context: RequestContext) -> User: ...

    @abstractmethod
    def issue_token_for(self, user: User) -> str: ...

    # Users
    @abstractmethod
    def get_user(self, context: RequestContext, user_id: Optional[int] = None, email: Optional[str] = None) -> User: ...

    @abstractmethod
    def update_user(self, context: RequestContext, user_id: int, username: str) -> User: ...

    @abstractmethod
    def list_user_messages(self, context: RequestContext, user_id: int, limit: Optional[int] = None) -> List[Message]: ...

    @abstractmethod
    def list_user_groups(self, context: RequestContext, user_id: int) -> List[Group]: ...

    # Groups
    @abstractmethod
    def get_group(self, context: RequestContext, group_id: int) -> Group: ...

    @abstractmethod
    def create_group(self, context: RequestContext, name: str, user_ids: List[int], icon: Optional[str] = None) -> Group: ...

    @abstractmethod
    def update_group(
        self,
        context: RequestContext,
        group_id: int,
        name: Optional[str] = None,
        icon: Optional[str] = None,
        last_read_id: Optional[int] = None
    ) -> Group: ...

    @abstractmethod
    def delete_group(self, context: RequestContext, group_id: int) -> int: ...

    @abstractmethod
    def leave_group(self, context: RequestContext, group_id: int) -> int: ...

    # Messages
    @abstractmethod
    def list_messages(
        self,
        context: RequestContext,
        group_id: int,
        first: Optional[int] = None,
        after: Optional[str] = None,
        last: Optional[int] = None,
        before: Optional[str] = None
    ) -> MessageConnection: ...

    @abstractmethod
    def create_message(self, context: RequestContext, group_id: int, text: str) -> Message: ...


class Mediator(ChatOperations):
    """
    Repository-backed implementation of the authorized actions.

    Args:
        repository: Data access bound to the request's session
        bus: Event bus receiving write events
    """

    def __init__(self, repository: Repository, bus: EventBus):
        self.repository = repository
        self.bus = bus

    # Scoped checks
    def _principal(self, context: RequestContext) -> User:
        return context.resolve(self.repository)

    def _membership(self, principal: User, group_id: int, action: str) -> GroupMember:
        group = self.repository.get_group_by_id(group_id)
        if group is None:
            raise NotFound(f"Group {group_id} not found")
        membership = self.repository.get_membership(group_id, principal.id)
        if membership is None:
            audit_logger.log_authz_denied(principal.id, action, f"group:{group_id}")
            raise Unauthorized("Not a member of this group")
        return membership

    def _require_self(self, principal: User, user_id: int, action: str) -> None:
        if user_id == principal.id:
            return
        if self.repository.get_user_by_id(user_id) is None:
            raise NotFound(f"User {user_id} not found")
        audit_logger.log_authz_denied(principal.id, action, f"user:{user_id}")
        raise Unauthorized("Cannot access another user")

    # Accounts
    def signup(self, email: str, password: str, username: Optional[str] = None) -> User:
        if self.repository.get_user_by_email(email) is not None:
            raise Conflict("Email already registered")
        user = self.repository.create_user(
            email=email,
            password_hash=hash_password(password),
            username=username or email.split("@", 1)[0]
        )
        audit_logger.log_auth_success(user.id, "signup")
        return user

    def login(self, email: str, password: str) -> User:
        user = self.repository.get_user_by_email(email)
        if user is None or not verify_password(password, user.password):
            audit_logger.log_auth_failure(email, "Invalid email or password")
            raise Unauthorized("Invalid email or password")
        audit_logger.log_auth_success(user.id, "login")
        return user

    def change_password(self, context: RequestContext, old_password: str, new_password: str) -> User:
        principal = self._principal(context)
        if not verify_password(old_password, principal.password):
            audit_logger.log_auth_failure(principal.email, "Wrong current password")
            raise Unauthorized("Current password is incorrect")
        self.repository.update_user(principal, password=hash_password(new_password))
        user = self.repository.bump_token_version(principal)
        audit_logger.log_token_version_bumped(user.id, "password_change", user.token_version)
        return user

    def logout(self, context: RequestContext) -> User:
        principal = self._principal(context)
        user = self.repository.bump_token_version(principal)
        audit_logger.log_token_version_bumped(user.id, "logout", user.token_version)
        return user

    def issue_token_for(self, user: User) -> str:
        return issue_token(user.id, user.token_version)

    # Users
    def get_user(self, context: RequestContext, user_id: Optional[int] = None, email: Optional[str] = None) -> User:
        principal = self._principal(context)
        if user_id is None and email is not None:
            target = self.repository.get_user_by_email(email)
            if target is None:
                raise NotFound("User not found")
            user_id = target.id
        if user_id is None:
            return principal
        self._require_self(principal, user_id, "read:user")
        return principal

    def update_user(self, context: RequestContext, user_id: int, username: str) -> User:
        principal = self._principal(context)
        self._require_self(principal, user_id, "update:user")
        return self.repository.update_user(principal, username=username)

    def list_user_messages(self, context: RequestContext, user_id: int, limit: Optional[int] = None) -> List[Message]:
        principal = self._principal(context)
        self._require_self(principal, user_id, "read:user_messages")
        limit = min(limit or settings.default_page_size, settings.max_page_size)
        return self.repository.get_user_messages(principal.id, limit)

    def list_user_groups(self, context: RequestContext, user_id: int) -> List[Group]:
        principal = self._principal(context)
        self._require_self(principal, user_id, "read:user_groups")
        return self.repository.get_user_groups(principal.id)

    # Groups
    def get_group(self, context: RequestContext, group_id: int) -> Group:
        principal = self._principal(context)
        return self._membership(principal, group_id, "read:group").group

    def create_group(self, context: RequestContext, name: str, user_ids: List[int], icon: Optional[str] = None) -> Group:
        """
        Create a group with the caller and those of ``user_ids`` who are the
        caller's friends, then announce it to the added members.
        """
        principal = self._principal(context)
        friends = self.repository.get_friends_among(principal, user_ids)
        skipped = set(user_ids) - {friend.id for friend in friends} - {principal.id}
        if skipped:
            logger.info(f"Group creation by user {principal.id} skipped non-friends {sorted(skipped)}")

        group = self.repository.create_group(name=name, members=[principal, *friends], icon=icon)
        logger.info(f"Group {group.id} created by user {principal.id} with {len(friends) + 1} members")

        self.bus.publish(GROUP_ADDED, GroupAddedEvent.from_group(group, creator_id=principal.id))
        return group

    def update_group(
        self,
        context: RequestContext,
        group_id: int,
        name: Optional[str] = None,
        icon: Optional[str] = None,
        last_read_id: Optional[int] = None
    ) -> Group:
        principal = self._principal(context)
        membership = self._membership(principal, group_id, "update:group")

        if last_read_id is not None:
            message = self.repository.get_message_by_id(last_read_id)
            if message is None or message.group_id != group_id:
                raise NotFound(f"Message {last_read_id} not found in group {group_id}")
            self.repository.set_last_read(membership, last_read_id)

        fields = {key: value for key, value in (("name", name), ("icon", icon)) if value is not None}
        if fields:
            return self.repository.update_group(membership.group, **fields)
        return membership.group

    def delete_group(self, context: RequestContext, group_id: int) -> int:
        principal = self._principal(context)
        membership = self._membership(principal, group_id, "delete:group")
        self.repository.delete_group(membership.group)
        logger.info(f"Group {group_id} deleted by user {principal.id}")
        return group_id

    def leave_group(self, context: RequestContext, group_id: int) -> int:
        principal = self._principal(context)
        membership = self._membership(principal, group_id, "leave:group")
        group = membership.group
        remaining = self.repository.remove_group_member(membership)
        if remaining == 0:
            self.repository.delete_group(group)
            logger.info(f"Group {group_id} removed after its last member left")
        return group_id

    # Messages
    def list_messages(
        self,
        context: RequestContext,
        group_id: int,
        first: Optional[int] = None,
        after: Optional[str] = None,
        last: Optional[int] = None,
        before: Optional[str] = None
    ) -> MessageConnection:
        """
        Page through a group's messages.

        Window arguments are only validated once the caller is known to be a
        member, so an anonymous or foreign caller always gets ``Unauthorized``.

        Raises:
            InvalidPageRequest: Mixed windows, non-positive size or malformed cursor
        """
        principal = self._principal(context)
        self._membership(principal, group_id, "read:messages")
        page = PageRequest.from_args(first=first, after=after, last=last, before=before)
        return paginate_messages(self.repository, group_id, page)

    def create_message(self, context: RequestContext, group_id: int, text: str) -> Message:
        principal = self._principal(context)
        self._membership(principal, group_id, "create:message")
        message = self.repository.create_message(group_id=group_id, user_id=principal.id, text=text)

        self.bus.publish(MESSAGE_ADDED, MessageAddedEvent.from_message(message))
        return message
