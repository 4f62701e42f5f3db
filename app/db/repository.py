"""
Repository layer for database operations.
Provides the find/create/association operations the chat core needs.
"""
from typing import List, Optional
from sqlalchemy.orm import Session
from db.models import User, Group, GroupMember, Message


class Repository:
    """Repository class for database operations."""

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    # User operations
    def create_user(self, email: str, password_hash: str, username: str) -> User:
        """Create a new user with the initial token version."""
        user = User(
            email=email,
            password=password_hash,
            username=username,
            token_version=1
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        return self.db.query(User).filter(User.id == user_id).first()

    def get_user_by_email(self, email: str) -> Optional[User]:
        """Get user by email."""
        return self.db.query(User).filter(User.email == email).first()

    def update_user(self, user: User, **fields) -> User:
        """Apply column updates to a user."""
        for key, value in fields.items():
            setattr(user, key, value)
        self.db.commit()
        self.db.refresh(user)
        return user

    def bump_token_version(self, user: User) -> User:
        """Invalidate every token issued to the user so far."""
        user.token_version = User.token_version + 1
        self.db.commit()
        self.db.refresh(user)
        return user

    def add_friendship(self, user_id: int, friend_id: int) -> None:
        """Make two users friends (both directions)."""
        user = self.get_user_by_id(user_id)
        friend = self.get_user_by_id(friend_id)
        if friend not in user.friends:
            user.friends.append(friend)
        if user not in friend.friends:
            friend.friends.append(user)
        self.db.commit()

    def get_friends_among(self, user: User, candidate_ids: List[int]) -> List[User]:
        """Return those candidates that are friends of the user."""
        wanted = set(candidate_ids)
        return [friend for friend in user.friends if friend.id in wanted]

    # Group operations
    def create_group(self, name: str, members: List[User], icon: Optional[str] = None) -> Group:
        """Create a group and attach its initial members in one transaction."""
        group = Group(name=name, icon=icon)
        self.db.add(group)
        self.db.flush()
        for member in members:
            self.db.add(GroupMember(group_id=group.id, user_id=member.id))
        self.db.commit()
        self.db.refresh(group)
        return group

    def get_group_by_id(self, group_id: int) -> Optional[Group]:
        """Get group by ID."""
        return self.db.query(Group).filter(Group.id == group_id).first()

    def update_group(self, group: Group, **fields) -> Group:
        for key, value in fields.items():
            setattr(group, key, value)
        self.db.commit()
        self.db.refresh(group)
        return group

    def delete_group(self, group: Group) -> None:
        """Delete a group with its memberships and messages."""
        self.db.delete(group)
        self.db.commit()

    def get_membership(self, group_id: int, user_id: int) -> Optional[GroupMember]:
        return self.db.query(GroupMember).filter(
            GroupMember.group_id == group_id,
            GroupMember.user_id == user_id
        ).first()

    def is_group_member(self, group_id: int, user_id: int) -> bool:
        """Check if user is a member of group."""
        return self.get_membership(group_id, user_id) is not None

    def get_user_group_ids(self, user_id: int) -> List[int]:
        """IDs of every group the user currently belongs to."""
        rows = self.db.query(GroupMember.group_id).filter(GroupMember.user_id == user_id).all()
        return [row[0] for row in rows]

    def get_user_groups(self, user_id: int) -> List[Group]:
        return self.db.query(Group).join(GroupMember).filter(
            GroupMember.user_id == user_id
        ).order_by(Group.id).all()

    def remove_group_member(self, membership: GroupMember) -> int:
        """
        Remove a membership.

        Returns:
            Number of members left in the group
        """
        group_id = membership.group_id
        self.db.delete(membership)
        self.db.commit()
        return self.db.query(GroupMember).filter(GroupMember.group_id == group_id).count()

    def set_last_read(self, membership: GroupMember, message_id: int) -> GroupMember:
        membership.last_read_id = message_id
        self.db.commit()
        self.db.refresh(membership)
        return membership

    # Message operations
    def create_message(self, group_id: int, user_id: int, text: str) -> Message:
        """Create a new message."""
        message = Message(group_id=group_id, user_id=user_id, text=text)
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        return message

    def get_message_by_id(self, message_id: int) -> Optional[Message]:
        return self.db.query(Message).filter(Message.id == message_id).first()

    def get_group_messages_older(self, group_id: int, limit: int, before_id: Optional[int] = None) -> List[Message]:
        """
        Newest-first window of messages with id below ``before_id``.

        Args:
            group_id: Group to read from
            limit: Maximum rows to return
            before_id: Exclusive upper bound on message id (None for the newest)
        """
        query = self.db.query(Message).filter(Message.group_id == group_id)
        if before_id is not None:
            query = query.filter(Message.id < before_id)
        return query.order_by(Message.id.desc()).limit(limit).all()

    def get_group_messages_newer(self, group_id: int, limit: int, after_id: int) -> List[Message]:
        """Oldest-first window of messages with id above ``after_id``."""
        return self.db.query(Message).filter(
            Message.group_id == group_id,
            Message.id > after_id
        ).order_by(Message.id.asc()).limit(limit).all()

    def message_exists(
        self,
        group_id: int,
        older_than: Optional[int] = None,
        newer_than: Optional[int] = None
    ) -> bool:
        """Existence check for one message in a group beyond a strict id bound."""
        query = self.db.query(Message.id).filter(Message.group_id == group_id)
        if older_than is not None:
            query = query.filter(Message.id < older_than)
        if newer_than is not None:
            query = query.filter(Message.id > newer_than)
        return query.first() is not None

    def get_user_messages(self, user_id: int, limit: int) -> List[Message]:
        """Messages authored by a user, newest first."""
        return self.db.query(Message).filter(
            Message.user_id == user_id
        ).order_by(Message.id.desc()).limit(limit).all()
