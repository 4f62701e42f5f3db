"""
Live subscription kinds and the gate that filters events per subscriber.

Each kind is a small class carrying its own typed arguments, the topic it
listens on, the check run when a client opens it, and the predicate run for
every event. ``SUBSCRIPTION_TYPES`` must cover every ``SubscriptionKind``;
the module refuses to import otherwise.

Predicates run against a fresh database session per event: memberships can
change while a channel is open, and a revoked token must stop delivery.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Type
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from core.exceptions import BadRequest, Unauthorized
from core.audit_logger import audit_logger
from db.models import Group, Message, User
from db.repository import Repository
from services.context import RequestContext
from services.event_bus import EventBus, EventSubscription, MESSAGE_ADDED, GROUP_ADDED

logger = logging.getLogger(__name__)


def _user_summary(user: User) -> Dict[str, Any]:
    return {"id": user.id, "username": user.username}


# Events published by write operations. Payloads are plain JSON-ready dicts
# shaped like the one-shot API responses, built while the session is open.
@dataclass(frozen=True)
class MessageAddedEvent:
    message_id: int
    group_id: int
    author_id: int
    payload: Dict[str, Any]

    @classmethod
    def from_message(cls, message: Message) -> "MessageAddedEvent":
        return cls(
            message_id=message.id,
            group_id=message.group_id,
            author_id=message.user_id,
            payload={
                "id": message.id,
                "text": message.text,
                "group_id": message.group_id,
                "created_at": message.created_at.isoformat(),
                "from": _user_summary(message.author),
            }
        )


@dataclass(frozen=True)
class GroupAddedEvent:
    group_id: int
    creator_id: int
    member_ids: FrozenSet[int]
    payload: Dict[str, Any]

    @classmethod
    def from_group(cls, group: Group, creator_id: int) -> "GroupAddedEvent":
        members = sorted(group.members, key=lambda member: member.user_id)
        return cls(
            group_id=group.id,
            creator_id=creator_id,
            member_ids=frozenset(member.user_id for member in members),
            payload={
                "id": group.id,
                "name": group.name,
                "icon": group.icon,
                "created_at": group.created_at.isoformat(),
                "users": [_user_summary(member.user) for member in members],
            }
        )


class SubscriptionKind(str, Enum):
    MESSAGE_ADDED = "message_added"
    GROUP_ADDED = "group_added"


class LiveSubscription(ABC):
    """A client-requested stream of one event kind."""

    kind: SubscriptionKind
    topic: str

    @classmethod
    @abstractmethod
    def from_request(cls, args: Dict[str, Any], principal: User, repository: Repository) -> "LiveSubscription":
        """
        Build the subscription from client arguments.

        Raises:
            BadRequest: Arguments have the wrong shape
            Unauthorized: The principal may not watch what it asked for
        """

    @abstractmethod
    def allows(self, event: Any, principal: User, repository: Repository) -> bool:
        """Decide whether one event reaches this subscriber."""


@dataclass(frozen=True)
class MessageAddedSubscription(LiveSubscription):
    """New messages in a set of groups the subscriber belongs to."""

    group_ids: FrozenSet[int]

    kind = SubscriptionKind.MESSAGE_ADDED
    topic = MESSAGE_ADDED

    @classmethod
    def from_request(cls, args: Dict[str, Any], principal: User, repository: Repository) -> "MessageAddedSubscription":
        raw_ids = args.get("group_ids")
        if not isinstance(raw_ids, list) or not all(isinstance(gid, int) and not isinstance(gid, bool) for gid in raw_ids):
            raise BadRequest("group_ids must be a list of integers")

        member_of = set(repository.get_user_group_ids(principal.id))
        foreign = [gid for gid in raw_ids if gid not in member_of]
        if foreign:
            audit_logger.log_authz_denied(principal.id, "subscribe:message_added", f"groups:{foreign}")
            raise Unauthorized("Not a member of every requested group")
        return cls(group_ids=frozenset(raw_ids))

    def allows(self, event: MessageAddedEvent, principal: User, repository: Repository) -> bool:
        if event.author_id == principal.id:
            return False
        if event.group_id not in self.group_ids:
            return False
        return repository.is_group_member(event.group_id, principal.id)


@dataclass(frozen=True)
class GroupAddedSubscription(LiveSubscription):
    """Groups the subscriber was added to by someone else."""

    user_id: Optional[int] = None

    kind = SubscriptionKind.GROUP_ADDED
    topic = GROUP_ADDED

    @classmethod
    def from_request(cls, args: Dict[str, Any], principal: User, repository: Repository) -> "GroupAddedSubscription":
        user_id = args.get("user_id")
        if user_id is not None and user_id != principal.id:
            audit_logger.log_authz_denied(principal.id, "subscribe:group_added", f"user:{user_id}")
            raise Unauthorized("Cannot watch another user's groups")
        return cls(user_id=principal.id)

    def allows(self, event: GroupAddedEvent, principal: User, repository: Repository) -> bool:
        return principal.id in event.member_ids and principal.id != event.creator_id


SUBSCRIPTION_TYPES: Dict[SubscriptionKind, Type[LiveSubscription]] = {
    SubscriptionKind.MESSAGE_ADDED: MessageAddedSubscription,
    SubscriptionKind.GROUP_ADDED: GroupAddedSubscription,
}

_unwired = set(SubscriptionKind) - set(SUBSCRIPTION_TYPES)
if _unwired:
    raise RuntimeError(f"Subscription kinds without an authorization predicate: {sorted(_unwired)}")


def parse_kind(raw: Any) -> SubscriptionKind:
    try:
        return SubscriptionKind(raw)
    except ValueError:
        raise BadRequest(f"Unknown subscription kind: {raw!r}")


class GatedStream:
    """
    Events of one subscription that pass its predicate.

    The underlying bus subscription is registered on construction, so no
    event published after ``SubscriptionGate.open`` returns is missed.
    """

    def __init__(self, gate: "SubscriptionGate", subscription: LiveSubscription, context: RequestContext):
        self.gate = gate
        self.subscription = subscription
        self.context = context
        self._events: EventSubscription = gate.bus.subscribe(subscription.topic)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        async for event in self._events:
            if await run_in_threadpool(self.gate.check, self.subscription, self.context, event):
                return event
        raise StopAsyncIteration

    def close(self) -> None:
        self._events.close()


class SubscriptionGate:
    """
    Applies the per-kind authorization rules to subscriptions and events.

    Args:
        bus: Event bus to read from
        session_factory: Callable returning a new SQLAlchemy session
    """

    def __init__(self, bus: EventBus, session_factory: Callable[[], Session]):
        self.bus = bus
        self.session_factory = session_factory

    def authorize(self, kind: SubscriptionKind, args: Dict[str, Any], context: RequestContext) -> LiveSubscription:
        """
        Re-validate the principal and the client's arguments for a subscribe operation.

        Raises:
            Unauthorized, InvalidToken, BadRequest
        """
        with self.session_factory() as db:
            repository = Repository(db)
            principal = context.resolve(repository)
            return SUBSCRIPTION_TYPES[kind].from_request(args or {}, principal, repository)

    def open(self, subscription: LiveSubscription, context: RequestContext) -> GatedStream:
        return GatedStream(self, subscription, context)

    def check(self, subscription: LiveSubscription, context: RequestContext, event: Any) -> bool:
        """
        Evaluate one event for one subscriber.

        Raises:
            InvalidToken: The subscriber's session was revoked since it subscribed
        """
        with self.session_factory() as db:
            repository = Repository(db)
            principal = context.resolve(repository)
            allowed = subscription.allows(event, principal, repository)
        if not allowed:
            logger.debug(f"Filtered {subscription.kind.value} event for user {principal.id}")
        return allowed
