"""
Cursor pagination over a group's message history.

Messages are listed newest-first. A cursor is the base64 encoding of a
message id; because ids strictly increase with creation order, "after" a
cursor means older (smaller id) and "before" a cursor means newer (larger id).

Page info is lazy: ``has_next_page`` and ``has_previous_page`` run their
existence checks only when called, and each at most once.
"""
import base64
import binascii
from dataclasses import dataclass
from typing import Callable, List, Optional
from core.config import settings
from core.exceptions import InvalidPageRequest
from db.models import Message
from db.repository import Repository


def encode_cursor(message_id: int) -> str:
    """Turn a message id into an opaque cursor."""
    return base64.b64encode(str(message_id).encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> int:
    """
    Recover the message id from a cursor.

    Raises:
        InvalidPageRequest: The cursor was not produced by ``encode_cursor``
    """
    try:
        message_id = int(base64.b64decode(cursor.encode("ascii"), validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        raise InvalidPageRequest(f"Malformed cursor: {cursor!r}")
    # int() also takes "+104", " 104" and "1_04"; only canonical cursors pass
    if encode_cursor(message_id) != cursor:
        raise InvalidPageRequest(f"Malformed cursor: {cursor!r}")
    return message_id


@dataclass(frozen=True)
class Edge:
    cursor: str
    node: Message


@dataclass(frozen=True)
class PageRequest:
    """
    A forward (``first``/``after``) or backward (``last``/``before``) window.

    Attributes:
        size: Number of messages requested
        forward: True for first/after, False for last/before
        boundary: Decoded cursor id, or None when starting from the newest
    """
    size: int
    forward: bool
    boundary: Optional[int]

    @classmethod
    def from_args(
        cls,
        first: Optional[int] = None,
        after: Optional[str] = None,
        last: Optional[int] = None,
        before: Optional[str] = None
    ) -> "PageRequest":
        """
        Validate connection arguments.

        Without any size the configured default page size applies; a request
        never reads an unbounded number of rows.
        """
        if (first is not None or after is not None) and (last is not None or before is not None):
            raise InvalidPageRequest("first/after and last/before cannot be combined")

        size = first if first is not None else last
        if size is None:
            size = settings.default_page_size
        if size < 1:
            raise InvalidPageRequest("Page size must be positive")
        size = min(size, settings.max_page_size)

        if last is not None or before is not None:
            boundary = decode_cursor(before) if before is not None else None
            return cls(size=size, forward=False, boundary=boundary)

        boundary = decode_cursor(after) if after is not None else None
        return cls(size=size, forward=True, boundary=boundary)


class _LazyFlag:
    """Memoizes a boolean check."""

    def __init__(self, check: Callable[[], bool]):
        self._check = check
        self._value: Optional[bool] = None

    def __call__(self) -> bool:
        if self._value is None:
            self._value = self._check()
        return self._value

    @property
    def evaluated(self) -> bool:
        return self._value is not None


class MessageConnection:
    """A page of messages plus lazily evaluated page info."""

    def __init__(self, edges: List[Edge], has_next_page: Callable[[], bool], has_previous_page: Callable[[], bool]):
        self.edges = edges
        self._has_next_page = _LazyFlag(has_next_page)
        self._has_previous_page = _LazyFlag(has_previous_page)

    def has_next_page(self) -> bool:
        """True when a message older than the oldest returned one exists."""
        return self._has_next_page()

    def has_previous_page(self) -> bool:
        """True when a message newer than the window boundary exists."""
        return self._has_previous_page()

    @property
    def page_info_evaluated(self) -> bool:
        return self._has_next_page.evaluated or self._has_previous_page.evaluated


def paginate_messages(repository: Repository, group_id: int, page: PageRequest) -> MessageConnection:
    """
    Fetch one window of a group's messages.

    One extra row is read to learn whether the window was truncated. Forward
    windows truncate on the older side, backward windows on the newer side;
    the other side is answered by an existence check.

    Args:
        repository: Data access for the current session
        group_id: Group whose messages are listed
        page: Validated window

    Returns:
        MessageConnection with edges ordered newest-first
    """
    if page.forward:
        rows = repository.get_group_messages_older(group_id, page.size + 1, before_id=page.boundary)
        truncated = len(rows) > page.size
        messages = rows[:page.size]
    else:
        if page.boundary is None:
            # No cursor: the newest messages, same as a forward window
            rows = repository.get_group_messages_older(group_id, page.size + 1)
            truncated = False
            messages = rows[:page.size]
        else:
            rows = repository.get_group_messages_newer(group_id, page.size + 1, after_id=page.boundary)
            truncated = len(rows) > page.size
            messages = list(reversed(rows[:page.size]))

    edges = [Edge(cursor=encode_cursor(message.id), node=message) for message in messages]

    def has_next_page() -> bool:
        if page.forward and truncated:
            return True
        if messages:
            return repository.message_exists(group_id, older_than=messages[-1].id)
        if page.boundary is None:
            return False
        if page.forward:
            return repository.message_exists(group_id, older_than=page.boundary)
        # The cursor message itself sits on the older side of an empty backward window
        return repository.message_exists(group_id, older_than=page.boundary + 1)

    def has_previous_page() -> bool:
        if not page.forward and truncated:
            return True
        if page.forward:
            if page.boundary is None:
                return False
            return repository.message_exists(group_id, newer_than=page.boundary)
        if messages:
            return repository.message_exists(group_id, newer_than=messages[0].id)
        if page.boundary is None:
            return False
        return repository.message_exists(group_id, newer_than=page.boundary)

    return MessageConnection(edges, has_next_page, has_previous_page)
