"""
Tests for cursor pagination over a group's messages.
"""
import base64

import pytest
from sqlalchemy.orm import Session

from core.exceptions import InvalidPageRequest
from db.models import Group, Message
from db.repository import Repository
from services.pagination import PageRequest, decode_cursor, encode_cursor, paginate_messages


def ids(connection):
    return [edge.node.id for edge in connection.edges]


def page(test_db: Session, group: Group, **args):
    return paginate_messages(Repository(test_db), group.id, PageRequest.from_args(**args))


class TestCursors:

    def test_cursor_round_trip(self):
        assert decode_cursor(encode_cursor(104)) == 104

    def test_cursor_is_opaque_base64(self):
        assert encode_cursor(104) == "MTA0"

    @pytest.mark.parametrize("cursor", ["***", "bm90LWFuLWlk"])
    def test_malformed_cursor(self, cursor):
        with pytest.raises(InvalidPageRequest):
            decode_cursor(cursor)

    @pytest.mark.parametrize("raw", [b"1_04", b"+104", b" 104", b"0104", b"104\n"])
    def test_non_canonical_cursor(self, raw):
        cursor = base64.b64encode(raw).decode("ascii")
        with pytest.raises(InvalidPageRequest):
            decode_cursor(cursor)


class TestPageRequest:

    def test_default_size(self):
        request = PageRequest.from_args()
        assert request.forward
        assert request.size == 20
        assert request.boundary is None

    def test_size_is_capped(self):
        assert PageRequest.from_args(first=10_000).size == 100

    def test_mixed_directions_refused(self):
        with pytest.raises(InvalidPageRequest):
            PageRequest.from_args(first=2, before=encode_cursor(3))

    def test_non_positive_size_refused(self):
        with pytest.raises(InvalidPageRequest):
            PageRequest.from_args(first=0)


class TestForwardWindows:
    """Walking a group's history from newest to oldest."""

    def test_first_page(self, test_db: Session, seed_group: Group, seed_messages: list[Message]):
        connection = page(test_db, seed_group, first=2)

        assert ids(connection) == [105, 104]
        assert connection.has_next_page() is True
        assert connection.has_previous_page() is False

    def test_following_pages(self, test_db: Session, seed_group: Group, seed_messages: list[Message]):
        second = page(test_db, seed_group, first=2, after=encode_cursor(104))
        assert ids(second) == [103, 102]
        assert second.has_next_page() is True
        assert second.has_previous_page() is True

        third = page(test_db, seed_group, first=2, after=encode_cursor(102))
        assert ids(third) == [101]
        assert third.has_next_page() is False

    def test_full_traversal_visits_every_message_once(
        self, test_db: Session, seed_group: Group, seed_messages: list[Message]
    ):
        seen = []
        after = None
        while True:
            connection = page(test_db, seed_group, first=2, after=after)
            seen.extend(ids(connection))
            if not connection.has_next_page():
                break
            after = connection.edges[-1].cursor

        assert seen == [105, 104, 103, 102, 101]

    def test_cursor_past_oldest_is_empty(self, test_db: Session, seed_group: Group, seed_messages: list[Message]):
        connection = page(test_db, seed_group, first=2, after=encode_cursor(101))
        assert ids(connection) == []
        assert connection.has_next_page() is False
        assert connection.has_previous_page() is True

    def test_edges_strictly_decrease(self, test_db: Session, seed_group: Group, seed_messages: list[Message]):
        connection = page(test_db, seed_group, first=5)
        message_ids = ids(connection)
        assert all(a > b for a, b in zip(message_ids, message_ids[1:]))
        assert [decode_cursor(edge.cursor) for edge in connection.edges] == message_ids

    def test_other_groups_are_not_listed(
        self, test_db: Session, seed_group: Group, seed_messages: list[Message], seed_test_users
    ):
        repository = Repository(test_db)
        other = repository.create_group(name="Other", members=seed_test_users[:1])
        repository.create_message(other.id, seed_test_users[0].id, "elsewhere")

        assert ids(page(test_db, seed_group, first=10)) == [105, 104, 103, 102, 101]


class TestBackwardWindows:
    """Walking back toward newer messages."""

    def test_last_before_returns_immediately_newer(
        self, test_db: Session, seed_group: Group, seed_messages: list[Message]
    ):
        connection = page(test_db, seed_group, last=2, before=encode_cursor(102))

        assert ids(connection) == [104, 103]
        assert connection.has_previous_page() is True
        assert connection.has_next_page() is True

    def test_last_before_reaching_newest(self, test_db: Session, seed_group: Group, seed_messages: list[Message]):
        connection = page(test_db, seed_group, last=5, before=encode_cursor(103))

        assert ids(connection) == [105, 104]
        assert connection.has_previous_page() is False

    def test_last_without_cursor_is_newest(self, test_db: Session, seed_group: Group, seed_messages: list[Message]):
        connection = page(test_db, seed_group, last=2)

        assert ids(connection) == [105, 104]
        assert connection.has_previous_page() is False
        assert connection.has_next_page() is True


class TestLazyPageInfo:

    def test_existence_checks_run_only_when_asked(
        self, test_db: Session, seed_group: Group, seed_messages: list[Message], monkeypatch
    ):
        repository = Repository(test_db)
        calls = []
        original = repository.message_exists

        def counting(*args, **kwargs):
            calls.append((args, kwargs))
            return original(*args, **kwargs)

        monkeypatch.setattr(repository, "message_exists", counting)
        connection = paginate_messages(repository, seed_group.id, PageRequest.from_args(first=2, after=encode_cursor(104)))

        assert connection.page_info_evaluated is False
        assert calls == []

        assert connection.has_previous_page() is True
        assert connection.has_previous_page() is True
        assert len(calls) == 1
        assert connection.page_info_evaluated is True

    def test_empty_group(self, test_db: Session, seed_group: Group):
        connection = page(test_db, seed_group, first=2)
        assert connection.edges == []
        assert connection.has_next_page() is False
        assert connection.has_previous_page() is False
