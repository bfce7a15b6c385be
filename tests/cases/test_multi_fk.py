from __future__ import annotations

import pytest

from sqla_associations import Database, ReadOnlyAssociationError, eager_load

from ..conftest import QueryCounter
from ..models import Message, User


class TestMultipleKeysToOneTable:
    def test_each_key_resolves_its_own_user(self, db: Database) -> None:
        messages = db.dataset(Message).order_by("id").eager("from_user", "to_user", "owner").all()

        assert [
            (m.from_user.name, m.to_user.name, m.owner.name) for m in messages
        ] == [
            ("alice", "bob", "alice"),
            ("bob", "alice", "bob"),
            ("alice", "charlie", "charlie"),
        ]

    def test_instances_shared_within_one_association(self, db: Database) -> None:
        messages = db.dataset(Message).order_by("id").eager("from_user").all()
        assert messages[0].from_user is messages[2].from_user

    def test_reciprocal_only_for_mirrored_key(self, db: Database) -> None:
        users = db.dataset(User).where(User.id == 1).eager("sent_messages").all()
        alice = users[0]

        assert [m.id for m in alice.sent_messages] == [1, 3]
        assert all(m.from_user is alice for m in alice.sent_messages)
        assert not alice.sent_messages[0].association_loaded("to_user")


class TestMultiKeyAssociation:
    def test_any_key_matches(self, db: Database, queries: QueryCounter) -> None:
        users = db.dataset(User).order_by("id").all()
        queries.reset()

        eager_load(users, loads="messages")

        assert queries.count == 1
        assert [[m.id for m in user.messages] for user in users] == [[1, 2, 3], [1, 2], [3]]

    def test_message_shared_between_users(self, db: Database) -> None:
        alice, bob, _ = db.dataset(User).order_by("id").eager("messages").all()
        assert alice.messages[0] is bob.messages[0]

    def test_lazy(self, db: Database, queries: QueryCounter) -> None:
        charlie = db.dataset(User).where(User.id == 3).first()
        assert charlie is not None
        queries.reset()

        assert [m.content for m in charlie.messages] == ["Hey Charlie"]
        assert queries.count == 1

    def test_read_only(self, db: Database) -> None:
        alice = db.dataset(User).where(User.id == 1).first()
        assert alice is not None

        with pytest.raises(ReadOnlyAssociationError):
            alice.add_association("messages", Message(id=9, content="x"))


class TestMultiKeyThroughTable:
    def test_keys_on_intermediate_table(self, db: Database, queries: QueryCounter) -> None:
        users = db.dataset(User).order_by("id").all()
        queries.reset()

        eager_load(users, loads="party_messages")

        assert queries.count == 1
        assert [[m.id for m in user.party_messages] for user in users] == [[1], [1], [3]]

    def test_row_matching_two_keys_listed_once(self, db: Database) -> None:
        charlie = db.dataset(User).where(User.id == 3).eager("party_messages").first()
        assert charlie is not None

        assert [m.content for m in charlie.party_messages] == ["Hey Charlie"]

    def test_message_shared_between_parties(self, db: Database) -> None:
        alice, bob, _ = db.dataset(User).order_by("id").eager("party_messages").all()
        assert alice.party_messages[0] is bob.party_messages[0]

    def test_records_keep_only_target_columns(self, db: Database) -> None:
        alice = db.dataset(User).where(User.id == 1).eager("party_messages").first()
        assert alice is not None

        message = alice.party_messages[0]
        assert set(message.values) == {"id", "content", "from_user_id", "to_user_id", "owner_id"}
