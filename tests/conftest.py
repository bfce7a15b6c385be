from __future__ import annotations

import os
from collections.abc import Iterator
from typing import Any

import pytest
import sqlalchemy as sa

from sqla_associations import Database
from sqla_associations.node import Node, find_reciprocal, get_node, init_node

from .models import (
    Attachment,
    Base,
    Category,
    Comment,
    Message,
    Parcel,
    Post,
    Profile,
    Reaction,
    Role,
    Shipment,
    Tag,
    User,
    message_parties,
    post_links,
    post_tags,
    user_roles,
)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session", autouse=True)
def _init_node() -> None:
    """Initialize the Node singleton with the test models' associations.

    No DB needed -- safe to run for all tests including unit tests.
    """
    try:
        Node()
    except RuntimeError:
        Node.reset()
        init_node(get_node(Base))


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest", driver="psycopg")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                yield pg.get_connection_url()

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> Iterator[sa.Engine]:
    engine = sa.create_engine(db_config, echo=False)
    yield engine
    engine.dispose()


SEED: dict[sa.Table, list[dict[str, Any]]] = {
    User.__table__: [
        {"id": 1, "name": "alice", "active": True},
        {"id": 2, "name": "bob", "active": True},
        {"id": 3, "name": "charlie", "active": False},
    ],
    Post.__table__: [
        {"id": 1, "title": "Alice Post 1", "body": "body1", "author_id": 1},
        {"id": 2, "title": "Alice Post 2", "body": "body2", "author_id": 1},
        {"id": 3, "title": "Alice Post 3", "body": "body3", "author_id": 1},
        {"id": 4, "title": "Bob Post 1", "body": "body4", "author_id": 2},
        {"id": 5, "title": "Orphan Post", "body": "body5", "author_id": None},
    ],
    Tag.__table__: [
        {"id": 1, "name": "python"},
        {"id": 2, "name": "sqlalchemy"},
        {"id": 3, "name": "testing"},
    ],
    post_tags: [
        {"post_id": 1, "tag_id": 1},
        {"post_id": 1, "tag_id": 2},
        {"post_id": 2, "tag_id": 1},
        {"post_id": 4, "tag_id": 3},
    ],
    post_links: [
        {"post_id": 1, "tag_id": 1},
        {"post_id": 1, "tag_id": 1},
        {"post_id": 1, "tag_id": 2},
        {"post_id": 4, "tag_id": 3},
        {"post_id": 4, "tag_id": 3},
    ],
    Comment.__table__: [
        {"id": 1, "text": "Great post!", "post_id": 1},
        {"id": 2, "text": "Nice work", "post_id": 1},
        {"id": 3, "text": "Agreed", "post_id": 1},
        {"id": 4, "text": "Hello", "post_id": 4},
    ],
    Reaction.__table__: [
        {"id": 1, "emoji": "+1", "comment_id": 1},
        {"id": 2, "emoji": "heart", "comment_id": 1},
        {"id": 3, "emoji": "eyes", "comment_id": 4},
    ],
    Role.__table__: [
        {"id": 1, "name": "admin", "level": 10},
        {"id": 2, "name": "editor", "level": 5},
        {"id": 3, "name": "viewer", "level": 1},
    ],
    user_roles: [
        {"user_id": 1, "role_id": 1},
        {"user_id": 1, "role_id": 2},
        {"user_id": 2, "role_id": 2},
        {"user_id": 2, "role_id": 3},
    ],
    Profile.__table__: [
        {"id": 1, "bio": "Alice bio", "user_id": 1},
        {"id": 2, "bio": "Bob bio", "user_id": 2},
    ],
    # root(1) -> child_1(2) -> grandchild(4) -> great_grandchild(5); root -> child_2(3);
    # loop(6) is its own parent
    Category.__table__: [
        {"id": 1, "name": "root", "parent_id": None},
        {"id": 2, "name": "child_1", "parent_id": 1},
        {"id": 3, "name": "child_2", "parent_id": 1},
        {"id": 4, "name": "grandchild", "parent_id": 2},
        {"id": 5, "name": "great_grandchild", "parent_id": 4},
        {"id": 6, "name": "loop", "parent_id": 6},
    ],
    Message.__table__: [
        {"id": 1, "content": "Hello Bob", "from_user_id": 1, "to_user_id": 2, "owner_id": 1},
        {"id": 2, "content": "Hi Alice", "from_user_id": 2, "to_user_id": 1, "owner_id": 2},
        {"id": 3, "content": "Hey Charlie", "from_user_id": 1, "to_user_id": 3, "owner_id": 3},
    ],
    # charlie is both sender and receiver of message 3
    message_parties: [
        {"message_id": 1, "sender_id": 1, "receiver_id": 2},
        {"message_id": 3, "sender_id": 3, "receiver_id": 3},
    ],
    Attachment.__table__: [
        {"id": 1, "url": "post1_img1.jpg", "attachable_type": "post", "attachable_id": 1},
        {"id": 2, "url": "post1_img2.jpg", "attachable_type": "post", "attachable_id": 1},
        {"id": 3, "url": "comment1_file.pdf", "attachable_type": "comment", "attachable_id": 1},
        {"id": 4, "url": "loose.txt", "attachable_type": None, "attachable_id": None},
        {"id": 5, "url": "post4_img.jpg", "attachable_type": "post", "attachable_id": 4},
    ],
    Shipment.__table__: [
        {"region": "eu", "code": 1, "label": "eu-1"},
        {"region": "us", "code": 1, "label": "us-1"},
    ],
    Parcel.__table__: [
        {"id": 1, "region": "eu", "shipment_code": 1, "weight": 3},
        {"id": 2, "region": "eu", "shipment_code": 1, "weight": 5},
        {"id": 3, "region": "us", "shipment_code": 1, "weight": 7},
        {"id": 4, "region": None, "shipment_code": None, "weight": 1},
    ],
}


@pytest.fixture(scope="session")
def _seed(engine: sa.Engine) -> Iterator[None]:
    Base.metadata.create_all(engine)
    with engine.begin() as conn:
        for table in Base.metadata.sorted_tables:
            if rows := SEED.get(table):
                conn.execute(table.insert(), rows)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def db(engine: sa.Engine, _seed: None) -> Database:
    return Database(engine)


@pytest.fixture
def connection_db(engine: sa.Engine, _seed: None) -> Iterator[Database]:
    """A Database bound to one connection inside a rolled-back transaction."""
    with engine.connect() as conn:
        trans = conn.begin()
        yield Database(conn)
        trans.rollback()


class QueryCounter:
    """Collects every statement executed on an engine."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    def __call__(self, conn: Any, cursor: Any, statement: str, *args: Any) -> None:
        self.statements.append(statement)

    @property
    def count(self) -> int:
        return len(self.statements)

    def reset(self) -> None:
        self.statements.clear()


@pytest.fixture
def queries(engine: sa.Engine, _seed: None) -> Iterator[QueryCounter]:
    counter = QueryCounter()
    sa.event.listen(engine, "before_cursor_execute", counter)
    yield counter
    sa.event.remove(engine, "before_cursor_execute", counter)


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    find_reciprocal.cache_clear()


@pytest.fixture
def reset_node_singleton() -> Iterator[None]:
    saved = Node._Node__instance  # type: ignore[attr-defined]
    yield
    Node._Node__instance = saved  # type: ignore[attr-defined]
