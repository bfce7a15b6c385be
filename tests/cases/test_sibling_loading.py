from __future__ import annotations

from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pytest

from sqla_associations import ConfigurationError, Database, eager_load

from ..conftest import QueryCounter
from ..models import User


LOADS = ("posts.comments.reactions", "roles", "profile", "post_count", "messages")


@pytest.fixture
def executor() -> Iterator[ThreadPoolExecutor]:
    with ThreadPoolExecutor(max_workers=4) as pool:
        yield pool


def _snapshot(user: Any) -> tuple[Any, ...]:
    return (
        [(post.id, [(c.id, [r.id for r in c.reactions]) for c in post.comments]) for post in user.posts],
        [role.id for role in user.roles],
        user.profile.id if user.profile else None,
        user.post_count,
        [message.id for message in user.messages],
    )


@pytest.mark.threads
class TestSiblingLoading:
    def test_same_result_as_sequential(
        self, db: Database, executor: ThreadPoolExecutor, queries: QueryCounter
    ) -> None:
        sequential = db.dataset(User).order_by("id").eager(*LOADS).all()
        queries.reset()

        concurrent = db.dataset(User).order_by("id").with_executor(executor).eager(*LOADS).all()

        # main query, posts, comments, reactions and one per sibling
        assert queries.count == 8
        assert [_snapshot(user) for user in concurrent] == [_snapshot(user) for user in sequential]

    def test_eager_load_with_executor(self, db: Database, executor: ThreadPoolExecutor) -> None:
        users = db.dataset(User).order_by("id").all()

        eager_load(users, loads=("posts", "roles"), executor=executor)

        assert [[post.id for post in user.posts] for user in users] == [[1, 2, 3], [4], []]
        assert [role.name for role in users[1].roles] == ["editor", "viewer"]

    def test_failure_in_one_sibling_loads_nothing(
        self, db: Database, executor: ThreadPoolExecutor
    ) -> None:
        users = db.dataset(User).order_by("id").all()

        def broken(query: Any) -> Any:
            raise RuntimeError("broken filter")

        with pytest.raises(RuntimeError, match="broken filter"):
            eager_load(
                users,
                loads=("posts", "roles", "profile"),
                conditions={"roles": broken},
                executor=executor,
            )

        assert not any(user.associations for user in users)

    def test_connection_bound_database_rejected(
        self, connection_db: Database, executor: ThreadPoolExecutor
    ) -> None:
        dataset = connection_db.dataset(User).with_executor(executor).eager("posts", "roles")

        with pytest.raises(ConfigurationError, match="Engine"):
            dataset.all()

    def test_connection_bound_database_sequential(self, connection_db: Database) -> None:
        users = connection_db.dataset(User).order_by("id").eager("posts", "roles").all()
        assert [len(user.posts) for user in users] == [3, 1, 0]
