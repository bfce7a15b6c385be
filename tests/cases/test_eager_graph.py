from __future__ import annotations

import pytest

from sqla_associations import ConfigurationError, Database

from ..conftest import QueryCounter
from ..models import Attachment, Post, User


class TestEagerGraph:
    def test_many_to_one_left_join(self, db: Database, queries: QueryCounter) -> None:
        posts = db.dataset(Post).eager_graph("author").order_by("id").all()

        assert queries.count == 1
        assert [post.id for post in posts] == [1, 2, 3, 4, 5]
        assert posts[0].author is posts[1].author
        assert posts[3].author.name == "bob"
        assert posts[4].author is None
        assert posts[4].association_loaded("author")

    def test_inner_join_drops_owners(self, db: Database) -> None:
        posts = db.dataset(Post).eager_graph("author", join_type="inner").order_by("id").all()
        assert [post.id for post in posts] == [1, 2, 3, 4]

    def test_one_to_many_collapses_rows(self, db: Database) -> None:
        dataset = db.dataset(User).eager_graph("posts")
        users = dataset.order_by("id", dataset.graph_col("posts.id")).all()

        assert [user.name for user in users] == ["alice", "bob", "charlie"]
        assert [[post.id for post in user.posts] for user in users] == [[1, 2, 3], [4], []]

    def test_reciprocal_is_set(self, db: Database) -> None:
        users = db.dataset(User).where(User.id == 1).eager_graph("posts").all()
        alice = users[0]

        assert all(post.author is alice for post in alice.posts)

    def test_nested_paths(self, db: Database, queries: QueryCounter) -> None:
        users = db.dataset(User).eager_graph("posts.comments").order_by("id").all()
        alice = users[0]
        post1 = next(post for post in alice.posts if post.id == 1)

        assert queries.count == 1
        assert sorted(comment.id for comment in post1.comments) == [1, 2, 3]
        assert all(post.comments == [] for post in alice.posts if post.id != 1)

    def test_many_to_many(self, db: Database) -> None:
        posts = db.dataset(Post).eager_graph("tags").order_by("id").all()

        assert sorted(tag.name for tag in posts[0].tags) == ["python", "sqlalchemy"]
        assert posts[2].tags == []
        assert [tag.name for tag in posts[3].tags] == ["testing"]

    def test_declared_conditions_in_join(self, db: Database) -> None:
        posts = db.dataset(Post).eager_graph("attachments").order_by("id").all()

        assert sorted(a.id for a in posts[0].attachments) == [1, 2]
        assert [a.id for a in posts[3].attachments] == [5]

    def test_filter_on_joined_column(self, db: Database) -> None:
        dataset = db.dataset(Post).eager_graph("author")
        posts = dataset.where(dataset.graph_col("author.name") == "bob").all()

        assert [post.id for post in posts] == [4]

    def test_unknown_graph_column(self, db: Database) -> None:
        dataset = db.dataset(Post).eager_graph("author")

        with pytest.raises(ValueError, match="not found"):
            dataset.graph_col("editor.name")

    def test_combined_with_eager(self, db: Database, queries: QueryCounter) -> None:
        posts = db.dataset(Post).eager_graph("author").eager("comments").order_by("id").all()

        assert queries.count == 2
        assert posts[0].author.name == "alice"
        assert [comment.id for comment in posts[0].comments] == [1, 2, 3]

    def test_repeated_calls_merge(self, db: Database) -> None:
        dataset = db.dataset(Post).eager_graph("author").eager_graph("tags")

        assert dataset.graph is not None
        assert list(dataset.graph.aliases) == ["posts", "author", "tags_post_tags", "tags"]

    def test_custom_association_rejected(self, db: Database) -> None:
        with pytest.raises(ConfigurationError, match="cannot be eager-graphed"):
            db.dataset(Attachment).eager_graph("attachable")

        with pytest.raises(ConfigurationError, match="cannot be eager-graphed"):
            db.dataset(User).eager_graph("post_count")

    def test_limit_warns(self, db: Database) -> None:
        dataset = db.dataset(User).eager_graph("posts").order_by("id").limit(2)

        with pytest.warns(UserWarning, match="limit"):
            users = dataset.all()

        assert [user.id for user in users] == [1]
