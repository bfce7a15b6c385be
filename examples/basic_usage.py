"""Basic sqla-associations usage examples.

Demonstrates initialization, eager and lazy loading, dotted paths,
conditions, per-owner limits, joined loading and mutations.

NOTE: This file is illustrative; it won't run standalone
without seeded data.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import sqlalchemy as sa

from sqla_associations import Database, add_conditions, eager_load, get_node, init_node

from .models import Base, Post, Role, User


# ── 1. Initialize once at startup ────────────────────────────────────

engine = sa.create_engine("sqlite:///example.db")
db = Database(engine)


def setup() -> None:
    Base.metadata.create_all(engine)

    # Call once: validates every declared association and builds the registry
    init_node(get_node(Base))


# ── 2. Eager loads: one query per association and depth level ───────


def get_users_with_posts() -> list[User]:
    return db.dataset(User).eager("posts").all()


def get_users_with_all() -> list[User]:
    return db.dataset(User).eager("posts", "roles", "profile", "post_count").all()


def get_users_deep() -> list[User]:
    return db.dataset(User).eager("posts.comments", {"roles": []}).all()


def load_for_fetched(users: list[User]) -> list[User]:
    return eager_load(users, loads=("posts.comments",))


# ── 3. Conditions ────────────────────────────────────────────────────


def get_users_with_senior_roles() -> list[User]:
    return (
        db.dataset(User)
        .eager("roles", conditions={"roles": add_conditions(Role.level > 3)})  # noqa: PLR2004
        .all()
    )


# ── 4. Per-owner limit (declared on the association) ────────────────


def get_users_latest_posts() -> list[User]:
    return db.dataset(User).eager("latest_posts").all()


# ── 5. Lazy loading ──────────────────────────────────────────────────


def first_post_title(user_id: int) -> str | None:
    user = db.dataset(User).where(User.id == user_id).first()
    if user is None or not user.posts:  # one query, cached afterwards
        return None

    return user.posts[0].title


# ── 6. Joined loading ────────────────────────────────────────────────


def get_posts_by_author(name: str) -> list[Post]:
    dataset = db.dataset(Post).eager_graph("author")
    return dataset.where(dataset.graph_col("author.name") == name).all()


# ── 7. Concurrent siblings ──────────────────────────────────────────


def get_users_concurrently() -> list[User]:
    with ThreadPoolExecutor(max_workers=4) as pool:
        return db.dataset(User).with_executor(pool).eager("posts", "roles", "profile").all()


# ── 8. Mutations keep both loaded sides in sync ─────────────────────


def reassign(post: Post, author: User) -> None:
    post.author = author  # updates post.author_id and author.posts when loaded
