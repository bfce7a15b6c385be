"""Minimal models for sqla-associations examples."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import orm

from sqla_associations import (
    Model,
    aggregate,
    many_to_many,
    many_to_one,
    one_to_many,
    one_to_one,
    tree_associations,
)


class Base(Model, orm.DeclarativeBase):
    pass


user_roles = sa.Table(
    "user_roles",
    Base.metadata,
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), primary_key=True),
    sa.Column("role_id", sa.Integer, sa.ForeignKey("roles.id"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))

    # associations are plain class attributes, not relationship()s
    posts = one_to_many("Post", key="author_id", order_by="id")
    latest_posts = one_to_many("Post", key="author_id", order_by="-id", limit=3, read_only=True)
    roles = many_to_many(
        "Role", join_table=user_roles, join_local_keys="user_id", join_target_keys="role_id"
    )
    profile = one_to_one("Profile", key="user_id")
    post_count = aggregate("Post", "author_id")


class Post(Base):
    __tablename__ = "posts"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    title: orm.Mapped[str] = orm.mapped_column(sa.String(200))
    author_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("users.id"))

    author = many_to_one(User, key="author_id")
    comments = one_to_many("Comment", key="post_id", order_by="id")


class Comment(Base):
    __tablename__ = "comments"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    text: orm.Mapped[str] = orm.mapped_column(sa.Text)
    post_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("posts.id"))

    post = many_to_one(Post, key="post_id")


class Role(Base):
    __tablename__ = "roles"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(50))
    level: orm.Mapped[int] = orm.mapped_column(default=0)


class Profile(Base):
    __tablename__ = "profiles"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    bio: orm.Mapped[str] = orm.mapped_column(sa.Text)
    user_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("users.id"), unique=True)

    user = many_to_one(User, key="user_id")


@tree_associations
class Category(Base):
    __tablename__ = "categories"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))
    parent_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("categories.id"))
