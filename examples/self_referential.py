"""Self-referential association loading example.

Demonstrates parent/children and the ancestors/descendants walks on Category.
"""

from __future__ import annotations

from sqla_associations import Database

from .models import Category


# the self key (parent_id) is auto-detected by tree_associations


def get_categories_with_children(db: Database) -> list[Category]:
    return db.dataset(Category).eager("children").all()


def get_categories_with_parent(db: Database) -> list[Category]:
    return db.dataset(Category).eager("parent").all()


def breadcrumbs(db: Database, category_id: int) -> list[str]:
    category = db.dataset(Category).where(Category.id == category_id).eager("ancestors").first()
    if category is None:
        return []

    return [node.name for node in reversed(category.ancestors)] + [category.name]


def subtree(db: Database, category_id: int) -> list[Category]:
    """Every node below *category_id*, depth first; one query per generation."""
    category = db.dataset(Category).where(Category.id == category_id).eager("descendants").first()
    return category.descendants if category is not None else []
