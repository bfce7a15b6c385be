from __future__ import annotations

from collections.abc import Callable, Collection, Iterable, Mapping, Sequence
from functools import lru_cache
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa

from .datastructures import KeyTuple, frozendict


if TYPE_CHECKING:
    from .model import Model

M = TypeVar("M", bound="Model")
LoadTree = frozendict[str, "LoadTree"]
LoadsArgument = str | Sequence[Any] | Mapping[str, Any]

EMPTY_TREE: LoadTree = frozendict()


@lru_cache
def _get_primary_key(model: type[Model]) -> tuple[sa.Column[Any], ...]:
    """Return the primary-key columns of *model* in declared order (cached)."""
    columns = tuple(model.__table__.primary_key.columns)
    if not columns:
        raise ValueError(f"{model.__name__} has no primary key")

    return columns


@lru_cache
def _get_table_name(model: type[Model]) -> str:
    result = model.__table__.name
    if not result:
        raise ValueError(f"Cannot determine tablename for {model}")

    return result


def get_table_name(model: type[Model]) -> str:
    """Get the table name of a model.

    Raises:
        ValueError: If the table name cannot be determined.
    """
    return _get_table_name(model)


def get_primary_key(model: type[Model]) -> tuple[sa.Column[Any], ...]:
    """Get the primary-key columns of a model; composite keys yield several columns."""
    return _get_primary_key(model)


@lru_cache
def _get_attribute_keys(model: type[Model]) -> frozendict[str, str]:
    mapper = sa.inspect(model)
    return frozendict({column.key: key for key, column in mapper.columns.items()})


def get_attribute_keys(model: type[Model]) -> Mapping[str, str]:
    """Map the column keys of *model*'s table to the mapped attribute names."""
    return _get_attribute_keys(model)


@lru_cache(maxsize=256)
def _find_model(model: type[Model], name: str) -> type[Model]:
    for mapper in model.registry.mappers:
        if mapper.class_.__name__ == name:
            return mapper.class_

    raise KeyError(name)


def find_model(model: type[Model], name: str) -> type[Model]:
    """Find the class called *name* among the mappers of *model*'s registry.

    Raises:
        KeyError: If no class of that name is mapped in the registry.
    """
    return _find_model(model, name)


@lru_cache(maxsize=128)
def find_self_key(model: type[Model]) -> str:
    """Find the foreign-key column of *model* that references its own primary key.

    Returns:
        Name of the self-referential foreign key column, or empty string if none found.
    """
    pk_names = {column.name for column in get_primary_key(model)}
    table = model.__table__

    return next(
        (
            fk.parent.name
            for fk in sorted(table.foreign_keys, key=lambda fk: fk.parent.name)
            if fk.column.name in pk_names and fk.column.table.name == table.name
        ),
        "",
    )


def graph_aliases(query: sa.Select[Any]) -> dict[str, sa.FromClause]:
    """Map each named FROM entry of *query* to its selectable, left to right.

    An eager-graph join aliases every joined table by association name
    (``author``, ``comments``, ``comments_0`` when a name repeats), so these
    names are the prefixes :func:`resolve_col` accepts. Aliases are not
    unwrapped: only what the query can select from is listed.
    """
    found: dict[str, sa.FromClause] = {}
    stack: list[Any] = list(reversed(query.get_final_froms()))
    while stack:
        node = stack.pop()
        if isinstance(node, sa.Join):
            stack.extend([node.right, node.left])
        elif name := getattr(node, "name", None):
            found.setdefault(name, node)

    return found


def get_table_names(query: sa.Select[Any]) -> Sequence[str]:
    """Names usable as ``'name.column'`` prefixes in :func:`resolve_col`."""
    return list(graph_aliases(query))


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[sa.Select[Any]], sa.Select[Any]]:
    """Create a filter block that adds WHERE conditions to an association query.

    Usable both as a descriptor's ``conditions=`` option and as a per-call
    ``conditions={name: ...}`` entry.

    Example:
        >>> active_roles = add_conditions(roles.c.level > 3)
        >>> users = db.dataset(User).eager("roles", conditions={"roles": active_roles}).all()
    """

    def _add(query: sa.Select[Any]) -> sa.Select[Any]:
        return query.where(*conditions)

    return _add


def resolve_col(query: sa.Select[Any], ref: str) -> sa.ColumnElement[Any]:
    """Resolve ``'association.column'`` against the aliases of an eager-graph query.

    Raises:
        ValueError: If *ref* has no dot, or names an unknown alias or column.
    """
    alias_name, sep, column_name = ref.partition(".")
    if not sep:
        raise ValueError(f"Expected 'alias.column' format, got {ref!r}")

    aliases = graph_aliases(query)
    if alias_name not in aliases:
        raise ValueError(f"Alias {alias_name!r} not found in query. Available: {list(aliases)}")

    columns = aliases[alias_name].c
    if column_name not in columns:
        raise ValueError(
            f"Column {column_name!r} not found in alias {alias_name!r}. "
            f"Available: {list(columns.keys())}"
        )

    return columns[column_name]


def normalize_loads(*loads: LoadsArgument) -> LoadTree:
    """Normalise an eager-load request into a tree of frozendicts.

    Accepts association names, dotted paths, sequences and nested mappings::

        normalize_loads("author", "comments.reactions", {"tags": ["posts"]})
        # {"author": {}, "comments": {"reactions": {}}, "tags": {"posts": {}}}
    """
    tree: LoadTree = EMPTY_TREE
    for load in loads:
        tree = merge_trees(tree, _normalize_one(load))

    return tree


def _normalize_one(load: Any) -> LoadTree:
    if isinstance(load, str):
        head, _, rest = load.partition(".")
        if not head:
            raise ValueError(f"Invalid association path {load!r}")

        return frozendict({head: _normalize_one(rest) if rest else EMPTY_TREE})

    if isinstance(load, Mapping):
        tree: LoadTree = EMPTY_TREE
        for name, nested in load.items():
            child = normalize_loads(nested) if nested else EMPTY_TREE
            tree = merge_trees(tree, frozendict({name: child}))

        return tree

    if isinstance(load, Iterable):
        return normalize_loads(*load)

    raise TypeError(f"Cannot interpret {load!r} as an association load")


def merge_trees(left: LoadTree, right: LoadTree) -> LoadTree:
    """Deep-merge two request trees; nested requests for the same name are unioned."""
    if not left:
        return right

    merged = dict(left)
    for name, subtree in right.items():
        merged[name] = merge_trees(merged[name], subtree) if name in merged else subtree

    return frozendict(merged)


def key_getter(names: Sequence[str]) -> Callable[[Model], KeyTuple | None]:
    """Return a function reading the key tuple *names* from a record.

    The function yields ``None`` when any component is unset, so
    :func:`~sqla_associations.datastructures.build_key_index` drops the record.
    """

    def _get(record: Model) -> KeyTuple | None:
        key = tuple(record.get_value(name) for name in names)
        return None if any(part is None for part in key) else key

    return _get


def in_clause(
    columns: Sequence[sa.ColumnElement[Any]],
    keys: Collection[KeyTuple],
) -> sa.ColumnElement[bool]:
    """``column IN (...)`` for simple keys, ``(a, b) IN (...)`` for composite ones."""
    if len(columns) == 1:
        return columns[0].in_([key[0] for key in keys])

    return sa.tuple_(*columns).in_(list(keys))


def unique_records(records: Iterable[M]) -> list[M]:
    """Deduplicate *records* by identity, keeping first occurrences in order."""
    seen: set[int] = set()
    out: list[M] = []
    for record in records:
        if id(record) not in seen:
            seen.add(id(record))
            out.append(record)

    return out
