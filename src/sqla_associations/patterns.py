"""Custom eager loaders for relationships the default shapes cannot express.

Each loader honours the :class:`~sqla_associations.loaders.EagerLoader`
contract, so it works for eager loading, lazy loading (a single owner) and
cascading nested requests alike:

* :class:`PolymorphicLoader` – to-one whose target type comes from a
  discriminator column; one query per distinct target type.
* :class:`AncestorsLoader` / :class:`DescendantsLoader` – self-referential
  trees, one query per generation.
* :class:`MultiKeyLoader` – to-many matched through any of several key
  columns, optionally through an intermediate table.
* :class:`AggregateLoader` – a read-only scalar computed with ``GROUP BY``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa

from .associations import AssociationProperty, Shape, association, many_to_one, one_to_many
from .datastructures import KeyTuple, build_key_index
from .exceptions import ConfigurationError, UnresolvableTargetError
from .tools import find_model, find_self_key, get_primary_key, in_clause, key_getter


if TYPE_CHECKING:
    from .loaders import EagerLoad
    from .model import Model

logger = logging.getLogger(__name__)

M = TypeVar("M", bound="Model")


class PolymorphicLoader:
    """Resolve a to-one association whose target type varies per owner.

    Owners are grouped by their ``discriminator`` value, which must be a key of
    ``types``; each group is loaded with one query against that type's primary
    key. Owners with a null discriminator or key resolve to ``None``.
    """

    __slots__ = ("discriminator", "keys", "types")

    def __init__(
        self,
        *,
        discriminator: str,
        key: str | Sequence[str],
        types: Mapping[str, type[Model] | str],
    ) -> None:
        self.discriminator = discriminator
        self.keys = (key,) if isinstance(key, str) else tuple(key)
        self.types = dict(types)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.discriminator} -> {sorted(self.types)}>"

    def resolve(self, kind: str, owner: type[Model]) -> type[Model]:
        """Map a discriminator value to its model class.

        Raises:
            UnresolvableTargetError: If *kind* has no registered target.
        """
        try:
            target = self.types[kind]
        except KeyError:
            raise UnresolvableTargetError(
                f"{owner.__name__}.{self.discriminator}={kind!r} names no known target type"
            ) from None

        if isinstance(target, str):
            try:
                return find_model(owner, target)
            except KeyError:
                raise UnresolvableTargetError(
                    f"{owner.__name__}: polymorphic target {target!r} is not registered"
                ) from None

        return target

    def __call__(self, load: EagerLoad) -> list[Model]:
        groups: dict[str, list[Model]] = {}
        for owner in load.owners:
            kind = owner.get_value(self.discriminator)
            if kind is not None:
                groups.setdefault(kind, []).append(owner)

        targets = {kind: self.resolve(kind, load.descriptor.owner) for kind in groups}

        found: list[Model] = []
        for kind, owners in groups.items():
            target = targets[kind]
            index = build_key_index(owners, key_getter(self.keys))
            if not index:
                continue

            pk_columns = get_primary_key(target)
            query = load.apply_conditions(
                sa.select(target.__table__).where(in_clause(pk_columns, index))
            )
            logger.debug("Polymorphic %r: loading %d %s keys", load.descriptor, len(index), kind)
            for row in load.fetch(query):
                record = target.from_row(row, load.db)
                found.append(record)
                for owner in index.get_records(tuple(row[column.key] for column in pk_columns)):
                    load.set(owner, record)

        return found

    def assign(self, record: Model, other: Model | None) -> None:
        """Setter: point *record* at *other*, updating discriminator and key."""
        if other is None:
            record.set_value(self.discriminator, None)
            for key in self.keys:
                record.set_value(key, None)
            return

        kind = next(
            (
                kind
                for kind, target in self.types.items()
                if target is type(other) or target == type(other).__name__
            ),
            None,
        )
        if kind is None:
            raise UnresolvableTargetError(
                f"{type(other).__name__} is not a polymorphic target of {type(record).__name__}"
            )

        record.set_value(self.discriminator, kind)
        for key, value in zip(self.keys, other.pk_tuple()):
            record.set_value(key, value)


def polymorphic_many_to_one(
    *,
    discriminator: str,
    key: str | Sequence[str],
    types: Mapping[str, type[Model] | str],
    **options: Any,
) -> Any:
    """Declare a polymorphic to-one association (``attachable_type``/``attachable_id``)."""
    loader = PolymorphicLoader(discriminator=discriminator, key=key, types=types)
    return many_to_one(None, key=key, eager_loader=loader, setter=loader.assign, **options)


def _single_pk(model: type[Model]) -> sa.Column[Any]:
    columns = get_primary_key(model)
    if len(columns) != 1:
        raise ConfigurationError(f"{model.__name__}: tree associations need a single-column key")

    return columns[0]


class AncestorsLoader:
    """Load every ancestor of each owner, one generation per query.

    Fills the ancestors list (nearest parent first) and the ``parent`` cache of
    each owner and each fetched ancestor. A node whose parent key is null or
    equal to its own key is a root: it gets ``parent = None`` and is never used
    as a lookup key, so the walk ends once no non-root node is left.

    Nested requests run on every node placed in an ancestors list, owners
    included when they are ancestors of another owner.
    """

    __slots__ = ("key", "parent")

    def __init__(self, key: str, *, parent: str = "parent") -> None:
        self.key = key
        self.parent = parent

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.key}>"

    def _parent_key(self, node: Model) -> Any:
        value = node.get_value(self.key)
        return None if value is None or value == node.pk else value

    def __call__(self, load: EagerLoad) -> list[Model]:
        model = load.descriptor.owner
        pk = _single_pk(model)
        known: dict[Any, Model] = {}
        for owner in load.owners:
            known.setdefault(owner.pk, owner)

        fetched: list[Model] = []
        frontier: Iterable[Model] = load.owners
        while wanted := {self._parent_key(node) for node in frontier} - {None, *known}:
            query = load.apply_conditions(
                sa.select(model.__table__).where(pk.in_(sorted(wanted)))
            )
            frontier = [model.from_row(row, load.db) for row in load.fetch(query)]
            for node in frontier:
                known.setdefault(node.pk, node)
            fetched.extend(frontier)

        for node in (*load.owners, *fetched):
            key = self._parent_key(node)
            load.set(node, known.get(key) if key is not None else None, self.parent)

        for owner in load.owners:
            chain: list[Model] = []
            seen = {owner.pk}
            key = self._parent_key(owner)
            while key is not None and key in known and key not in seen:
                seen.add(key)
                chain.append(known[key])
                key = self._parent_key(known[key])
            load.set(owner, chain)

        return load.new_records()


class DescendantsLoader:
    """Load every descendant of each owner, one generation per query.

    Each query asks for children of the previous generation while excluding
    rows whose parent key equals their own key, so a self-parented root never
    feeds itself back into the next query. Keys already expanded are never
    queried again, so the walk strictly shrinks and stops.

    Nested requests run on every node placed in a descendants list.
    """

    __slots__ = ("children", "key", "parent")

    def __init__(self, key: str, *, children: str = "children", parent: str = "parent") -> None:
        self.key = key
        self.children = children
        self.parent = parent

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.key}>"

    def __call__(self, load: EagerLoad) -> list[Model]:
        model = load.descriptor.owner
        pk = _single_pk(model)
        parent_column = model.__table__.c[self.key]
        known: dict[Any, Model] = {}
        for owner in load.owners:
            known.setdefault(owner.pk, owner)

        children_of: dict[Any, list[Model]] = {}
        expanded: set[Any] = set()
        frontier = [key for key in known if key is not None]

        while frontier:
            expanded.update(frontier)
            query = load.apply_conditions(
                sa.select(model.__table__)
                .where(parent_column.in_(frontier), parent_column != pk)
                .order_by(pk)
            )
            frontier = []
            for row in load.fetch(query):
                record = known.get(row[pk.key])
                if record is None:
                    record = model.from_row(row, load.db)
                    known[record.pk] = record

                siblings = children_of.setdefault(row[self.key], [])
                if not any(child is record for child in siblings):
                    siblings.append(record)
                if record.pk not in expanded:
                    frontier.append(record.pk)

        for key, node in known.items():
            load.set(node, children_of.get(key, []), self.children)
        for parent_key, children in children_of.items():
            for child in children:
                load.set(child, known[parent_key], self.parent)

        for owner in load.owners:
            load.set(owner, self._flatten(owner.pk, children_of))

        return load.new_records()

    @staticmethod
    def _flatten(root: Any, children_of: Mapping[Any, list[Model]]) -> list[Model]:
        out: list[Model] = []
        seen = {root}
        stack = list(reversed(children_of.get(root, [])))
        while stack:
            node = stack.pop()
            if node.pk in seen:
                continue
            seen.add(node.pk)
            out.append(node)
            stack.extend(reversed(children_of.get(node.pk, [])))

        return out


def tree_associations(
    cls: type[M] | None = None,
    *,
    key: str | None = None,
    parent: str = "parent",
    children: str = "children",
    ancestors: str = "ancestors",
    descendants: str = "descendants",
    **options: Any,
) -> Any:
    """Class decorator declaring ``parent``/``children``/``ancestors``/``descendants``.

    The self-referential key is auto-detected from the table's foreign keys
    unless given. ``ancestors`` and ``descendants`` are read-only and also
    fill the ``parent``/``children`` caches of every node they load::

        @tree_associations
        class Category(Base):
            __tablename__ = "categories"
            ...
    """

    def decorate(model: type[M]) -> type[M]:
        self_key = key or find_self_key(model)
        if not self_key:
            raise ConfigurationError(f"{model.__name__} has no self-referential foreign key")
        _single_pk(model)

        declarations: dict[str, AssociationProperty] = {
            parent: many_to_one(model, key=self_key, **options),
            children: one_to_many(model, key=self_key, **options),
            ancestors: association(
                Shape.ONE_TO_MANY,
                model,
                key=self_key,
                read_only=True,
                eager_loader=AncestorsLoader(self_key, parent=parent),
            ),
            descendants: association(
                Shape.ONE_TO_MANY,
                model,
                key=self_key,
                read_only=True,
                eager_loader=DescendantsLoader(self_key, children=children, parent=parent),
            ),
        }
        for name, declaration in declarations.items():
            if name in model.__dict__:
                continue
            setattr(model, name, declaration)
            declaration.__set_name__(model, name)

        return model

    return decorate(cls) if cls is not None else decorate


class MultiKeyLoader:
    """To-many association matched through any of several key columns.

    Rows are selected with ``key_1 IN (...) OR key_2 IN (...) ...`` against the
    owners' keys; a row matching one owner through several columns is linked to
    it only once. With ``through`` the key columns live on an intermediate
    table joined to the target on ``through_key``.
    """

    __slots__ = ("keys", "through", "through_key")

    def __init__(
        self,
        keys: Sequence[str],
        *,
        through: sa.Table | None = None,
        through_key: str | None = None,
    ) -> None:
        if through is not None and through_key is None:
            raise ConfigurationError("MultiKeyLoader needs through_key with a through table")

        self.keys = tuple(keys)
        self.through = through
        self.through_key = through_key

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.keys}>"

    def __call__(self, load: EagerLoad) -> list[Model]:
        descriptor = load.descriptor
        index = build_key_index(load.owners, key_getter(descriptor.local_key_names))
        if not index:
            return []

        target = descriptor.target_model
        table = target.__table__
        pk_columns = get_primary_key(target)
        if self.through is None:
            key_columns = [table.c[name] for name in self.keys]
            labels = [column.key for column in key_columns]
            query = sa.select(table)
        else:
            assert self.through_key is not None
            key_columns = [self.through.c[name] for name in self.keys]
            labels = [f"_assoc_mk{i}" for i in range(len(key_columns))]
            query = sa.select(
                table, *(column.label(label) for column, label in zip(key_columns, labels))
            ).select_from(table.join(self.through, self.through.c[self.through_key] == pk_columns[0]))

        values = [key[0] for key in index]
        query = query.where(sa.or_(*(column.in_(values) for column in key_columns)))
        query = load.apply_conditions(query).order_by(*pk_columns)

        identity: dict[KeyTuple, Model] = {}
        linked: set[tuple[int, KeyTuple]] = set()
        for row in load.fetch(query):
            pk = tuple(row[column.key] for column in pk_columns)
            record = identity.get(pk)
            if record is None:
                record = identity[pk] = target.from_row(row, load.db)

            for label in labels:
                for owner in index.get_records((row[label],)):
                    if (id(owner), pk) not in linked:
                        linked.add((id(owner), pk))
                        load.append(owner, record)

        return list(identity.values())


def multi_key_many(
    target: type[Model] | str,
    keys: Sequence[str],
    *,
    through: sa.Table | None = None,
    through_key: str | None = None,
    **options: Any,
) -> Any:
    """Declare a read-only to-many association matched through any of *keys*."""
    return one_to_many(
        target,
        key=keys[0],
        read_only=True,
        eager_loader=MultiKeyLoader(keys, through=through, through_key=through_key),
        **options,
    )


class AggregateLoader:
    """Read-only scalar association: ``SELECT key, f(...) ... GROUP BY key``.

    Owners without rows get ``default`` (``0`` for counts).
    """

    __slots__ = ("column", "default", "function", "key")

    def __init__(
        self,
        key: str,
        *,
        function: Callable[..., sa.ColumnElement[Any]] = sa.func.count,
        column: str | None = None,
        default: Any = 0,
    ) -> None:
        self.key = key
        self.function = function
        self.column = column
        self.default = default

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.key}>"

    def __call__(self, load: EagerLoad) -> list[Model]:
        for owner in load.owners:
            load.set(owner, self.default)

        index = build_key_index(load.owners, key_getter(load.descriptor.local_key_names))
        if not index:
            return []

        table = load.descriptor.target_model.__table__
        key_column = table.c[self.key]
        value = (
            self.function(table.c[self.column]) if self.column is not None else self.function()
        )
        query = (
            sa.select(key_column, value.label("value"))
            .where(key_column.in_([key[0] for key in index]))
            .group_by(key_column)
        )
        for row in load.fetch(load.apply_conditions(query)):
            for owner in index.get_records((row[key_column.key],)):
                load.set(owner, row["value"] if row["value"] is not None else self.default)

        return []


def aggregate(
    target: type[Model] | str,
    key: str,
    *,
    function: Callable[..., sa.ColumnElement[Any]] = sa.func.count,
    column: str | None = None,
    default: Any = 0,
    **options: Any,
) -> Any:
    """Declare a read-only scalar computed over the target rows keyed by *key*.

    Example:
        >>> comment_count = aggregate("Comment", "post_id")
        >>> total_level = aggregate("Role", "user_id", function=sa.func.sum, column="level")
    """
    return association(
        Shape.ONE_TO_ONE,
        target,
        key=key,
        read_only=True,
        eager_loader=AggregateLoader(key, function=function, column=column, default=default),
        **options,
    )
