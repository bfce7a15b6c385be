from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, Protocol

import sqlalchemy as sa

from .datastructures import KeyIndex, KeyTuple, build_key_index
from .exceptions import ConfigurationError
from .tools import get_primary_key, in_clause, key_getter, unique_records


if TYPE_CHECKING:
    from .associations import AssociationDescriptor
    from .model import Database, Model

logger = logging.getLogger(__name__)

_ROW_NUMBER: Final[str] = "_assoc_rn"
_JOIN_KEY_PREFIX: Final[str] = "_assoc_jk"


class EagerLoader(Protocol):
    """Contract of a custom eager loader.

    It receives an :class:`EagerLoad` holding every owner of this call, must
    stage a value for each owner (owners it leaves alone keep the shape's empty
    value), and may return the newly associated records so nested requests can
    cascade. Returning ``None`` lets the planner derive them from staged values.
    """

    def __call__(self, load: EagerLoad, /) -> Iterable[Model] | None: ...


@dataclass(slots=True)
class EagerLoad:
    """One loader invocation: a set of owners in, staged association values out.

    Nothing is written to the records until :meth:`commit`, which the planner
    calls only after every query of the eager-load call has succeeded.
    """

    descriptor: AssociationDescriptor
    owners: Sequence[Model]
    db: Database | None
    conditions: Callable[[sa.Select[Any]], sa.Select[Any]] | None = None
    _staged: dict[tuple[int, str], tuple[Model, str, Any]] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.descriptor.name

    def run(self) -> list[Model]:
        return self.descriptor.loader(self)

    def set(self, record: Model, value: Any, name: str | None = None) -> None:
        """Stage *value* as the association *name* (default: this one) of *record*."""
        name = name or self.descriptor.name
        self._staged[(id(record), name)] = (record, name, value)

    def append(self, record: Model, value: Model, name: str | None = None) -> None:
        """Append *value* to the staged list of *record*, creating it if needed."""
        name = name or self.descriptor.name
        entry = self._staged.get((id(record), name))
        if entry is None or entry[2] is None:
            self.set(record, [value], name)
            return

        entry[2].append(value)

    def get(self, record: Model, name: str | None = None, default: Any = None) -> Any:
        entry = self._staged.get((id(record), name or self.descriptor.name))
        return default if entry is None else entry[2]

    def staged(self) -> Iterator[tuple[Model, str, Any]]:
        return iter(self._staged.values())

    def prime(self) -> None:
        """Give every owner the shape's empty value, so no owner stays unloaded."""
        for owner in self.owners:
            self.set(owner, self.descriptor.empty_value())

    def apply_conditions(self, query: sa.Select[Any]) -> sa.Select[Any]:
        """Apply the association's filter block, then the caller's one."""
        if self.descriptor.conditions is not None:
            query = self.descriptor.conditions(query)

        if self.conditions is not None:
            query = self.conditions(query)

        return query

    def fetch(self, query: sa.Select[Any]) -> Sequence[sa.RowMapping]:
        if self.db is None:
            raise ConfigurationError(
                f"Cannot load {self.descriptor.owner.__name__}.{self.name}: "
                "records are not bound to a database"
            )

        return self.db.fetch(query)

    def records(self, model: type[Model], query: sa.Select[Any]) -> list[Model]:
        return [model.from_row(row, self.db) for row in self.fetch(query)]

    def new_records(self) -> list[Model]:
        """Records staged under this association, flattened and deduplicated."""
        from .model import Model

        found: list[Model] = []
        for _, name, value in self._staged.values():
            if name != self.descriptor.name:
                continue
            if isinstance(value, Model):
                found.append(value)
            elif isinstance(value, list):
                found.extend(item for item in value if isinstance(item, Model))

        return unique_records(found)

    def commit(self) -> None:
        """Write staged values into the records' caches and run after-load hooks."""
        for record, name, value in self._staged.values():
            record._associations[name] = value  # noqa: SLF001

        for record, name, value in self._staged.values():
            if name == self.descriptor.name:
                run_after_load(self.descriptor, record, value)


def run_after_load(descriptor: AssociationDescriptor, record: Model, value: Any) -> None:
    for hook in descriptor.callbacks("after_load"):
        hook(record, value)


def apply_order(
    query: sa.Select[Any],
    table: sa.FromClause,
    order_by: Sequence[Any],
    default: Sequence[sa.ColumnElement[Any]] = (),
) -> sa.Select[Any]:
    columns = resolve_order(table, order_by) or list(default)
    return query.order_by(*columns) if columns else query


def resolve_order(table: sa.FromClause, order_by: Sequence[Any]) -> list[sa.ColumnElement[Any]]:
    """Order entries may be column names (``"-name"`` for descending) or expressions."""
    out: list[sa.ColumnElement[Any]] = []
    for entry in order_by:
        if isinstance(entry, str):
            column = table.c[entry.lstrip("-")]
            out.append(column.desc() if entry.startswith("-") else column)
        else:
            out.append(entry)

    return out


class AssociationLoader:
    """Default loader: one query for all owners, fanned out through a KeyIndex."""

    __slots__ = ()

    def __call__(self, load: EagerLoad) -> list[Model]:
        load.prime()
        index = build_key_index(load.owners, key_getter(load.descriptor.local_key_names))
        if not index:
            logger.debug("Skipping %r: no owner has a usable key", load.descriptor)
            return []

        logger.debug(
            "Loading %r for %d owners (%d keys)", load.descriptor, len(load.owners), len(index)
        )
        return self.load(load, index)

    def load(self, load: EagerLoad, index: KeyIndex[Model]) -> list[Model]:
        raise NotImplementedError

    @staticmethod
    def reciprocal(load: EagerLoad) -> AssociationDescriptor | None:
        from .node import find_reciprocal

        return find_reciprocal(load.descriptor)


class ManyToOneLoader(AssociationLoader):
    """Owner key -> target key. Owners sharing a key share the target instance."""

    __slots__ = ()

    def load(self, load: EagerLoad, index: KeyIndex[Model]) -> list[Model]:
        descriptor = load.descriptor
        target = descriptor.target_model
        table = target.__table__
        key_names = descriptor.target_key_names
        query = load.apply_conditions(
            sa.select(table).where(in_clause([table.c[name] for name in key_names], index))
        )

        reciprocal = self.reciprocal(load)
        found: list[Model] = []
        for row in load.fetch(query):
            owners = index.get_records(tuple(row[name] for name in key_names))
            if not owners:
                continue

            record = target.from_row(row, load.db)
            found.append(record)
            for owner in owners:
                load.set(owner, record)
                if reciprocal is not None and not reciprocal.returns_array:
                    load.set(record, owner, reciprocal.name)

        return found


class OneToManyLoader(AssociationLoader):
    """Owner key <- target foreign key; each owner gets an ordered list."""

    __slots__ = ()

    single: bool = False

    def load(self, load: EagerLoad, index: KeyIndex[Model]) -> list[Model]:
        descriptor = load.descriptor
        target = descriptor.target_model
        table = target.__table__
        key_columns = [table.c[name] for name in descriptor.target_key_names]
        query = load.apply_conditions(sa.select(table).where(in_clause(key_columns, index)))
        query = _order_or_limit(query, table, key_columns, descriptor)

        reciprocal = self.reciprocal(load)
        assigned: set[int] = set()
        found: list[Model] = []
        for row in load.fetch(query):
            key: KeyTuple = tuple(row[column.key] for column in key_columns)
            owners = [
                owner for owner in index.get_records(key) if not self.single or id(owner) not in assigned
            ]
            if not owners:
                continue

            record = target.from_row(row, load.db)
            found.append(record)
            for owner in owners:
                if self.single:
                    assigned.add(id(owner))
                    load.set(owner, record)
                else:
                    load.append(owner, record)
                if reciprocal is not None:
                    load.set(record, owner, reciprocal.name)

        return found


class OneToOneLoader(OneToManyLoader):
    """Like one_to_many, but each owner keeps only its first matching row."""

    __slots__ = ()

    single = True


class ManyToManyLoader(AssociationLoader):
    """Owner key -> join table -> target key, deduplicated per owner."""

    __slots__ = ()

    def load(self, load: EagerLoad, index: KeyIndex[Model]) -> list[Model]:
        descriptor = load.descriptor
        target = descriptor.target_model
        table = target.__table__
        join_table = descriptor.join_table
        assert join_table is not None

        onclause = sa.and_(
            *(
                join_table.c[join_key] == table.c[target_key]
                for join_key, target_key in zip(
                    descriptor.join_target_keys, descriptor.target_key_names
                )
            )
        )
        join_columns = [join_table.c[name] for name in descriptor.join_local_keys]
        labels = [f"{_JOIN_KEY_PREFIX}{i}" for i in range(len(join_columns))]
        query = (
            sa.select(table, *(column.label(label) for column, label in zip(join_columns, labels)))
            .select_from(table.join(join_table, onclause))
            .where(in_clause(join_columns, index))
        )
        query = load.apply_conditions(query)
        query = _order_or_limit(query, table, join_columns, descriptor, extra=labels)

        pk_names = [column.key for column in get_primary_key(target)]
        identity: dict[KeyTuple, Model] = {}
        linked: set[tuple[int, KeyTuple]] = set()
        for row in load.fetch(query):
            pk = tuple(row[name] for name in pk_names)
            for owner in index.get_records(tuple(row[label] for label in labels)):
                if (id(owner), pk) in linked:
                    continue

                linked.add((id(owner), pk))
                if pk not in identity:
                    identity[pk] = target.from_row(row, load.db)
                load.append(owner, identity[pk])

        return list(identity.values())


class CustomLoaderAdapter(AssociationLoader):
    """Runs a user-supplied :class:`EagerLoader` under the default loader contract."""

    __slots__ = ("strategy",)

    def __init__(self, strategy: EagerLoader) -> None:
        self.strategy = strategy

    def __call__(self, load: EagerLoad) -> list[Model]:
        load.prime()
        logger.debug("Running custom loader for %r on %d owners", load.descriptor, len(load.owners))
        result = self.strategy(load)

        return unique_records(result) if result is not None else load.new_records()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.strategy!r}>"


def _order_or_limit(
    query: sa.Select[Any],
    table: sa.Table,
    partition_by: Sequence[sa.ColumnElement[Any]],
    descriptor: AssociationDescriptor,
    *,
    extra: Sequence[str] = (),
) -> sa.Select[Any]:
    """Order a to-many query; with a ``limit``, keep the first N rows per owner.

    The per-owner limit numbers rows with ``ROW_NUMBER() OVER (PARTITION BY
    <owner key> ORDER BY ...)`` in a subquery and filters on it outside.
    """
    order = resolve_order(table, descriptor.order_by) or list(table.primary_key.columns)
    if descriptor.limit is None:
        return query.order_by(*order)

    row_number = sa.func.row_number().over(partition_by=partition_by, order_by=order)
    inner = query.add_columns(row_number.label(_ROW_NUMBER)).subquery()

    return (
        sa.select(*(inner.c[column.key] for column in table.c), *(inner.c[name] for name in extra))
        .where(inner.c[_ROW_NUMBER] <= descriptor.limit)
        .order_by(inner.c[_ROW_NUMBER])
    )
