from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, NamedTuple

import sqlalchemy as sa
from sqlalchemy.sql.util import ClauseAdapter

from .datastructures import KeyTuple
from .exceptions import ConfigurationError
from .loaders import run_after_load
from .node import Node, find_reciprocal
from .tools import LoadTree, get_primary_key, get_table_name


if TYPE_CHECKING:
    from .associations import AssociationDescriptor, JoinType
    from .model import Database, Model

logger = logging.getLogger(__name__)

DEFAULT_JOIN_TYPE: Final[JoinType] = "left"
_JOIN_TYPES: Final[frozenset[str]] = frozenset({"inner", "left", "right", "full", "cross", "natural"})


class JoinClause(NamedTuple):
    """One join of a graph query, as passed to ``graph_block`` callbacks."""

    alias: str
    table: sa.FromClause
    join_type: str
    onclause: sa.ColumnElement[bool]


@dataclass(slots=True, eq=False)
class _Hop:
    alias: str
    table: sa.FromClause
    model: type[Model]
    descriptor: AssociationDescriptor | None = None
    children: list[_Hop] = field(default_factory=list)
    start: int = 0

    @property
    def keys(self) -> list[str]:
        return [column.key for column in self.model.__table__.c]

    @property
    def pk_keys(self) -> list[str]:
        return [column.key for column in get_primary_key(self.model)]

    def walk(self) -> list[_Hop]:
        hops = [self]
        for child in self.children:
            hops.extend(child.walk())

        return hops


class GraphJoin:
    """A single joined query over several association hops and its row splitter.

    Every hop's columns are selected as ``<alias>__<column>``; after execution
    each row is split by hop and the object tree is rebuilt into the same
    association caches the per-query loaders fill. Repeated owner rows coming
    from one-to-many fan-out collapse onto one record per primary key.
    """

    __slots__ = ("columns", "from_clause", "joins", "root")

    def __init__(
        self,
        root: _Hop,
        from_clause: sa.FromClause,
        joins: Sequence[JoinClause],
    ) -> None:
        self.root = root
        self.from_clause = from_clause
        self.joins = tuple(joins)
        self.columns: list[sa.Label[Any]] = []

        offset = 0
        for hop in root.walk():
            hop.start = offset
            self.columns.extend(
                hop.table.c[key].label(f"{hop.alias}__{key}") for key in hop.keys
            )
            offset += len(hop.keys)

    @property
    def aliases(self) -> Mapping[str, sa.FromClause]:
        out: dict[str, sa.FromClause] = {self.root.alias: self.root.table}
        out.update((join.alias, join.table) for join in self.joins)

        return out

    def alias(self, name: str) -> sa.FromClause:
        try:
            return self.aliases[name]
        except KeyError:
            raise ValueError(
                f"Alias {name!r} not found in graph. Available: {list(self.aliases)}"
            ) from None

    def select(self) -> sa.Select[Any]:
        return sa.select(*self.columns).select_from(self.from_clause)

    def load(self, rows: Sequence[sa.Row[Any]], db: Database | None) -> list[Model]:
        """Rebuild root records (with populated caches) from joined *rows*."""
        state = _GraphState(db)
        roots: dict[KeyTuple, Model] = {}

        for row in rows:
            values = tuple(row)
            root = state.materialize(self.root, values)
            if root is None:
                continue

            roots.setdefault(root.pk_tuple(), root)
            state.descend(self.root, root, values)

        state.finish()
        logger.debug("Graph rebuilt %d root records from %d rows", len(roots), len(rows))

        return list(roots.values())


class _GraphState:
    __slots__ = ("db", "identity", "linked", "materialized")

    def __init__(self, db: Database | None) -> None:
        self.db = db
        self.identity: dict[int, dict[KeyTuple, Model]] = {}
        self.linked: set[tuple[int, int, int]] = set()
        self.materialized: list[tuple[_Hop, Model]] = []

    def materialize(self, hop: _Hop, values: tuple[Any, ...]) -> Model | None:
        keys = hop.keys
        mapping = dict(zip(keys, values[hop.start : hop.start + len(keys)]))
        pk = tuple(mapping[key] for key in hop.pk_keys)
        if any(part is None for part in pk):
            return None

        records = self.identity.setdefault(id(hop), {})
        record = records.get(pk)
        if record is None:
            record = hop.model.from_row(mapping, self.db)
            for child in hop.children:
                assert child.descriptor is not None
                record._associations[child.descriptor.name] = child.descriptor.empty_value()  # noqa: SLF001
            records[pk] = record
            self.materialized.append((hop, record))

        return record

    def descend(self, hop: _Hop, record: Model, values: tuple[Any, ...]) -> None:
        for child in hop.children:
            target = self.materialize(child, values)
            if target is None:
                continue

            descriptor = child.descriptor
            assert descriptor is not None
            link = (id(child), id(record), id(target))
            if link not in self.linked:
                self.linked.add(link)
                cache = record._associations  # noqa: SLF001
                if descriptor.returns_array:
                    cache[descriptor.name].append(target)
                elif cache.get(descriptor.name) is None:
                    cache[descriptor.name] = target

                reciprocal = find_reciprocal(descriptor)
                if reciprocal is not None and descriptor.shape.keys_on_target:
                    target._associations[reciprocal.name] = record  # noqa: SLF001

            self.descend(child, target, values)

    def finish(self) -> None:
        for hop, record in self.materialized:
            for child in hop.children:
                assert child.descriptor is not None
                run_after_load(
                    child.descriptor,
                    record,
                    record._associations[child.descriptor.name],  # noqa: SLF001
                )


class GraphJoinBuilder:
    """Builds a :class:`GraphJoin` for a request tree rooted at *model*.

    Join conditions per association come from, in order of precedence:

    * ``graph_only_conditions`` – column names for a ``USING``-style join, or a
      ``{target_column: owner_column}`` mapping; replaces the key equality;
    * the key equality plus the association's filter block and literal
      ``graph_conditions``;
    * ``graph_block(alias, previous_alias, joins)`` – ANDed to either of the
      above, for non-equality or ``OR`` conditions.

    ``cross`` joins use no condition and ``natural`` joins equate all columns
    the two tables have in common. Each association picks its own join type
    (``graph_join_type``), falling back to the builder's, then to ``left``.
    """

    __slots__ = ("_aliases", "_from", "_joins", "join_type", "model", "node")

    def __init__(
        self,
        model: type[Model],
        *,
        node: Node | None = None,
        join_type: JoinType | None = None,
    ) -> None:
        if join_type is not None and join_type not in _JOIN_TYPES:
            raise ConfigurationError(f"Unknown join type {join_type!r}")

        self.model = model
        self.node = node if node is not None else Node()
        self.join_type = join_type
        self._aliases: set[str] = set()
        self._joins: list[JoinClause] = []
        self._from: sa.FromClause = model.__table__

    def build(self, tree: LoadTree) -> GraphJoin:
        root = _Hop(get_table_name(self.model), self.model.__table__, self.model)
        self._aliases = {root.alias}
        self._joins = []
        self._from = self.model.__table__

        self._add_children(root, tree)

        return GraphJoin(root, self._from, self._joins)

    def _add_children(self, parent: _Hop, tree: LoadTree) -> None:
        for name, subtree in tree.items():
            descriptor = self.node.lookup(parent.model, name)
            if descriptor.is_custom or descriptor.dataset is not None or descriptor.target is None:
                raise ConfigurationError(
                    f"{descriptor!r} uses custom loading and cannot be eager-graphed"
                )

            hop = self._join_association(parent, descriptor)
            parent.children.append(hop)
            self._add_children(hop, subtree)

    def _join_association(self, parent: _Hop, descriptor: AssociationDescriptor) -> _Hop:
        target = descriptor.target_model
        alias_name = self._unique_alias(descriptor.graph_alias or descriptor.name)
        alias = target.__table__.alias(alias_name)
        join_type = descriptor.graph_join_type or self.join_type or DEFAULT_JOIN_TYPE
        if join_type not in _JOIN_TYPES:
            raise ConfigurationError(f"{descriptor!r}: unknown join type {join_type!r}")

        previous = parent.table
        left_keys = descriptor.local_key_names
        if descriptor.join_table is not None:
            join_alias_name = self._unique_alias(f"{alias_name}_{descriptor.join_table.name}")
            join_alias = descriptor.join_table.alias(join_alias_name)
            self._join(
                join_alias_name,
                join_alias,
                "left" if join_type in ("cross", "natural") else join_type,
                _equalities(join_alias, descriptor.join_local_keys, previous, left_keys),
            )
            previous, left_keys = join_alias, descriptor.join_target_keys

        onclause = self._onclause(descriptor, alias, previous, left_keys, join_type)
        self._join(alias_name, alias, join_type, onclause)

        return _Hop(alias_name, alias, target, descriptor)

    def _onclause(
        self,
        descriptor: AssociationDescriptor,
        alias: sa.FromClause,
        previous: sa.FromClause,
        left_keys: Sequence[str],
        join_type: str,
    ) -> sa.ColumnElement[bool]:
        clauses: list[sa.ColumnElement[bool]] = []
        only = descriptor.graph_only_conditions

        if join_type == "natural":
            common = [column.key for column in alias.c if column.key in previous.c]
            clauses.append(_equalities(alias, common, previous, common))
        elif join_type == "cross":
            pass
        elif only is not None:
            if isinstance(only, str):
                only = (only,)
            if isinstance(only, Mapping):
                clauses.append(_equalities(alias, list(only), previous, list(only.values())))
            else:
                clauses.append(_equalities(alias, only, previous, only))
        else:
            clauses.append(
                _equalities(alias, descriptor.target_key_names, previous, left_keys)
            )
            clauses.extend(
                alias.c[key] == value for key, value in descriptor.graph_conditions.items()
            )
            table = descriptor.target_model.__table__
            if descriptor.conditions is not None:
                clause = descriptor.conditions(sa.select(table)).whereclause
                if clause is not None:
                    adapter = ClauseAdapter(
                        alias, equivalents={col: {alias.c[col.key]} for col in table.c}
                    )
                    clauses.append(adapter.traverse(clause))

        if descriptor.graph_block is not None:
            clauses.append(descriptor.graph_block(alias, previous, tuple(self._joins)))

        return sa.and_(*clauses) if clauses else sa.true()

    def _join(
        self,
        alias_name: str,
        alias: sa.FromClause,
        join_type: str,
        onclause: sa.ColumnElement[bool],
    ) -> None:
        if join_type == "right":
            # A RIGHT JOIN B == B LEFT JOIN A
            self._from = sa.join(alias, self._from, onclause, isouter=True)
        elif join_type == "full":
            self._from = self._from.join(alias, onclause, full=True)
        elif join_type == "left":
            self._from = self._from.outerjoin(alias, onclause)
        else:
            self._from = self._from.join(alias, onclause)

        self._joins.append(JoinClause(alias_name, alias, join_type, onclause))

    def _unique_alias(self, base: str) -> str:
        name, index = base, 0
        while name in self._aliases:
            name = f"{base}_{index}"
            index += 1

        self._aliases.add(name)

        return name


def _equalities(
    left: sa.FromClause,
    left_keys: Sequence[str],
    right: sa.FromClause,
    right_keys: Sequence[str],
) -> sa.ColumnElement[bool]:
    clauses = [left.c[lk] == right.c[rk] for lk, rk in zip(left_keys, right_keys)]
    return sa.and_(*clauses) if clauses else sa.true()
