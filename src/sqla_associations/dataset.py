from __future__ import annotations

import copy
import warnings
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import Executor
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import sqlalchemy as sa

from .core import EagerLoadPlanner
from .graph import GraphJoin, GraphJoinBuilder
from .loaders import resolve_order
from .node import Node
from .tools import EMPTY_TREE, LoadsArgument, LoadTree, merge_trees, normalize_loads, resolve_col


if TYPE_CHECKING:
    from .associations import JoinType
    from .model import Database, Model

M = TypeVar("M", bound="Model")


class Dataset(Generic[M]):
    """Immutable query over one model, with eager-load requests attached.

    Every refining method returns a new dataset::

        posts = (
            db.dataset(Post)
            .where(Post.title.like("Alice%"))
            .eager("author", "comments.reactions")
            .all()
        )

    ``eager`` resolves associations with one extra query per association and
    depth level; ``eager_graph`` folds them into the main query with joins, so
    ``where``/``order_by`` can reference related columns through
    :meth:`graph_col`.
    """

    __slots__ = (
        "_conditions",
        "_eager",
        "_executor",
        "_graph",
        "_graph_tree",
        "_join_type",
        "_limit",
        "_offset",
        "_order_by",
        "_where",
        "db",
        "model",
        "node",
    )

    def __init__(self, model: type[M], db: Database, *, node: Node | None = None) -> None:
        self.model = model
        self.db = db
        self.node = node
        self._where: tuple[sa.ColumnElement[bool], ...] = ()
        self._order_by: tuple[sa.ColumnElement[Any], ...] = ()
        self._limit: int | None = None
        self._offset: int | None = None
        self._eager: LoadTree = EMPTY_TREE
        self._conditions: dict[str, Callable[[sa.Select[Any]], sa.Select[Any]]] = {}
        self._executor: Executor | None = None
        self._graph: GraphJoin | None = None
        self._graph_tree: LoadTree = EMPTY_TREE
        self._join_type: JoinType | None = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.model.__name__} eager={dict(self._eager)!r}>"

    def _clone(self, **changes: Any) -> Dataset[M]:
        clone = copy.copy(self)
        for name, value in changes.items():
            setattr(clone, name, value)

        return clone

    def _node(self) -> Node:
        return self.node if self.node is not None else Node()

    def where(self, *clauses: sa.ColumnExpressionArgument[bool]) -> Dataset[M]:
        return self._clone(_where=(*self._where, *clauses))

    def order_by(self, *clauses: Any) -> Dataset[M]:
        """Order by expressions or column names of the model (``"-name"`` descends)."""
        columns = resolve_order(self.model.__table__, clauses)
        return self._clone(_order_by=(*self._order_by, *columns))

    def limit(self, limit: int | None, offset: int | None = None) -> Dataset[M]:
        return self._clone(_limit=limit, _offset=offset)

    def with_executor(self, executor: Executor | None) -> Dataset[M]:
        """Load sibling associations concurrently on *executor*."""
        return self._clone(_executor=executor)

    def eager(
        self,
        *loads: LoadsArgument,
        conditions: Mapping[str, Callable[[sa.Select[Any]], sa.Select[Any]]] | None = None,
    ) -> Dataset[M]:
        """Request associations to be loaded after the main query.

        Args:
            *loads: Association names, dotted paths or nested mappings.
            conditions: Filter blocks keyed by association name or dotted path.

        Raises:
            ConfigurationError: If any requested association is not declared.
        """
        tree = normalize_loads(*loads)
        EagerLoadPlanner(None, node=self._node()).validate(self.model, tree)

        return self._clone(
            _eager=merge_trees(self._eager, tree),
            _conditions={**self._conditions, **(conditions or {})},
        )

    def eager_graph(self, *loads: LoadsArgument, join_type: JoinType | None = None) -> Dataset[M]:
        """Join associations into the main query and rebuild them from its rows.

        An ``inner`` join (per call or per association) drops owners without
        matches from the result, unlike :meth:`eager`, which never drops owners.
        """
        tree = merge_trees(self._graph_tree, normalize_loads(*loads))
        join_type = join_type or self._join_type
        graph = GraphJoinBuilder(self.model, node=self._node(), join_type=join_type).build(tree)

        return self._clone(_graph=graph, _graph_tree=tree, _join_type=join_type)

    @property
    def graph(self) -> GraphJoin | None:
        return self._graph

    def graph_col(self, ref: str) -> sa.ColumnElement[Any]:
        """Column ``'alias.column'`` of an eager-graph join, for ``where``/``order_by``."""
        return resolve_col(self.query, ref)

    @property
    def query(self) -> sa.Select[Any]:
        query = self._graph.select() if self._graph is not None else sa.select(self.model.__table__)
        query = query.where(*self._where).order_by(*self._order_by)
        if self._limit is not None:
            query = query.limit(self._limit)
        if self._offset is not None:
            query = query.offset(self._offset)

        return query

    def all(self) -> list[M]:
        """Run the query and load every requested association."""
        records: list[M]
        if self._graph is not None:
            if self._limit is not None:
                warnings.warn(
                    "limit on an eager_graph dataset limits joined rows, not owners",
                    stacklevel=2,
                )
            records = self._graph.load(self.db.fetch_rows(self.query), self.db)  # type: ignore[assignment]
        else:
            records = self.db.records(self.model, self.query)

        if self._eager:
            EagerLoadPlanner(
                self.db,
                node=self._node(),
                conditions=self._conditions,
                executor=self._executor,
            ).load(records, self._eager)

        return records

    def first(self) -> M | None:
        dataset = self if self._graph is not None else self._clone(_limit=1)
        return next(iter(dataset.all()), None)

    def __iter__(self) -> Iterator[M]:
        return iter(self.all())
