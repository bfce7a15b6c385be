from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import Executor, wait
from typing import TYPE_CHECKING, Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import TypedDict, Unpack
else:
    from typing_extensions import TypedDict, Unpack

import sqlalchemy as sa

from .datastructures import frozendict
from .exceptions import ConfigurationError
from .loaders import EagerLoad, run_after_load
from .node import Node
from .tools import EMPTY_TREE, LoadsArgument, LoadTree, normalize_loads


if TYPE_CHECKING:
    from .associations import AssociationDescriptor
    from .model import Database, Model

logger = logging.getLogger(__name__)

M = TypeVar("M", bound="Model")
Conditions = Mapping[str, Callable[[sa.Select[Any]], sa.Select[Any]]]


class _EagerParamsType(TypedDict, total=False):
    loads: LoadsArgument
    conditions: Conditions
    node: Node
    executor: Executor | None
    db: Database | None


class EagerLoadPlanner:
    """Walks an eager-load request tree level by level.

    At each level every requested association name is resolved once (custom
    loader first, default loader otherwise) and loaded for the whole owner set
    with a single loader call. The records it returns become the owners of the
    nested request, so the number of queries is bounded by the number of
    association names times the depth of the tree, never by the number of
    records.

    Loaders only stage their results; the planner commits every staged value
    after the last level succeeded, so a failing query leaves all caches as
    they were.

    Sibling associations touch disjoint cache slots. With an ``executor`` they
    are loaded concurrently, and a level is fully loaded before any of its
    nested requests start.
    """

    __slots__ = ("conditions", "db", "executor", "node")

    def __init__(
        self,
        db: Database | None,
        *,
        node: Node | None = None,
        conditions: Conditions | None = None,
        executor: Executor | None = None,
    ) -> None:
        if executor is not None and db is not None and not db.supports_threads:
            raise ConfigurationError(
                "Concurrent sibling loading needs a Database bound to an Engine"
            )

        self.db = db
        self.node = node if node is not None else Node()
        self.conditions = conditions or frozendict()
        self.executor = executor

    def validate(self, model: type[Model], tree: LoadTree) -> None:
        """Check every name of *tree* against the registry, following fixed targets."""
        for name, subtree in tree.items():
            descriptor = self.node.lookup(model, name)
            if subtree and descriptor.target is not None:
                self.validate(descriptor.target_model, subtree)

    def load(self, records: Iterable[Model], tree: LoadTree) -> None:
        """Populate the caches of *records* for every association in *tree*."""
        owners = list(records)
        if not owners or not tree:
            return

        loads: list[EagerLoad] = []
        self._load_level(owners, tree, "", loads)

        for load in loads:
            load.commit()

    def _load_level(
        self,
        owners: Sequence[Model],
        tree: LoadTree,
        path: str,
        loads: list[EagerLoad],
    ) -> None:
        tasks: list[tuple[EagerLoad, LoadTree]] = []
        for model, group in _group_by_model(owners).items():
            for name, subtree in tree.items():
                descriptor = self._eager_descriptor(model, name)
                load = EagerLoad(
                    descriptor, group, self.db, conditions=self._conditions_for(path, name)
                )
                tasks.append((load, subtree))

        logger.debug(
            "Eager level %r: %d owners, %d association loads",
            path or "<root>",
            len(owners),
            len(tasks),
        )
        results = self._run([load for load, _ in tasks])

        for (load, subtree), found in zip(tasks, results):
            loads.append(load)
            if subtree and found:
                self._load_level(found, subtree, _join_path(path, load.name), loads)

    def _run(self, loads: Sequence[EagerLoad]) -> list[list[Model]]:
        if self.executor is None or len(loads) < 2:  # noqa: PLR2004
            return [load.run() for load in loads]

        futures = [self.executor.submit(load.run) for load in loads]
        wait(futures)

        return [future.result() for future in futures]

    def _eager_descriptor(self, model: type[Model], name: str) -> AssociationDescriptor:
        descriptor = self.node.lookup(model, name)
        if descriptor.dataset is not None and not descriptor.is_custom:
            raise ConfigurationError(
                f"{descriptor!r} uses a custom dataset and cannot be eager loaded "
                "without an eager_loader"
            )

        return descriptor

    def _conditions_for(
        self, path: str, name: str
    ) -> Callable[[sa.Select[Any]], sa.Select[Any]] | None:
        return self.conditions.get(_join_path(path, name)) or self.conditions.get(name)


def _join_path(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


def _group_by_model(records: Sequence[Model]) -> dict[type[Model], list[Model]]:
    groups: dict[type[Model], list[Model]] = {}
    for record in records:
        groups.setdefault(type(record), []).append(record)

    return groups


def as_tree(loads: LoadsArgument | LoadTree) -> LoadTree:
    if isinstance(loads, frozendict):
        return loads

    return normalize_loads(loads) if loads else EMPTY_TREE


def eager_load(records: Iterable[M], **params: Unpack[_EagerParamsType]) -> list[M]:
    """Eager load associations for records that were already fetched.

    Args:
        records: Owner records; they are returned as a list.
        loads: Association names, dotted paths or nested mappings to load.
        conditions: Mapping of association names (or dotted paths) to filter
            blocks applied to that association's query.
        node: Registry to use. Defaults to the ``Node`` singleton.
        executor: Optional ``concurrent.futures.Executor`` for sibling loads.
        db: Database to query. Defaults to the database of the first record.

    Raises:
        ConfigurationError: If a requested association is not declared.

    Example::

        posts = eager_load(posts, loads=("author", "comments.reactions"))
    """
    owners = list(records)
    tree = as_tree(params.get("loads", ()))
    db = params["db"] if "db" in params else next((r.db for r in owners if r.db), None)
    planner = EagerLoadPlanner(
        db,
        node=params.get("node"),
        conditions=params.get("conditions"),
        executor=params.get("executor"),
    )

    for model in _group_by_model(owners):
        planner.validate(model, tree)

    planner.load(owners, tree)

    return owners


def load_association(record: Model, name: str, *, node: Node | None = None) -> Any:
    """Lazily load one association of one record and cache the result.

    Uses the association's custom ``dataset`` when it has one; otherwise runs
    the eager loader with a single owner, which issues at most one query.
    """
    node = node if node is not None else Node()
    descriptor = node.lookup(type(record), name)

    if descriptor.dataset is not None:
        if record.db is None:
            raise ConfigurationError(
                f"Cannot load {descriptor!r}: record is not bound to a database"
            )

        found = record.db.records(descriptor.target_model, descriptor.dataset(record))
        value = found if descriptor.returns_array else next(iter(found), None)
        record._associations[name] = value  # noqa: SLF001
        run_after_load(descriptor, record, value)

        return value

    EagerLoadPlanner(record.db, node=node).load([record], frozendict({name: EMPTY_TREE}))

    return record._associations[name]  # noqa: SLF001
