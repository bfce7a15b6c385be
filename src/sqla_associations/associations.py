from __future__ import annotations

import enum
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, Literal

import sqlalchemy as sa

from .exceptions import ConfigurationError
from .loaders import (
    AssociationLoader,
    CustomLoaderAdapter,
    ManyToManyLoader,
    ManyToOneLoader,
    OneToManyLoader,
    OneToOneLoader,
)
from .tools import find_model, get_primary_key


if TYPE_CHECKING:
    from .loaders import EagerLoader
    from .model import Model

JoinType = Literal["inner", "left", "right", "full", "cross", "natural"]
Hook = Callable[..., Any]
GraphBlock = Callable[..., sa.ColumnElement[bool]]

CALLBACK_EVENTS: Final[tuple[str, ...]] = (
    "before_add",
    "after_add",
    "before_remove",
    "after_remove",
    "before_set",
    "after_set",
    "after_load",
)


class Shape(str, enum.Enum):
    """Closed set of relationship shapes, each with its own default loader."""

    MANY_TO_ONE = "many_to_one"
    ONE_TO_MANY = "one_to_many"
    ONE_TO_ONE = "one_to_one"
    MANY_TO_MANY = "many_to_many"

    @property
    def returns_array(self) -> bool:
        return self in (Shape.ONE_TO_MANY, Shape.MANY_TO_MANY)

    @property
    def keys_on_target(self) -> bool:
        """True when the foreign key lives on the target rows."""
        return self in (Shape.ONE_TO_MANY, Shape.ONE_TO_ONE)

    def empty_value(self) -> list[Any] | None:
        """Value an owner receives when nothing matches: ``[]`` or ``None``."""
        return [] if self.returns_array else None


_DEFAULT_LOADERS: Final[dict[Shape, type[AssociationLoader]]] = {
    Shape.MANY_TO_ONE: ManyToOneLoader,
    Shape.ONE_TO_MANY: OneToManyLoader,
    Shape.ONE_TO_ONE: OneToOneLoader,
    Shape.MANY_TO_MANY: ManyToManyLoader,
}


@dataclass(frozen=True, eq=False)
class AssociationDescriptor:
    """Static configuration of one declared association.

    Key naming is symmetric across shapes: ``local_keys`` are columns on the
    owner, ``target_keys`` are the matching columns on the target. For
    ``many_to_many`` the join table carries ``join_local_keys`` (matching
    ``local_keys``) and ``join_target_keys`` (matching ``target_keys``).
    ``None`` means "the primary key of that side".

    Descriptors are built once when the owning model class is created and are
    never mutated afterwards. The loader used for eager loading is selected
    here, from the shape or the ``eager_loader`` override.
    """

    name: str
    owner: type[Model]
    shape: Shape
    target: type[Model] | str | None
    local_keys: tuple[str, ...] | None = None
    target_keys: tuple[str, ...] | None = None
    join_table: sa.Table | None = None
    join_local_keys: tuple[str, ...] = ()
    join_target_keys: tuple[str, ...] = ()
    conditions: Callable[[sa.Select[Any]], sa.Select[Any]] | None = None
    order_by: tuple[Any, ...] = ()
    limit: int | None = None
    reciprocal: str | None = None
    read_only: bool = False
    dataset: Callable[[Model], sa.Select[Any]] | None = None
    eager_loader: EagerLoader | None = None
    adder: Hook | None = None
    remover: Hook | None = None
    setter: Hook | None = None
    graph_join_type: JoinType | None = None
    graph_conditions: Mapping[str, Any] = field(default_factory=dict)
    graph_only_conditions: str | Sequence[str] | Mapping[str, str] | None = None
    graph_block: GraphBlock | None = None
    graph_alias: str | None = None
    hooks: Mapping[str, tuple[Hook, ...]] = field(default_factory=dict)
    loader: AssociationLoader = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.target is None and self.eager_loader is None:
            raise ConfigurationError(
                f"{self.owner.__name__}.{self.name}: a target is required unless "
                "a custom eager_loader resolves it"
            )

        if self.shape is Shape.MANY_TO_MANY:
            if self.join_table is None or not self.join_local_keys or not self.join_target_keys:
                raise ConfigurationError(
                    f"{self.owner.__name__}.{self.name}: many_to_many needs join_table, "
                    "join_local_keys and join_target_keys"
                )
            _check_arity(self, "join_local_keys", self.join_local_keys, "local_keys", self.local_keys)
            _check_arity(
                self, "join_target_keys", self.join_target_keys, "target_keys", self.target_keys
            )
        elif self.join_table is not None:
            raise ConfigurationError(
                f"{self.owner.__name__}.{self.name}: join_table is only valid for many_to_many"
            )

        _check_arity(self, "local_keys", self.local_keys, "target_keys", self.target_keys)

        if self.limit is not None and not self.shape.returns_array:
            raise ConfigurationError(
                f"{self.owner.__name__}.{self.name}: limit is only valid for to-many associations"
            )

        unknown = set(self.hooks) - set(CALLBACK_EVENTS)
        if unknown:
            raise ConfigurationError(f"Unknown callback events: {sorted(unknown)}")

        loader = (
            CustomLoaderAdapter(self.eager_loader)
            if self.eager_loader is not None
            else _DEFAULT_LOADERS[self.shape]()
        )
        object.__setattr__(self, "loader", loader)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.owner.__name__}.{self.name} {self.shape.value}>"

    @property
    def returns_array(self) -> bool:
        return self.shape.returns_array

    @property
    def is_custom(self) -> bool:
        return self.eager_loader is not None

    @property
    def target_model(self) -> type[Model]:
        """The target model class, resolving string references through the mapper registry."""
        if self.target is None:
            raise ConfigurationError(
                f"{self.owner.__name__}.{self.name} has no fixed target model"
            )

        if isinstance(self.target, str):
            try:
                return find_model(self.owner, self.target)
            except KeyError:
                raise ConfigurationError(
                    f"{self.owner.__name__}.{self.name}: unknown target model {self.target!r}"
                ) from None

        return self.target

    @property
    def local_key_names(self) -> tuple[str, ...]:
        if self.local_keys is not None:
            return self.local_keys

        return tuple(column.key for column in get_primary_key(self.owner))

    @property
    def target_key_names(self) -> tuple[str, ...]:
        if self.target_keys is not None:
            return self.target_keys

        return tuple(column.key for column in get_primary_key(self.target_model))

    def empty_value(self) -> list[Any] | None:
        return self.shape.empty_value()

    def callbacks(self, event: str) -> tuple[Hook, ...]:
        return self.hooks.get(event, ())

    def validate(self) -> None:
        """Check keys against the resolved tables.

        Called when the registry is built, once every target model exists, so
        that defaulted primary keys can be compared too.
        """
        _check_arity(self, "local_keys", self.local_key_names, "target_keys", self.target_key_names)
        _check_columns(self, self.owner.__table__, self.local_key_names)
        _check_columns(self, self.target_model.__table__, self.target_key_names)

        if self.join_table is not None:
            _check_arity(
                self, "join_local_keys", self.join_local_keys, "local_keys", self.local_key_names
            )
            _check_columns(self, self.join_table, self.join_local_keys)
            _check_columns(self, self.join_table, self.join_target_keys)


def _check_arity(
    descriptor: AssociationDescriptor,
    left_name: str,
    left: Sequence[str] | None,
    right_name: str,
    right: Sequence[str] | None,
) -> None:
    if left is not None and right is not None and len(left) != len(right):
        raise ConfigurationError(
            f"{descriptor.owner.__name__}.{descriptor.name}: {left_name} {tuple(left)} and "
            f"{right_name} {tuple(right)} differ in arity"
        )


def _check_columns(
    descriptor: AssociationDescriptor, table: sa.Table, names: Sequence[str]
) -> None:
    missing = [name for name in names if name not in table.c]
    if missing:
        raise ConfigurationError(
            f"{descriptor.owner.__name__}.{descriptor.name}: table {table.name!r} "
            f"has no column(s) {missing}"
        )


def _as_keys(value: str | Sequence[str] | None) -> tuple[str, ...] | None:
    if value is None:
        return None

    return (value,) if isinstance(value, str) else tuple(value)


def _as_hooks(value: Hook | Sequence[Hook] | None) -> tuple[Hook, ...]:
    if value is None:
        return ()

    return (value,) if callable(value) else tuple(value)


def _underscore(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class AssociationProperty:
    """Class attribute declaring an association on a model.

    On the class it evaluates to the :class:`AssociationDescriptor`; on a
    record it returns the cached value, lazily loading it on first access.
    Assigning to a to-one association routes through ``set_association``.
    """

    def __init__(self, shape: Shape, target: type[Model] | str | None, **options: Any) -> None:
        self.shape = shape
        self.target = target
        self.options = options
        self.descriptor: AssociationDescriptor | None = None

    def __set_name__(self, owner: type[Model], name: str) -> None:
        options = dict(self.options)
        hooks = {
            event: hooks
            for event in CALLBACK_EVENTS
            if (hooks := _as_hooks(options.pop(event, None)))
        }
        local_keys = _as_keys(options.pop("local_keys", None))
        target_keys = _as_keys(options.pop("target_keys", None))
        key = _as_keys(options.pop("key", None))

        if key is not None:
            if self.shape.keys_on_target:
                target_keys = key
            else:
                local_keys = key
        elif self.shape is Shape.MANY_TO_ONE and local_keys is None:
            local_keys = (f"{name}_id",)
        elif self.shape.keys_on_target and target_keys is None:
            target_keys = (f"{_underscore(owner.__name__)}_id",)

        if (order_by := options.get("order_by")) is not None:
            options["order_by"] = (
                tuple(order_by) if isinstance(order_by, (list, tuple)) else (order_by,)
            )

        for option in ("join_local_keys", "join_target_keys"):
            if option in options:
                options[option] = _as_keys(options[option])

        self.descriptor = AssociationDescriptor(
            name=name,
            owner=owner,
            shape=self.shape,
            target=self.target,
            local_keys=local_keys,
            target_keys=target_keys,
            hooks=hooks,
            **options,
        )
        owner.register_association(self.descriptor)

    def __get__(self, instance: Model | None, owner: type[Model]) -> Any:
        if instance is None:
            return self.descriptor

        assert self.descriptor is not None
        return instance.load_association(self.descriptor.name)

    def __set__(self, instance: Model, value: Any) -> None:
        assert self.descriptor is not None
        if self.descriptor.returns_array:
            raise AttributeError(
                f"{self.descriptor.name} is a to-many association; "
                "use add_association/remove_association"
            )

        instance.set_association(self.descriptor.name, value)


def association(shape: Shape | str, target: type[Model] | str | None, **options: Any) -> Any:
    """Declare an association of any shape.

    Options mirror :class:`AssociationDescriptor` fields. ``key`` is a
    shorthand for the foreign key of the shape (``local_keys`` for
    ``many_to_one``, ``target_keys`` for ``one_to_many``/``one_to_one``).
    Callback lists are passed as ``before_add=...``, ``after_load=...`` etc.
    """
    return AssociationProperty(Shape(shape), target, **options)


def many_to_one(target: type[Model] | str | None, **options: Any) -> Any:
    """Declare a to-one association keyed on the owner (``posts.author_id -> users.id``)."""
    return association(Shape.MANY_TO_ONE, target, **options)


def one_to_many(target: type[Model] | str, **options: Any) -> Any:
    """Declare a to-many association keyed on the target (``users.id <- posts.author_id``)."""
    return association(Shape.ONE_TO_MANY, target, **options)


def one_to_one(target: type[Model] | str, **options: Any) -> Any:
    """Declare a to-one association keyed on the target; the first matching row wins."""
    return association(Shape.ONE_TO_ONE, target, **options)


def many_to_many(
    target: type[Model] | str,
    *,
    join_table: sa.Table,
    join_local_keys: str | Sequence[str],
    join_target_keys: str | Sequence[str],
    **options: Any,
) -> Any:
    """Declare a to-many association mediated by a join table."""
    return association(
        Shape.MANY_TO_MANY,
        target,
        join_table=join_table,
        join_local_keys=join_local_keys,
        join_target_keys=join_target_keys,
        **options,
    )
