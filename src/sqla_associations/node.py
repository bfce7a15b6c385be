from __future__ import annotations

from collections.abc import Mapping
from functools import lru_cache
from typing import TYPE_CHECKING, ClassVar, Final, final

from sqlalchemy import orm

from .datastructures import frozendict
from .exceptions import ConfigurationError


if TYPE_CHECKING:
    from .associations import AssociationDescriptor, Shape
    from .model import Model

AssociationMap = Mapping[type["Model"], Mapping[str, "AssociationDescriptor"]]

_EMPTY: Final[frozendict[str, AssociationDescriptor]] = frozendict()


@final
class Node:
    """Singleton registry of declared associations.

    Maps every model class to its association descriptors and is the only
    place loaders, the planner and the mutation helpers look descriptors up.
    It implements the singleton pattern to ensure a single source of truth
    across the application; build it once at start-up with
    ``init_node(get_node(Base))``.
    """

    __instance: ClassVar[Node | None] = None
    _node: AssociationMap

    def __new__(cls, node: AssociationMap | None = None) -> Node:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if node is not None:
                instance.set_node(node)

            cls.__instance = instance

        if not getattr(cls.__instance, "_node", None):
            raise RuntimeError("Node is not initialized or empty")

        return cls.__instance

    def get(self, model: type[Model]) -> Mapping[str, AssociationDescriptor]:
        """Associations declared on *model*, or an empty mapping."""
        return self.node.get(model, _EMPTY)

    def __getitem__(self, model: type[Model]) -> Mapping[str, AssociationDescriptor]:
        """Look up associations for *model*, raising ``KeyError`` if not found."""
        return self.node[model]

    def lookup(self, model: type[Model], name: str) -> AssociationDescriptor:
        """Return the descriptor of association *name* on *model*.

        Raises:
            ConfigurationError: If the association is not declared.
        """
        try:
            return self.get(model)[name]
        except KeyError:
            raise ConfigurationError(
                f"Association {name!r} is not declared on {model.__name__}"
            ) from None

    @property
    def node(self) -> AssociationMap:
        """The underlying model-to-associations mapping (read-only)."""
        return self._node

    def set_node(self, node: AssociationMap) -> None:
        self._node = node
        find_reciprocal.cache_clear()

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls._node = {}
        cls.__instance = None
        find_reciprocal.cache_clear()


def get_node(base: type[Model]) -> frozendict[type[Model], frozendict[str, AssociationDescriptor]]:
    """Collect and validate the associations of every class mapped in the registry of *base*.

    Target names are resolved and key arities checked here, so configuration
    errors surface at start-up rather than on the first load.

    Raises:
        AssertionError: If base is not a ``Model`` declarative base.
        ConfigurationError: If any association is misconfigured.
    """
    from .model import Model

    bases = getattr(base, "__bases__", ())
    assert Model in bases and orm.DeclarativeBase in bases, (
        "base must subclass both Model and orm.DeclarativeBase"
    )

    mapping = frozendict({
        mapper.class_: frozendict(mapper.class_.__associations__)
        for mapper in sorted(base.registry.mappers, key=lambda mapper: mapper.class_.__name__)
        if issubclass(mapper.class_, Model)
    })
    for associations in mapping.values():
        for descriptor in associations.values():
            if not descriptor.is_custom:
                descriptor.validate()

    return mapping


def init_node(node: AssociationMap) -> None:
    """Initialize the global Node singleton with the association mapping.

    Example:
        >>> init_node(get_node(Base))
    """
    Node(node).set_node(node)


def _mirror_shapes() -> dict[Shape, tuple[Shape, ...]]:
    from .associations import Shape

    return {
        Shape.MANY_TO_ONE: (Shape.ONE_TO_MANY, Shape.ONE_TO_ONE),
        Shape.ONE_TO_MANY: (Shape.MANY_TO_ONE,),
        Shape.ONE_TO_ONE: (Shape.MANY_TO_ONE,),
        Shape.MANY_TO_MANY: (Shape.MANY_TO_MANY,),
    }


def _mirrors(left: AssociationDescriptor, right: AssociationDescriptor) -> bool:
    if right.shape not in _mirror_shapes()[left.shape]:
        return False

    if left.join_table is not None:
        return (
            left.join_table is right.join_table
            and left.join_local_keys == right.join_target_keys
            and left.join_target_keys == right.join_local_keys
        )

    return (
        left.local_key_names == right.target_key_names
        and left.target_key_names == right.local_key_names
    )


@lru_cache(maxsize=1024)
def find_reciprocal(descriptor: AssociationDescriptor) -> AssociationDescriptor | None:
    """Find the association on the target pointing back at *descriptor*'s owner.

    An explicit ``reciprocal=`` name wins. Otherwise the target's associations
    are scanned for one with mirrored keys; associations with filter blocks,
    custom loaders or custom datasets never take part.
    """
    if descriptor.is_custom or descriptor.target is None:
        return None

    target = descriptor.target_model
    if descriptor.reciprocal is not None:
        try:
            return target.__associations__[descriptor.reciprocal]
        except KeyError:
            raise ConfigurationError(
                f"{descriptor!r}: reciprocal {descriptor.reciprocal!r} is not declared "
                f"on {target.__name__}"
            ) from None

    if descriptor.conditions is not None:
        return None

    return next(
        (
            candidate
            for candidate in target.__associations__.values()
            if candidate is not descriptor
            and not candidate.is_custom
            and candidate.conditions is None
            and candidate.dataset is None
            and candidate.target is not None
            and candidate.target_model is descriptor.owner
            and _mirrors(descriptor, candidate)
        ),
        None,
    )
