from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Final, TypeVar

from .exceptions import ConfigurationError, HookFailed, ReadOnlyAssociationError


if TYPE_CHECKING:
    from .associations import AssociationDescriptor
    from .model import Model

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

RAISE_ON_HOOK_FAILURE: Final[bool] = True


class _Veto:
    __slots__ = ()

    def __repr__(self) -> str:
        return "VETO"

    def __bool__(self) -> bool:
        return False


VETO: Final = _Veto()
"""Returned by a before-hook to cancel the mutation it guards."""


class CallbackDispatcher:
    """Runs an association's before/after hooks around one mutation.

    Before-hooks run in declared order; the first one returning :data:`VETO`
    cancels the mutation. Depending on ``raise_on_failure`` the dispatcher then
    raises :class:`~sqla_associations.exceptions.HookFailed` or returns
    ``False``. After-hooks run only once the mutation happened and cannot veto.
    """

    __slots__ = ("descriptor", "raise_on_failure")

    def __init__(
        self,
        descriptor: AssociationDescriptor,
        *,
        raise_on_failure: bool = RAISE_ON_HOOK_FAILURE,
    ) -> None:
        self.descriptor = descriptor
        self.raise_on_failure = raise_on_failure

    def before(self, event: str, record: Model, other: Any) -> bool:
        """Run ``before_<event>`` hooks; ``False`` when one of them vetoed."""
        return all(
            hook(record, other) is not VETO
            for hook in self.descriptor.callbacks(f"before_{event}")
        )

    def after(self, event: str, record: Model, other: Any) -> None:
        for hook in self.descriptor.callbacks(f"after_{event}"):
            hook(record, other)

    def fail(self, event: str) -> bool:
        logger.debug("before_%s hook vetoed a mutation of %r", event, self.descriptor)
        if self.raise_on_failure:
            raise HookFailed(
                f"a before_{event} hook vetoed the change to "
                f"{self.descriptor.owner.__name__}.{self.descriptor.name}",
                association=self.descriptor.name,
                event=event,
            )

        return False

    def dispatch(
        self, event: str, record: Model, other: Any, action: Callable[[], _T]
    ) -> _T | bool:
        if not self.before(event, record, other):
            return self.fail(event)

        result = action()
        self.after(event, record, other)

        return result


def _mutable(record: Model, name: str, *, to_many: bool, operation: str) -> AssociationDescriptor:
    from .node import Node

    descriptor = Node().lookup(type(record), name)
    if descriptor.read_only:
        raise ReadOnlyAssociationError(f"{descriptor!r} is read-only")

    if descriptor.returns_array is not to_many:
        raise ConfigurationError(f"{descriptor!r} does not support {operation}")

    return descriptor


def _dispatcher(record: Model, descriptor: AssociationDescriptor) -> CallbackDispatcher:
    return CallbackDispatcher(descriptor, raise_on_failure=type(record).raise_on_hook_failure)


def _reciprocal(descriptor: AssociationDescriptor) -> AssociationDescriptor | None:
    from .node import find_reciprocal

    return find_reciprocal(descriptor)


def _copy_keys(
    source: Model, source_keys: tuple[str, ...], dest: Model, dest_keys: tuple[str, ...]
) -> None:
    for source_key, dest_key in zip(source_keys, dest_keys):
        dest.set_value(dest_key, source.get_value(source_key))


def _clear_keys(record: Model, keys: tuple[str, ...]) -> None:
    for key in keys:
        record.set_value(key, None)


def _link(record: Model, descriptor: AssociationDescriptor, value: Model) -> None:
    """Add *value* to an association cache of *record* without running hooks."""
    cache = record._associations  # noqa: SLF001
    if not descriptor.returns_array:
        cache[descriptor.name] = value
    elif isinstance(current := cache.get(descriptor.name), list) and not any(
        item is value for item in current
    ):
        current.append(value)


def _unlink(record: Model, descriptor: AssociationDescriptor, value: Model) -> None:
    cache = record._associations  # noqa: SLF001
    current = cache.get(descriptor.name)
    if isinstance(current, list):
        cache[descriptor.name] = [item for item in current if item is not value]
    elif current is value:
        cache[descriptor.name] = None


def _add(record: Model, descriptor: AssociationDescriptor, other: Model) -> Model:
    if descriptor.adder is not None:
        descriptor.adder(record, other)
    elif descriptor.shape.keys_on_target and not descriptor.is_custom:
        _copy_keys(record, descriptor.local_key_names, other, descriptor.target_key_names)

    _link(record, descriptor, other)
    if (reciprocal := _reciprocal(descriptor)) is not None:
        _link(other, reciprocal, record)

    return other


def _remove(record: Model, descriptor: AssociationDescriptor, other: Model) -> Model:
    if descriptor.remover is not None:
        descriptor.remover(record, other)
    elif descriptor.shape.keys_on_target and not descriptor.is_custom:
        _clear_keys(other, descriptor.target_key_names)

    _unlink(record, descriptor, other)
    if (reciprocal := _reciprocal(descriptor)) is not None:
        _unlink(other, reciprocal, record)

    return other


def _set(record: Model, descriptor: AssociationDescriptor, other: Model | None) -> Model | None:
    previous = record._associations.get(descriptor.name)  # noqa: SLF001

    if descriptor.setter is not None:
        descriptor.setter(record, other)
    elif not descriptor.is_custom and descriptor.shape.keys_on_target:
        if previous is not None and previous is not other:
            _clear_keys(previous, descriptor.target_key_names)
        if other is not None:
            _copy_keys(record, descriptor.local_key_names, other, descriptor.target_key_names)
    elif not descriptor.is_custom:
        if other is None:
            _clear_keys(record, descriptor.local_key_names)
        else:
            _copy_keys(other, descriptor.target_key_names, record, descriptor.local_key_names)

    record._associations[descriptor.name] = other  # noqa: SLF001

    if (reciprocal := _reciprocal(descriptor)) is not None:
        if previous is not None and previous is not other:
            _unlink(previous, reciprocal, record)
        if other is not None:
            _link(other, reciprocal, record)

    return other


def add(record: Model, name: str, other: Model) -> Model | bool:
    """Associate *other* with *record* through the to-many association *name*."""
    descriptor = _mutable(record, name, to_many=True, operation="add")
    return _dispatcher(record, descriptor).dispatch(
        "add", record, other, lambda: _add(record, descriptor, other)
    )


def remove(record: Model, name: str, other: Model) -> Model | bool:
    """Disassociate *other* from *record* through the to-many association *name*."""
    descriptor = _mutable(record, name, to_many=True, operation="remove")
    return _dispatcher(record, descriptor).dispatch(
        "remove", record, other, lambda: _remove(record, descriptor, other)
    )


def remove_all(record: Model, name: str) -> list[Model] | bool:
    """Disassociate every currently associated record.

    All before-remove hooks run first, so a single veto leaves the association
    untouched.
    """
    descriptor = _mutable(record, name, to_many=True, operation="remove_all")
    dispatcher = _dispatcher(record, descriptor)
    current = list(record.load_association(name))

    if not all(dispatcher.before("remove", record, other) for other in current):
        return dispatcher.fail("remove")

    for other in current:
        _remove(record, descriptor, other)
    for other in current:
        dispatcher.after("remove", record, other)

    return current


def set_(record: Model, name: str, other: Model | None) -> Model | None | bool:
    """Replace the to-one association *name* of *record* with *other* (or ``None``)."""
    descriptor = _mutable(record, name, to_many=False, operation="set")
    return _dispatcher(record, descriptor).dispatch(
        "set", record, other, lambda: _set(record, descriptor, other)
    )
