from __future__ import annotations


class AssociationError(Exception):
    """Base class for every error raised by sqla_associations."""


class ConfigurationError(AssociationError, ValueError):
    """An association is declared or requested in a way that cannot work.

    Raised for undeclared association names, key arity mismatches, through-join
    associations without join keys, and requests the chosen loading path cannot
    serve (e.g. eager-graphing an association with a custom eager loader).
    """


class HookFailed(AssociationError):
    """A before-hook vetoed an association mutation."""

    def __init__(self, message: str, *, association: str, event: str) -> None:
        super().__init__(message)
        self.association = association
        self.event = event


class UnresolvableTargetError(AssociationError, LookupError):
    """A polymorphic discriminator names a target type that is not registered."""


class ReadOnlyAssociationError(AssociationError, TypeError):
    """A mutation was attempted on a read-only association."""
