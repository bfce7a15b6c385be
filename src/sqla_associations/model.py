from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

import sqlalchemy as sa

from . import callbacks
from .exceptions import ConfigurationError
from .tools import get_attribute_keys, get_primary_key, get_table_name


if TYPE_CHECKING:
    from sqlalchemy import orm

    from .associations import AssociationDescriptor
    from .dataset import Dataset

logger = logging.getLogger(__name__)

M = TypeVar("M", bound="Model")


class Model:
    """Mixin for record types declared with ``orm.DeclarativeBase``.

    Combine it with ``DeclarativeBase`` once to create the application base,
    then map one class per table as usual; associations are plain class
    attributes next to the mapped columns::

        class Base(Model, orm.DeclarativeBase):
            pass

        class User(Base):
            __tablename__ = "users"

            id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
            posts = one_to_many("Post", key="author_id")

    Each record keeps a private association cache next to its mapped
    attributes. A missing cache entry means "not loaded yet"; ``None`` or
    ``[]`` means "loaded, nothing found" and is never reloaded implicitly.
    """

    if TYPE_CHECKING:
        __table__: ClassVar[sa.Table]
        __associations__: ClassVar[dict[str, AssociationDescriptor]]
        registry: ClassVar[orm.registry]
        metadata: ClassVar[sa.MetaData]
        raise_on_hook_failure: ClassVar[bool]

    __associations__ = {}
    raise_on_hook_failure = callbacks.RAISE_ON_HOOK_FAILURE

    def __init_subclass__(cls, **kwargs: Any) -> None:
        if "__associations__" not in cls.__dict__:
            cls.__associations__ = dict(cls.__associations__)

        super().__init_subclass__(**kwargs)

        table = cls.__dict__.get("__table__")
        if table is None:
            return

        for column in table.c:
            if column.key in cls.__associations__:
                raise ConfigurationError(
                    f"{cls.__name__}: association {column.key!r} shadows a column"
                )

    @classmethod
    def register_association(cls, descriptor: AssociationDescriptor) -> None:
        if "__associations__" not in cls.__dict__:
            cls.__associations__ = dict(cls.__associations__)

        cls.__associations__[descriptor.name] = descriptor

    @classmethod
    def from_row(cls: type[M], row: Mapping[str, Any], db: Database | None = None) -> M:
        """Build a record from a row mapping holding (at least) the table's columns."""
        record = cls(**{key: row[column] for column, key in get_attribute_keys(cls).items()})
        record._db = db  # noqa: SLF001

        return record

    def __repr__(self) -> str:
        pk = ", ".join(
            f"{column.key}={self.get_value(column.key)!r}"
            for column in get_primary_key(type(self))
        )
        return f"<{type(self).__name__} {pk}>"

    @property
    def _associations(self) -> dict[str, Any]:
        return self.__dict__.setdefault("_association_cache", {})

    @property
    def db(self) -> Database | None:
        """Database the record was fetched from; used for lazy loading."""
        return self.__dict__.get("_db")

    @property
    def values(self) -> Mapping[str, Any]:
        """Read-only column values keyed by column name."""
        keys = get_attribute_keys(type(self))
        return MappingProxyType({name: getattr(self, key) for name, key in keys.items()})

    def _attribute_key(self, name: str) -> str:
        try:
            return get_attribute_keys(type(self))[name]
        except KeyError:
            raise ConfigurationError(
                f"{type(self).__name__} ({get_table_name(type(self))}) has no column {name!r}"
            ) from None

    def get_value(self, name: str) -> Any:
        return getattr(self, self._attribute_key(name))

    def set_value(self, name: str, value: Any) -> None:
        setattr(self, self._attribute_key(name), value)

    @property
    def pk(self) -> Any:
        """Primary-key value; a tuple for composite keys."""
        key = self.pk_tuple()
        return key[0] if len(key) == 1 else key

    def pk_tuple(self) -> tuple[Any, ...]:
        return tuple(self.get_value(column.key) for column in get_primary_key(type(self)))

    @property
    def associations(self) -> Mapping[str, Any]:
        """Read-only view of the association cache."""
        return MappingProxyType(self._associations)

    def association_loaded(self, name: str) -> bool:
        return name in self._associations

    def clear_associations(self, *names: str) -> None:
        """Forget cached associations (all of them when no name is given)."""
        if not names:
            self._associations.clear()
            return

        for name in names:
            self._associations.pop(name, None)

    def load_association(self, name: str) -> Any:
        """Return the cached association value, lazily loading it with one query."""
        if name in self._associations:
            return self._associations[name]

        from .core import load_association

        return load_association(self, name)

    def add_association(self, name: str, other: Model) -> Model | bool:
        return callbacks.add(self, name, other)

    def remove_association(self, name: str, other: Model) -> Model | bool:
        return callbacks.remove(self, name, other)

    def remove_all_association(self, name: str) -> list[Model] | bool:
        return callbacks.remove_all(self, name)

    def set_association(self, name: str, other: Model | None) -> Model | None | bool:
        return callbacks.set_(self, name, other)


class Database:
    """Executes association queries.

    Bound to an ``sa.Engine`` every fetch checks out its own connection, so
    sibling loaders may run on separate threads. Bound to an ``sa.Connection``
    (e.g. inside a caller-managed transaction) all fetches share it and must
    run sequentially.
    """

    __slots__ = ("bind",)

    def __init__(self, bind: sa.Engine | sa.Connection) -> None:
        self.bind = bind

    @property
    def supports_threads(self) -> bool:
        return isinstance(self.bind, sa.Engine)

    @contextmanager
    def connect(self) -> Iterator[sa.Connection]:
        if isinstance(self.bind, sa.Connection):
            yield self.bind
            return

        with self.bind.connect() as conn:
            yield conn

    def fetch(self, query: sa.Select[Any]) -> Sequence[sa.RowMapping]:
        """Execute *query* and return all rows as mappings."""
        with self.connect() as conn:
            return conn.execute(query).mappings().all()

    def fetch_rows(self, query: sa.Select[Any]) -> Sequence[sa.Row[Any]]:
        """Execute *query* and return all rows as positional tuples."""
        with self.connect() as conn:
            return conn.execute(query).all()

    def records(self, model: type[M], query: sa.Select[Any]) -> list[M]:
        """Execute *query* and build one *model* record per row."""
        return [model.from_row(row, self) for row in self.fetch(query)]

    def dataset(self, model: type[M]) -> Dataset[M]:
        from .dataset import Dataset

        return Dataset(model, self)

    def __getitem__(self, model: type[M]) -> Dataset[M]:
        return self.dataset(model)
