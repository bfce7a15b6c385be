from __future__ import annotations

import sys
from collections.abc import Callable, Iterable, Iterator, Mapping
from typing import Any, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")
R = TypeVar("R")

KeyTuple = tuple[Any, ...]


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Eager-load request trees are nested ``frozendict`` instances so that they can
    be shared between datasets, compared, and used as cache keys.

    Example:
        >>> tree = frozendict({"posts": frozendict({"comments": frozendict()})})
        >>> tree.copy(roles=frozendict())
        <frozendict {'posts': <frozendict {'comments': <frozendict {}>}>, 'roles': <frozendict {}>}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Return a new frozendict with *add_or_replace* merged in."""
        return type(self)(self, **add_or_replace)

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        # Computed lazily: values are only hashable when they are frozendicts too.
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash


class KeyIndex(Mapping[KeyTuple, list[R]], Generic[R]):
    """Mapping from a key tuple to the records sharing it, in input order.

    Records whose key contains a ``None`` component can never match a row and
    are kept aside in :attr:`dropped` instead of being indexed.
    """

    __slots__ = ("_buckets", "dropped")

    def __init__(self) -> None:
        self._buckets: dict[KeyTuple, list[R]] = {}
        self.dropped: list[R] = []

    def add(self, key: KeyTuple | None, record: R) -> None:
        if key is None or any(part is None for part in key):
            self.dropped.append(record)
            return

        self._buckets.setdefault(key, []).append(record)

    def __getitem__(self, key: KeyTuple) -> list[R]:
        return self._buckets[key]

    def get_records(self, key: KeyTuple) -> list[R]:
        """Return the records for *key*, or an empty list."""
        return self._buckets.get(key, [])

    def __iter__(self) -> Iterator[KeyTuple]:
        return iter(self._buckets)

    def __len__(self) -> int:
        return len(self._buckets)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} keys={len(self._buckets)} dropped={len(self.dropped)}>"


def build_key_index(
    records: Iterable[R],
    key: Callable[[R], KeyTuple | None],
) -> KeyIndex[R]:
    """Index *records* by the tuple *key* produces for each of them.

    Args:
        records: Records to index; iteration order is preserved per bucket.
        key: Extracts the (possibly composite) key tuple from a record.

    Returns:
        A fresh :class:`KeyIndex`. Records with a null key component end up in
        ``KeyIndex.dropped``.
    """
    index: KeyIndex[R] = KeyIndex()
    for record in records:
        index.add(key(record), record)

    return index
