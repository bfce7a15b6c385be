"""Association eager loading for SQLAlchemy Core.

Declare associations on classes mapped under a ``Model`` declarative base,
initialize the ``Node`` registry at startup with ``init_node(get_node(Base))``,
then load associations for whole result sets with a bounded number of queries::

    posts = db.dataset(Post).eager("author", "comments.reactions").all()

Every association of every level is resolved with one query for all owners,
or folded into the main query with ``eager_graph``.
"""

from ._version import __version__, __version_tuple__
from .associations import (
    CALLBACK_EVENTS,
    AssociationDescriptor,
    Shape,
    association,
    many_to_many,
    many_to_one,
    one_to_many,
    one_to_one,
)
from .callbacks import RAISE_ON_HOOK_FAILURE, VETO, CallbackDispatcher
from .core import EagerLoadPlanner, eager_load, load_association
from .dataset import Dataset
from .datastructures import KeyIndex, build_key_index, frozendict
from .exceptions import (
    AssociationError,
    ConfigurationError,
    HookFailed,
    ReadOnlyAssociationError,
    UnresolvableTargetError,
)
from .graph import GraphJoin, GraphJoinBuilder, JoinClause
from .loaders import CustomLoaderAdapter, EagerLoad, EagerLoader
from .model import Database, Model
from .node import Node, find_reciprocal, get_node, init_node
from .patterns import (
    AggregateLoader,
    AncestorsLoader,
    DescendantsLoader,
    MultiKeyLoader,
    PolymorphicLoader,
    aggregate,
    multi_key_many,
    polymorphic_many_to_one,
    tree_associations,
)
from .tools import (
    add_conditions,
    find_self_key,
    get_primary_key,
    get_table_name,
    get_table_names,
    normalize_loads,
    resolve_col,
)


__all__ = (
    "CALLBACK_EVENTS",
    "RAISE_ON_HOOK_FAILURE",
    "VETO",
    "AggregateLoader",
    "AncestorsLoader",
    "AssociationDescriptor",
    "AssociationError",
    "CallbackDispatcher",
    "ConfigurationError",
    "CustomLoaderAdapter",
    "Database",
    "Dataset",
    "DescendantsLoader",
    "EagerLoad",
    "EagerLoadPlanner",
    "EagerLoader",
    "GraphJoin",
    "GraphJoinBuilder",
    "HookFailed",
    "JoinClause",
    "KeyIndex",
    "Model",
    "MultiKeyLoader",
    "Node",
    "PolymorphicLoader",
    "ReadOnlyAssociationError",
    "Shape",
    "UnresolvableTargetError",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "aggregate",
    "association",
    "build_key_index",
    "eager_load",
    "find_reciprocal",
    "find_self_key",
    "frozendict",
    "get_node",
    "get_primary_key",
    "get_table_name",
    "get_table_names",
    "init_node",
    "load_association",
    "many_to_many",
    "many_to_one",
    "multi_key_many",
    "normalize_loads",
    "one_to_many",
    "one_to_one",
    "polymorphic_many_to_one",
    "resolve_col",
    "tree_associations",
)
